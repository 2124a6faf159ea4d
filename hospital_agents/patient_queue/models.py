"""
Patient Queue Agent - Domain Model

Plain dataclasses shared by the triage scorer, the wait-time estimator, the
allocation optimizer and the queue store. The engine components only read
these objects; the store is the only place that mutates a QueueEntry.

QUEUE ENTRY LIFECYCLE
─────────────────────

    waiting ──► in_consultation ──► completed
       │
       └──────► cancelled

arrival_time is fixed once set; priority_level is always one of 1-4.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import PriorityLevel, TriageCategory
from .exceptions import InvalidTransitionError, ValidationError


Timestamp = Union[datetime, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Timestamp) -> datetime:
    """
    Parse a datetime or ISO8601 string into a timezone-aware datetime.

    Strings may end with 'Z'. Naive values are taken to be UTC.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def elapsed_minutes(since: datetime, now: Optional[datetime] = None) -> int:
    """Whole minutes elapsed between ``since`` and ``now`` (floored)."""
    now = parse_timestamp(now) if now is not None else utcnow()
    return math.floor((now - since).total_seconds() / 60)


class QueueStatus(str, Enum):
    """Status of a queue entry."""
    WAITING = "waiting"
    IN_CONSULTATION = "in_consultation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: Dict[QueueStatus, Tuple[QueueStatus, ...]] = {
    QueueStatus.WAITING: (QueueStatus.IN_CONSULTATION, QueueStatus.CANCELLED),
    QueueStatus.IN_CONSULTATION: (QueueStatus.COMPLETED,),
    QueueStatus.COMPLETED: (),
    QueueStatus.CANCELLED: (),
}


class Consciousness(str, Enum):
    """Level of consciousness recorded at triage."""
    ALERT = "alert"
    CONFUSED = "confused"
    UNCONSCIOUS = "unconscious"


@dataclass
class Patient:
    """Registered patient."""
    id: int
    name: str
    age: Optional[int] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    medical_record_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "phone": self.phone,
            "gender": self.gender,
            "medical_record_number": self.medical_record_number,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Doctor:
    """
    Doctor on the department roster.

    Attributes:
        avg_consultation_time: Average consultation length in minutes (> 0)
        is_available: Whether the doctor currently takes patients
        shift_start / shift_end: Shift window as "HH:MM:SS"
    """
    id: int
    hospital_id: int
    department_id: int
    name: str
    avg_consultation_time: float
    is_available: bool = True
    specialization: Optional[str] = None
    shift_start: str = "09:00:00"
    shift_end: str = "17:00:00"

    def __post_init__(self):
        if not self.avg_consultation_time or self.avg_consultation_time <= 0:
            raise ValidationError(
                f"avg_consultation_time must be positive, got {self.avg_consultation_time}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hospital_id": self.hospital_id,
            "department_id": self.department_id,
            "name": self.name,
            "specialization": self.specialization,
            "avg_consultation_time": self.avg_consultation_time,
            "is_available": self.is_available,
            "shift_start": self.shift_start,
            "shift_end": self.shift_end,
        }


@dataclass
class VitalSigns:
    """
    Vital signs captured at triage.

    Normal ranges used by the scorer:
    - Heart Rate: 50-120 bpm
    - Blood Pressure: systolic 90-180, diastolic 60-110 mmHg
    - SpO2: >= 95%
    - Temperature: 95-103 °F
    """
    heart_rate: Optional[float] = None
    systolic_bp: Optional[float] = None
    diastolic_bp: Optional[float] = None
    temperature: Optional[float] = None  # Fahrenheit
    oxygen_saturation: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "heart_rate": self.heart_rate,
            "systolic_bp": self.systolic_bp,
            "diastolic_bp": self.diastolic_bp,
            "temperature": self.temperature,
            "oxygen_saturation": self.oxygen_saturation,
        }


@dataclass
class QueueEntry:
    """
    A patient's place in a department queue.

    Priority and status are mutated only through set_priority() and
    transition_to(); arrival_time cannot be reassigned.
    """
    id: int
    patient_id: int
    hospital_id: int
    department_id: int
    priority_level: int
    arrival_time: Timestamp
    doctor_id: Optional[int] = None
    symptoms: str = ""
    status: QueueStatus = QueueStatus.WAITING
    estimated_wait_time: Optional[int] = None
    actual_wait_time: Optional[int] = None
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    patient: Optional[Patient] = None
    department_name: Optional[str] = None

    def __post_init__(self):
        if not PriorityLevel.is_valid(self.priority_level):
            raise ValidationError(f"priority_level must be 1-4, got {self.priority_level}")
        object.__setattr__(self, "arrival_time", parse_timestamp(self.arrival_time))
        object.__setattr__(self, "status", QueueStatus(self.status))

    def __setattr__(self, name, value):
        if name == "arrival_time" and "arrival_time" in self.__dict__:
            raise InvalidTransitionError("arrival_time cannot be changed once set")
        super().__setattr__(name, value)

    @property
    def is_waiting(self) -> bool:
        return self.status == QueueStatus.WAITING

    @property
    def patient_age(self) -> Optional[int]:
        return self.patient.age if self.patient else None

    def service_order_key(self) -> Tuple[int, datetime]:
        """Sort key: most urgent first, then first come first served."""
        return (self.priority_level, self.arrival_time)

    def set_priority(self, level: int) -> None:
        if not PriorityLevel.is_valid(level):
            raise ValidationError(f"priority_level must be 1-4, got {level}")
        self.priority_level = level
        self.updated_at = utcnow()

    def transition_to(self, status: Union[QueueStatus, str], at: Optional[datetime] = None) -> None:
        """
        Move the entry along its lifecycle.

        Entering consultation records the start time and the actual wait;
        completing records the end time.
        """
        target = QueueStatus(status)
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move queue entry {self.id} from {self.status.value} to {target.value}"
            )
        at = parse_timestamp(at) if at is not None else utcnow()
        if target == QueueStatus.IN_CONSULTATION:
            self.consultation_start_time = at
            self.actual_wait_time = max(0, elapsed_minutes(self.arrival_time, at))
        elif target == QueueStatus.COMPLETED:
            self.consultation_end_time = at
        self.status = target
        self.updated_at = utcnow()

    def to_candidate(self) -> "TriageCandidate":
        return TriageCandidate(
            id=self.id,
            symptoms=self.symptoms or "",
            age=self.patient_age,
            arrival_time=self.arrival_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "hospital_id": self.hospital_id,
            "department_id": self.department_id,
            "doctor_id": self.doctor_id,
            "priority_level": self.priority_level,
            "symptoms": self.symptoms,
            "status": self.status.value,
            "arrival_time": self.arrival_time.isoformat(),
            "estimated_wait_time": self.estimated_wait_time,
            "actual_wait_time": self.actual_wait_time,
            "consultation_start_time": (
                self.consultation_start_time.isoformat() if self.consultation_start_time else None
            ),
            "consultation_end_time": (
                self.consultation_end_time.isoformat() if self.consultation_end_time else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "patient": self.patient.to_dict() if self.patient else None,
            "department_name": self.department_name,
        }


# =============================================================================
# TRIAGE RESULTS
# =============================================================================

@dataclass
class TriageFactors:
    """Per-factor point breakdown of a triage score."""
    symptoms: int = 0
    vital_signs: int = 0
    pain_level: int = 0
    consciousness: int = 0
    age: int = 0
    wait_time: int = 0

    @property
    def total(self) -> int:
        return (
            self.symptoms + self.vital_signs + self.pain_level
            + self.consciousness + self.age + self.wait_time
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "symptoms": self.symptoms,
            "vital_signs": self.vital_signs,
            "pain_level": self.pain_level,
            "consciousness": self.consciousness,
            "age": self.age,
            "wait_time": self.wait_time,
        }


@dataclass
class TriageScore:
    """
    Result of scoring a patient.

    Attributes:
        score: Additive severity score (observed range 0-13)
        category: Clinical category derived from the score
        factors: Points contributed by each factor
        recommendations: Messages from every rule that fired, in order
        escalation_required: Score or wait time warrants staff attention
    """
    score: int
    category: TriageCategory
    factors: TriageFactors
    recommendations: List[str] = field(default_factory=list)
    escalation_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category.value,
            "factors": self.factors.to_dict(),
            "recommendations": list(self.recommendations),
            "escalation_required": self.escalation_required,
        }


@dataclass(frozen=True)
class EmergencyProtocol:
    """Clinical protocol activated by trigger phrases in the complaint."""
    id: str
    name: str
    triggers: Tuple[str, ...]
    actions: Tuple[str, ...]
    time_limit: int  # minutes
    required_personnel: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "triggers": list(self.triggers),
            "actions": list(self.actions),
            "time_limit": self.time_limit,
            "required_personnel": list(self.required_personnel),
        }


@dataclass
class EscalationCheck:
    """Outcome of the immediate-escalation rules."""
    required: bool
    reason: str = ""
    protocol: Optional[EmergencyProtocol] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required": self.required,
            "reason": self.reason,
            "protocol": self.protocol.to_dict() if self.protocol else None,
        }


@dataclass
class TriageCandidate:
    """Patient data needed to rank a patient by triage score."""
    id: int
    symptoms: str
    arrival_time: Timestamp
    age: Optional[int] = None
    vital_signs: Optional[VitalSigns] = None
    pain_level: Optional[int] = None
    consciousness: Optional[Consciousness] = None

    def __post_init__(self):
        self.arrival_time = parse_timestamp(self.arrival_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symptoms": self.symptoms,
            "age": self.age,
            "arrival_time": self.arrival_time.isoformat(),
        }


@dataclass
class PrioritizedPatient:
    """A candidate together with its score and 1-based queue position."""
    patient: TriageCandidate
    triage_score: TriageScore
    queue_position: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient": self.patient.to_dict(),
            "triage_score": self.triage_score.to_dict(),
            "queue_position": self.queue_position,
        }


# =============================================================================
# WAIT TIME PREDICTIONS
# =============================================================================

@dataclass
class PredictionFactors:
    """Inputs echoed back with a prediction."""
    queue_length: int
    doctor_availability: int
    priority_level: int
    avg_consultation_time: int
    time_of_day: str
    ai_insights: Optional[Dict[str, Any]] = None
    fallback_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "queue_length": self.queue_length,
            "doctor_availability": self.doctor_availability,
            "priority_level": self.priority_level,
            "avg_consultation_time": self.avg_consultation_time,
            "time_of_day": self.time_of_day,
        }
        if self.ai_insights is not None:
            data["ai_insights"] = self.ai_insights
        if self.fallback_reason is not None:
            data["fallback_reason"] = self.fallback_reason
        return data


@dataclass
class WaitTimePrediction:
    """Estimated wait for one patient."""
    patient_id: int
    estimated_wait_time: int
    confidence: float
    factors: PredictionFactors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "estimated_wait_time": self.estimated_wait_time,
            "confidence": self.confidence,
            "factors": self.factors.to_dict(),
        }


@dataclass
class WaitPredictionRecord:
    """Persisted prediction linked to a queue entry."""
    id: int
    queue_entry_id: int
    predicted_wait_time: int
    confidence_score: float
    prediction_factors: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue_entry_id": self.queue_entry_id,
            "predicted_wait_time": self.predicted_wait_time,
            "confidence_score": self.confidence_score,
            "prediction_factors": self.prediction_factors,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# ALLOCATION
# =============================================================================

@dataclass
class Allocation:
    """Patients assigned to one doctor for the current shift."""
    doctor_id: int
    patient_ids: List[int] = field(default_factory=list)
    reasoning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "patient_ids": list(self.patient_ids),
            "reasoning": self.reasoning,
        }
