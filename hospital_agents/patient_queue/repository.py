"""
Patient Queue Agent - Queue Store

The queue store is the only shared mutable resource in the service. The
engine components never touch it: they receive copies of entries and
return results, and the service layer writes results back through here.

================================================================================
CONCURRENCY
================================================================================

    read-then-update of ONE entry      per-entry asyncio.Lock
    appends (new patient, prediction)  store-wide asyncio.Lock

Every read returns deep copies, so callers can never mutate stored state
behind the store's back. Entries are only changed in update_queue_entry(),
which routes priority and status changes through QueueEntry.set_priority()
and QueueEntry.transition_to() so their invariants hold.

The in-memory implementation stands in for a real database; swap it by
subclassing QueueRepository.
================================================================================
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import PriorityLevel
from .exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StaleEntryError,
    ValidationError,
)
from .models import (
    Doctor,
    Patient,
    QueueEntry,
    QueueStatus,
    WaitPredictionRecord,
    WaitTimePrediction,
    elapsed_minutes,
    utcnow,
)
from .wait_time import round_half_up

logger = logging.getLogger(__name__)


# Fields a caller may change, and fields fixed at registration
MUTABLE_FIELDS = ("priority_level", "status", "estimated_wait_time", "doctor_id", "symptoms")
IMMUTABLE_FIELDS = ("id", "patient_id", "hospital_id", "department_id", "arrival_time", "created_at")


class QueueRepository(ABC):
    """
    Abstract queue store.

    Filters that are None are not applied. Missing ids raise NotFoundError.
    """

    @abstractmethod
    async def get_queue_entries(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> List[QueueEntry]:
        """Waiting entries only."""

    @abstractmethod
    async def get_queue_entry(self, entry_id: int) -> QueueEntry:
        """Any entry by id, whatever its status."""

    @abstractmethod
    async def update_queue_entry(
        self,
        entry_id: int,
        *,
        expected_status: Optional[Union[QueueStatus, str]] = None,
        **updates: Any,
    ) -> QueueEntry:
        """
        Apply updates atomically and return the updated entry.

        With ``expected_status`` set, the update only goes through if the
        stored entry still has that status; otherwise StaleEntryError.
        """

    @abstractmethod
    async def get_doctors(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> List[Doctor]:
        """Available doctors only."""

    @abstractmethod
    async def save_prediction(
        self,
        queue_entry_id: int,
        prediction: WaitTimePrediction,
    ) -> WaitPredictionRecord:
        pass

    @abstractmethod
    async def get_predictions(self, queue_entry_id: int) -> List[WaitPredictionRecord]:
        """Stored predictions for an entry, oldest first."""

    @abstractmethod
    async def add_patient_to_queue(
        self,
        name: str,
        symptoms: str,
        priority_level: int,
        hospital_id: int,
        department_id: int,
        age: Optional[int] = None,
        phone: Optional[str] = None,
        gender: Optional[str] = None,
        arrival_time: Optional[datetime] = None,
    ) -> QueueEntry:
        """Register a patient and append a waiting entry for them."""

    # ------------------------------------------------------------------
    # Read models built on the primitives above
    # ------------------------------------------------------------------

    async def get_queue_status(self, hospital_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Summary of a hospital's waiting queue.

        Returns:
            total_patients, avg_wait_time (mean estimated wait, 0 when empty),
            critical_count, urgent_count and department_breakdown
        """
        entries = await self.get_queue_entries(hospital_id)

        avg_wait = 0
        if entries:
            avg_wait = round_half_up(
                sum(entry.estimated_wait_time or 0 for entry in entries) / len(entries)
            )

        breakdown: Dict[str, int] = {}
        for entry in entries:
            name = entry.department_name or "Unknown"
            breakdown[name] = breakdown.get(name, 0) + 1

        return {
            "total_patients": len(entries),
            "avg_wait_time": avg_wait,
            "critical_count": sum(1 for e in entries if e.priority_level == PriorityLevel.EMERGENCY),
            "urgent_count": sum(1 for e in entries if e.priority_level == PriorityLevel.URGENT),
            "department_breakdown": breakdown,
        }

    async def get_patient_position(self, patient_id: int) -> Optional[int]:
        """
        Position of a patient's waiting entry in its department.

        Counts same-department entries with equal or higher urgency that
        arrived no later (the patient included). None when not waiting.
        """
        entries = await self.get_queue_entries()
        target = next((entry for entry in entries if entry.patient_id == patient_id), None)
        if target is None:
            return None

        return sum(
            1 for entry in entries
            if entry.department_id == target.department_id
            and entry.priority_level <= target.priority_level
            and entry.arrival_time <= target.arrival_time
        )

    async def get_emergency_cases(
        self,
        hospital_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Waiting priority-1 entries as a flat staff view."""
        entries = await self.get_queue_entries(hospital_id)
        return [
            {
                "id": entry.id,
                "patient_name": entry.patient.name if entry.patient else "Unknown",
                "symptoms": entry.symptoms,
                "arrival_time": entry.arrival_time.isoformat(),
                "department": entry.department_name or "Unknown",
                "priority": "critical",
                "wait_time": elapsed_minutes(entry.arrival_time, now),
            }
            for entry in entries
            if entry.priority_level == PriorityLevel.EMERGENCY
        ]


class InMemoryQueueRepository(QueueRepository):
    """Dictionary-backed queue store."""

    def __init__(
        self,
        doctors: Iterable[Doctor] = (),
        departments: Optional[Dict[int, str]] = None,
    ):
        self._entries: Dict[int, QueueEntry] = {}
        self._doctors: Dict[int, Doctor] = {doctor.id: doctor for doctor in doctors}
        self._departments: Dict[int, str] = dict(departments or {})
        self._predictions: Dict[int, List[WaitPredictionRecord]] = defaultdict(list)

        self._entry_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._store_lock = asyncio.Lock()

        self._next_entry_id = 1
        self._next_patient_id = 1
        self._next_prediction_id = 1

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_doctor(self, doctor: Doctor) -> None:
        self._doctors[doctor.id] = doctor

    def add_entry(self, entry: QueueEntry) -> None:
        """Insert a fully built entry (used for seeding and tests)."""
        if entry.department_name is None:
            entry.department_name = self._departments.get(entry.department_id)
        self._entries[entry.id] = entry
        self._next_entry_id = max(self._next_entry_id, entry.id + 1)
        self._next_patient_id = max(self._next_patient_id, entry.patient_id + 1)

    # ------------------------------------------------------------------
    # Queue entries
    # ------------------------------------------------------------------

    def _lookup(self, entry_id: int) -> QueueEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise NotFoundError("Queue entry", entry_id) from None

    async def get_queue_entries(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> List[QueueEntry]:
        return [
            copy.deepcopy(entry) for entry in self._entries.values()
            if entry.status == QueueStatus.WAITING
            and (hospital_id is None or entry.hospital_id == hospital_id)
            and (department_id is None or entry.department_id == department_id)
        ]

    async def get_queue_entry(self, entry_id: int) -> QueueEntry:
        return copy.deepcopy(self._lookup(entry_id))

    async def update_queue_entry(
        self,
        entry_id: int,
        *,
        expected_status: Optional[Union[QueueStatus, str]] = None,
        **updates: Any,
    ) -> QueueEntry:
        self._lookup(entry_id)

        for name in updates:
            if name in IMMUTABLE_FIELDS:
                raise InvalidTransitionError(f"{name} cannot be changed once set")
            if name not in MUTABLE_FIELDS:
                raise ValidationError(f"Unknown queue entry field: {name}")

        async with self._entry_locks[entry_id]:
            entry = self._lookup(entry_id)
            if expected_status is not None and entry.status != QueueStatus(expected_status):
                raise StaleEntryError(
                    f"Queue entry {entry_id} is {entry.status.value}, "
                    f"expected {QueueStatus(expected_status).value}"
                )
            # Validate against a copy first so a failed update leaves no trace
            staged = copy.deepcopy(entry)

            if "priority_level" in updates:
                staged.set_priority(updates["priority_level"])
            if "status" in updates and QueueStatus(updates["status"]) != staged.status:
                staged.transition_to(updates["status"])
            for name in ("estimated_wait_time", "doctor_id", "symptoms"):
                if name in updates:
                    setattr(staged, name, updates[name])

            staged.updated_at = utcnow()
            self._entries[entry_id] = staged

        logger.debug(
            "Queue entry updated",
            extra={"queue_entry_id": entry_id, "fields": sorted(updates)},
        )
        return copy.deepcopy(staged)

    async def add_patient_to_queue(
        self,
        name: str,
        symptoms: str,
        priority_level: int,
        hospital_id: int,
        department_id: int,
        age: Optional[int] = None,
        phone: Optional[str] = None,
        gender: Optional[str] = None,
        arrival_time: Optional[datetime] = None,
    ) -> QueueEntry:
        if not PriorityLevel.is_valid(priority_level):
            raise ValidationError(f"priority_level must be 1-4, got {priority_level}")

        async with self._store_lock:
            patient_id = self._next_patient_id
            self._next_patient_id += 1
            patient = Patient(
                id=patient_id,
                name=name,
                age=age,
                phone=phone,
                gender=gender,
                medical_record_number=f"MR{patient_id:06d}",
            )

            # First available doctor in the department, if any
            doctors = await self.get_doctors(hospital_id, department_id)

            entry = QueueEntry(
                id=self._next_entry_id,
                patient_id=patient_id,
                hospital_id=hospital_id,
                department_id=department_id,
                priority_level=priority_level,
                arrival_time=arrival_time or utcnow(),
                doctor_id=doctors[0].id if doctors else None,
                symptoms=symptoms,
                patient=patient,
                department_name=self._departments.get(department_id),
            )
            self._entries[entry.id] = entry
            self._next_entry_id += 1

        logger.info(
            f"Patient added to queue: entry {entry.id}",
            extra={
                "queue_entry_id": entry.id,
                "department_id": department_id,
                "priority_level": priority_level,
            },
        )
        return copy.deepcopy(entry)

    # ------------------------------------------------------------------
    # Doctors
    # ------------------------------------------------------------------

    async def get_doctors(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> List[Doctor]:
        return [
            copy.deepcopy(doctor) for doctor in self._doctors.values()
            if doctor.is_available
            and (hospital_id is None or doctor.hospital_id == hospital_id)
            and (department_id is None or doctor.department_id == department_id)
        ]

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    async def save_prediction(
        self,
        queue_entry_id: int,
        prediction: WaitTimePrediction,
    ) -> WaitPredictionRecord:
        self._lookup(queue_entry_id)

        async with self._store_lock:
            record = WaitPredictionRecord(
                id=self._next_prediction_id,
                queue_entry_id=queue_entry_id,
                predicted_wait_time=prediction.estimated_wait_time,
                confidence_score=prediction.confidence,
                prediction_factors=prediction.factors.to_dict(),
            )
            self._predictions[queue_entry_id].append(record)
            self._next_prediction_id += 1

        return copy.deepcopy(record)

    async def get_predictions(self, queue_entry_id: int) -> List[WaitPredictionRecord]:
        self._lookup(queue_entry_id)
        return copy.deepcopy(self._predictions.get(queue_entry_id, []))


# =============================================================================
# SAMPLE DATA
# =============================================================================

SAMPLE_DEPARTMENTS = {
    1: "Emergency Department",
    2: "General Medicine",
    3: "Cardiology",
}


def sample_doctors() -> List[Doctor]:
    return [
        Doctor(id=1, hospital_id=1, department_id=1, name="Dr. Sarah Johnson",
               specialization="Emergency Medicine", avg_consultation_time=20),
        Doctor(id=2, hospital_id=1, department_id=1, name="Dr. Michael Chen",
               specialization="Emergency Medicine", avg_consultation_time=18),
        Doctor(id=3, hospital_id=1, department_id=2, name="Dr. Emily Rodriguez",
               specialization="Internal Medicine", avg_consultation_time=15),
        Doctor(id=5, hospital_id=1, department_id=3, name="Dr. Robert Kim",
               specialization="Cardiology", avg_consultation_time=25),
    ]


def sample_queue_entries(now: Optional[datetime] = None) -> List[QueueEntry]:
    now = now or utcnow()
    return [
        QueueEntry(
            id=1, patient_id=1, hospital_id=1, department_id=1, doctor_id=1,
            priority_level=PriorityLevel.EMERGENCY,
            estimated_wait_time=25,
            symptoms="Chest pain, shortness of breath",
            arrival_time=now - timedelta(minutes=45),
            patient=Patient(id=1, name="John Smith", age=45, gender="Male",
                            phone="+1-555-1001", medical_record_number="MR001"),
        ),
        QueueEntry(
            id=2, patient_id=2, hospital_id=1, department_id=2, doctor_id=3,
            priority_level=PriorityLevel.ROUTINE,
            estimated_wait_time=45,
            symptoms="Annual checkup",
            arrival_time=now - timedelta(minutes=30),
            patient=Patient(id=2, name="Maria Garcia", age=32, gender="Female",
                            phone="+1-555-1002", medical_record_number="MR002"),
        ),
        QueueEntry(
            id=3, patient_id=3, hospital_id=1, department_id=3, doctor_id=5,
            priority_level=PriorityLevel.URGENT,
            estimated_wait_time=35,
            symptoms="Heart palpitations",
            arrival_time=now - timedelta(minutes=20),
            patient=Patient(id=3, name="William Johnson", age=67, gender="Male",
                            phone="+1-555-1003", medical_record_number="MR003"),
        ),
    ]


def create_sample_repository(now: Optional[datetime] = None) -> InMemoryQueueRepository:
    """In-memory store loaded with a demo hospital (3 departments, 4 doctors, 3 patients)."""
    repository = InMemoryQueueRepository(sample_doctors(), SAMPLE_DEPARTMENTS)
    for entry in sample_queue_entries(now):
        repository.add_entry(entry)
    logger.info("Sample queue data loaded")
    return repository
