"""
Patient Queue Agent - Service Layer

Orchestrates the queue flows used by the REST API:

    fetch (repository) ──► compute (pure engine) ──► enrich (optional)
                                                          │
                        persist (repository) ◄────────────┘

The engine components (TriageScorer, WaitTimeEstimator, AllocationOptimizer,
EscalationPolicy) are pure and hold no state; everything mutable lives in
the repository. ``now`` can be injected into every flow for deterministic
results.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from .allocation import AllocationOptimizer
from .config import PriorityLevel, Settings, settings
from .enrichment import (
    AllocationContext,
    AllocationEnricher,
    WaitTimeContext,
    WaitTimeEnricher,
    apply_allocation_enrichment,
    apply_wait_time_enrichment,
)
from .escalation import EscalationPolicy, EscalationReport
from .exceptions import NotFoundError, StaleEntryError
from .models import (
    Allocation,
    Consciousness,
    EmergencyProtocol,
    EscalationCheck,
    QueueEntry,
    QueueStatus,
    TriageScore,
    VitalSigns,
    WaitTimePrediction,
    elapsed_minutes,
    utcnow,
)
from .repository import QueueRepository
from .triage import TriageScorer, get_scorer, priority_for_category
from .wait_time import WaitTimeEstimator

logger = logging.getLogger(__name__)


@dataclass
class TriageAssessment:
    """Outcome of a triage assessment on one queue entry."""
    queue_entry_id: int
    triage_score: TriageScore
    escalation: EscalationCheck
    protocols: List[EmergencyProtocol]
    previous_priority_level: int
    new_priority_level: int
    wait_time_minutes: int

    @property
    def priority_updated(self) -> bool:
        return self.new_priority_level != self.previous_priority_level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_entry_id": self.queue_entry_id,
            "triage_score": self.triage_score.to_dict(),
            "escalation": self.escalation.to_dict(),
            "protocols": [protocol.to_dict() for protocol in self.protocols],
            "priority_updated": self.priority_updated,
            "previous_priority_level": self.previous_priority_level,
            "new_priority_level": self.new_priority_level,
            "wait_time_minutes": self.wait_time_minutes,
        }


@dataclass
class AllocationPlan:
    """Doctor allocation for a hospital or department."""
    allocations: List[Allocation] = field(default_factory=list)
    total_patients: int = 0
    total_doctors: int = 0
    message: Optional[str] = None
    strategy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocations": [allocation.to_dict() for allocation in self.allocations],
            "total_patients": self.total_patients,
            "total_doctors": self.total_doctors,
            "message": self.message,
            "strategy": self.strategy,
        }


class QueueService:
    """
    Queue flows on top of a QueueRepository.

    Usage:
        service = QueueService(create_sample_repository())
        prediction = await service.predict_wait_time(1, use_ai=False)
    """

    def __init__(
        self,
        repository: QueueRepository,
        scorer: Optional[TriageScorer] = None,
        estimator: Optional[WaitTimeEstimator] = None,
        optimizer: Optional[AllocationOptimizer] = None,
        escalation_policy: Optional[EscalationPolicy] = None,
        wait_time_enricher: Optional[WaitTimeEnricher] = None,
        allocation_enricher: Optional[AllocationEnricher] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        self.repository = repository
        self.scorer = scorer or get_scorer()
        self.estimator = estimator or WaitTimeEstimator(self.config)
        self.optimizer = optimizer or AllocationOptimizer(self.config)
        self.escalation_policy = escalation_policy or EscalationPolicy(self.scorer)
        self.wait_time_enricher = wait_time_enricher
        self.allocation_enricher = allocation_enricher

    # =========================================================================
    # QUEUE
    # =========================================================================

    async def list_queue(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
    ) -> List[QueueEntry]:
        entries = await self.repository.get_queue_entries(hospital_id, department_id)
        return sorted(entries, key=QueueEntry.service_order_key)

    async def register_patient(
        self,
        name: str,
        symptoms: str,
        priority_level: int,
        hospital_id: int,
        department_id: int,
        age: Optional[int] = None,
        phone: Optional[str] = None,
        gender: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[QueueEntry, WaitTimePrediction]:
        """
        Add a patient to a department queue and give them an initial estimate.

        The initial estimate is always the local heuristic; enrichment is only
        applied when a prediction is requested explicitly.
        """
        entry = await self.repository.add_patient_to_queue(
            name=name,
            symptoms=symptoms,
            priority_level=priority_level,
            hospital_id=hospital_id,
            department_id=department_id,
            age=age,
            phone=phone,
            gender=gender,
            arrival_time=now,
        )
        prediction = await self.predict_wait_time(entry.id, use_ai=False, now=now)
        entry = await self.repository.get_queue_entry(entry.id)
        return entry, prediction

    async def update_status(self, entry_id: int, status: Union[QueueStatus, str]) -> QueueEntry:
        entry = await self.repository.update_queue_entry(entry_id, status=QueueStatus(status))
        logger.info(
            f"Queue entry {entry_id} is now {entry.status.value}",
            extra={"queue_entry_id": entry_id, "status": entry.status.value},
        )
        return entry

    async def queue_status(self, hospital_id: Optional[int] = None) -> Dict[str, Any]:
        return await self.repository.get_queue_status(hospital_id)

    async def patient_position(self, patient_id: int) -> int:
        position = await self.repository.get_patient_position(patient_id)
        if position is None:
            raise NotFoundError("Patient in queue", patient_id)
        return position

    # =========================================================================
    # WAIT TIME
    # =========================================================================

    async def predict_wait_time(
        self,
        entry_id: int,
        use_ai: bool = True,
        now: Optional[datetime] = None,
    ) -> WaitTimePrediction:
        """
        Predict, optionally enrich, persist and annotate the entry.

        Raises:
            NotFoundError: unknown queue entry
        """
        now = now or datetime.now().astimezone()
        entry = await self.repository.get_queue_entry(entry_id)
        current_queue = await self.repository.get_queue_entries(entry.hospital_id, entry.department_id)
        doctors = await self.repository.get_doctors(entry.hospital_id, entry.department_id)

        prediction = self.estimator.predict_wait_time(entry, current_queue, doctors, now=now)

        if use_ai and self.wait_time_enricher is not None:
            context = WaitTimeContext(
                queue_entry=entry,
                prediction=prediction,
                queue_length=len(current_queue),
                doctor_count=len(doctors),
                now=now,
            )
            outcome = await self.wait_time_enricher.try_enrich(context)
            prediction = apply_wait_time_enrichment(prediction, outcome)

        await self.repository.save_prediction(entry.id, prediction)
        await self.repository.update_queue_entry(
            entry.id, estimated_wait_time=prediction.estimated_wait_time
        )

        logger.info(
            f"Wait time predicted for queue entry {entry.id}: {prediction.estimated_wait_time} min",
            extra={
                "queue_entry_id": entry.id,
                "confidence": prediction.confidence,
                "enriched": prediction.factors.ai_insights is not None,
            },
        )
        return prediction

    # =========================================================================
    # TRIAGE AND ESCALATION
    # =========================================================================

    async def assess_triage(
        self,
        entry_id: int,
        vital_signs: Optional[VitalSigns] = None,
        pain_level: Optional[int] = None,
        consciousness: Optional[Union[Consciousness, str]] = None,
        now: Optional[datetime] = None,
    ) -> TriageAssessment:
        """
        Score a queued patient and revise their priority from the category.

        Only waiting entries are re-prioritized. The revision is written
        with ``expected_status=WAITING``, so an entry called in or cancelled
        between the read and the write keeps its stored priority and the
        assessment reports no update.

        Raises:
            NotFoundError: unknown queue entry
        """
        entry = await self.repository.get_queue_entry(entry_id)
        wait_time = elapsed_minutes(entry.arrival_time, now)

        triage_score = self.scorer.calculate_triage_score(
            entry.symptoms,
            entry.patient_age,
            vital_signs,
            pain_level,
            consciousness,
            wait_time,
        )
        escalation = self.scorer.requires_immediate_escalation(entry.symptoms, wait_time, vital_signs)
        protocols = self.scorer.get_applicable_protocols(entry.symptoms)

        new_priority = priority_for_category(triage_score.category)
        if new_priority != entry.priority_level:
            new_priority = await self._revise_priority(entry, new_priority, triage_score)

        assessment = TriageAssessment(
            queue_entry_id=entry.id,
            triage_score=triage_score,
            escalation=escalation,
            protocols=protocols,
            previous_priority_level=entry.priority_level,
            new_priority_level=new_priority,
            wait_time_minutes=wait_time,
        )

        if escalation.required:
            logger.warning(
                f"Immediate escalation for queue entry {entry.id}: {escalation.reason}",
                extra={"queue_entry_id": entry.id},
            )

        return assessment

    async def _revise_priority(
        self,
        entry: QueueEntry,
        new_priority: int,
        triage_score: TriageScore,
    ) -> int:
        """Persist a revised priority; returns the priority the entry ends up with."""
        if not entry.is_waiting:
            logger.info(
                f"Queue entry {entry.id} is {entry.status.value}, priority left unchanged",
                extra={"queue_entry_id": entry.id},
            )
            return entry.priority_level

        try:
            await self.repository.update_queue_entry(
                entry.id,
                expected_status=QueueStatus.WAITING,
                priority_level=new_priority,
            )
        except StaleEntryError as e:
            logger.info(
                f"Priority revision dropped: {e}",
                extra={"queue_entry_id": entry.id},
            )
            return entry.priority_level

        logger.warning(
            f"Priority revised for queue entry {entry.id}: "
            f"{PriorityLevel.get_label(entry.priority_level)} -> {PriorityLevel.get_label(new_priority)}",
            extra={"queue_entry_id": entry.id, "category": triage_score.category.value},
        )
        return new_priority

    async def emergency_overview(
        self,
        hospital_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EscalationReport:
        entries = await self.repository.get_queue_entries(hospital_id)
        return self.escalation_policy.evaluate(entries, now=now)

    async def emergency_cases(
        self,
        hospital_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Waiting emergency-priority patients, longest wait first, for the staff alert feed."""
        cases = await self.repository.get_emergency_cases(hospital_id, now=now)
        return sorted(cases, key=lambda case: case["wait_time"], reverse=True)

    async def emergency_recommendations(
        self,
        hospital_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Guidance for emergency patients, each with a fresh local estimate."""
        entries = await self.repository.get_queue_entries(hospital_id)
        predictions: Dict[int, WaitTimePrediction] = {}

        for entry in entries:
            if entry.priority_level != PriorityLevel.EMERGENCY:
                continue
            department_queue = [e for e in entries if e.department_id == entry.department_id]
            doctors = await self.repository.get_doctors(entry.hospital_id, entry.department_id)
            predictions[entry.id] = self.estimator.predict_wait_time(
                entry, department_queue, doctors, now=now
            )

        return self.escalation_policy.emergency_recommendations(entries, predictions)

    def applicable_protocols(self, symptoms: str) -> List[EmergencyProtocol]:
        return self.scorer.get_applicable_protocols(symptoms)

    # =========================================================================
    # ALLOCATION
    # =========================================================================

    async def optimize_allocation(
        self,
        hospital_id: Optional[int] = None,
        department_id: Optional[int] = None,
        use_ai: bool = True,
        now: Optional[datetime] = None,
    ) -> AllocationPlan:
        entries = await self.repository.get_queue_entries(hospital_id, department_id)
        doctors = await self.repository.get_doctors(hospital_id, department_id)

        if not entries:
            return AllocationPlan(total_doctors=len(doctors), message="No patients in queue")

        allocations = self.optimizer.optimize_allocation(entries, doctors)
        plan = AllocationPlan(
            allocations=allocations,
            total_patients=len(entries),
            total_doctors=len(doctors),
        )

        if use_ai and self.allocation_enricher is not None:
            context = AllocationContext(
                queue_entries=entries,
                doctors=doctors,
                allocations=allocations,
                now=now or utcnow(),
            )
            outcome = await self.allocation_enricher.try_enrich(context)
            plan.allocations, plan.strategy = apply_allocation_enrichment(allocations, outcome)

        return plan
