"""
Escalation Policy Module.

Re-scores the emergency and urgent part of a queue and pulls out the
patients that staff must see now. Nothing is persisted: every call
recomputes the view from the entries it is given.

A patient is escalated when either
- the triage score sets escalation_required (score >= 7 or wait > 90 min), or
- one of the immediate-escalation rules applies (life-threatening symptom,
  high-priority symptom waiting over an hour, SpO2 below 90).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import PriorityLevel, TriageCategory
from .models import (
    EscalationCheck,
    PrioritizedPatient,
    QueueEntry,
    QueueStatus,
    TriageScore,
    WaitTimePrediction,
    elapsed_minutes,
    utcnow,
)
from .triage import TriageScorer, get_scorer

logger = logging.getLogger(__name__)


@dataclass
class EscalationFlag:
    """A patient surfaced for immediate staff attention."""
    queue_entry_id: int
    patient_id: int
    triage_score: TriageScore
    escalation: EscalationCheck
    wait_time_minutes: int

    @property
    def reason(self) -> str:
        if self.escalation.required:
            return self.escalation.reason
        return (
            f"Triage score {self.triage_score.score} "
            f"({self.triage_score.category.value}) after {self.wait_time_minutes} minutes"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_entry_id": self.queue_entry_id,
            "patient_id": self.patient_id,
            "triage_score": self.triage_score.to_dict(),
            "escalation": self.escalation.to_dict(),
            "wait_time_minutes": self.wait_time_minutes,
            "reason": self.reason,
        }


@dataclass
class EscalationReport:
    """Prioritized emergency list plus the separate escalation list."""
    total_emergencies: int
    prioritized_patients: List[PrioritizedPatient] = field(default_factory=list)
    escalations: List[EscalationFlag] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def critical_count(self) -> int:
        return sum(
            1 for p in self.prioritized_patients
            if p.triage_score.category == TriageCategory.RESUSCITATION
        )

    @property
    def emergent_count(self) -> int:
        return sum(
            1 for p in self.prioritized_patients
            if p.triage_score.category == TriageCategory.EMERGENT
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_emergencies": self.total_emergencies,
            "prioritized_patients": [p.to_dict() for p in self.prioritized_patients],
            "escalations": [e.to_dict() for e in self.escalations],
            "critical_count": self.critical_count,
            "emergent_count": self.emergent_count,
            "generated_at": self.generated_at.isoformat(),
        }


class EscalationPolicy:
    """Stateless escalation monitor over priority 1-2 queue entries."""

    MONITORED_PRIORITY = PriorityLevel.URGENT

    def __init__(self, scorer: Optional[TriageScorer] = None):
        self.scorer = scorer or get_scorer()

    def monitored_entries(self, queue_entries: Sequence[QueueEntry]) -> List[QueueEntry]:
        return [
            entry for entry in queue_entries
            if entry.priority_level <= self.MONITORED_PRIORITY
            and entry.status == QueueStatus.WAITING
        ]

    def evaluate(self, queue_entries: Sequence[QueueEntry], now: Optional[datetime] = None) -> EscalationReport:
        """
        Re-score monitored entries and collect escalations.

        Args:
            queue_entries: Entries to consider (non-monitored ones are ignored)
            now: Clock reading used to derive every wait time

        Returns:
            EscalationReport with the prioritized list and the escalation list
        """
        now = now or utcnow()
        monitored = self.monitored_entries(queue_entries)
        by_id = {entry.id: entry for entry in monitored}

        prioritized = self.scorer.prioritize_patients(
            [entry.to_candidate() for entry in monitored], now=now
        )

        escalations: List[EscalationFlag] = []
        for ranked in prioritized:
            entry = by_id[ranked.patient.id]
            wait_time = elapsed_minutes(entry.arrival_time, now)
            check = self.scorer.requires_immediate_escalation(
                ranked.patient.symptoms, wait_time, ranked.patient.vital_signs
            )
            if not (ranked.triage_score.escalation_required or check.required):
                continue

            flag = EscalationFlag(
                queue_entry_id=entry.id,
                patient_id=entry.patient_id,
                triage_score=ranked.triage_score,
                escalation=check,
                wait_time_minutes=wait_time,
            )
            escalations.append(flag)
            logger.warning(
                "ESCALATION FLAGGED",
                extra={
                    "queue_entry_id": entry.id,
                    "score": ranked.triage_score.score,
                    "reason": flag.reason,
                },
            )

        return EscalationReport(
            total_emergencies=len(monitored),
            prioritized_patients=prioritized,
            escalations=escalations,
            generated_at=now,
        )

    def emergency_recommendations(
        self,
        queue_entries: Sequence[QueueEntry],
        predictions: Optional[Mapping[int, WaitTimePrediction]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Staff guidance for emergency (priority 1) entries, earliest arrival first.

        ``predictions`` maps queue entry id to its latest prediction; entries
        without one report a wait of 0.
        """
        predictions = predictions or {}
        emergencies = sorted(
            (
                entry for entry in queue_entries
                if entry.priority_level == PriorityLevel.EMERGENCY
                and entry.status == QueueStatus.WAITING
            ),
            key=lambda entry: entry.arrival_time,
        )

        recommendations = []
        for entry in emergencies:
            prediction = predictions.get(entry.id)
            recommendations.append({
                "queue_entry_id": entry.id,
                "patient_id": entry.patient_id,
                "patient_name": entry.patient.name if entry.patient else None,
                "symptoms": entry.symptoms,
                "wait_time": prediction.estimated_wait_time if prediction else 0,
                "urgency_level": self.scorer.urgency_level(entry.symptoms),
                "recommendation": self.scorer.emergency_recommendation(entry.symptoms),
            })
        return recommendations
