"""
Wait Time Estimator Module.

Estimates how long a patient will wait from:
- Queue composition (patients of equal or higher urgency ahead)
- Doctor capacity in the department
- The patient's priority level
- Time of day (clinic peaks)

The estimate is a closed-form heuristic:

    base      = position * avg_consultation_time / doctor_count
    estimate  = base * priority_multiplier * time_of_day_factor
              + transition_buffer * position

The computation is synchronous and pure; fetching the queue and the roster
is the caller's job.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from .config import PriorityLevel, Settings, settings
from .models import Doctor, PredictionFactors, QueueEntry, QueueStatus, WaitTimePrediction

logger = logging.getLogger(__name__)


# Peak clinic hours (inclusive) run 30% slower; early/late hours 20% faster
PEAK_HOURS = ((9, 11), (14, 16))
PEAK_FACTOR = 1.3
OFF_PEAK_START = 8   # hours before this are off-peak
OFF_PEAK_END = 18    # hours after this are off-peak
OFF_PEAK_FACTOR = 0.8

LONG_QUEUE = 10
VERY_LONG_QUEUE = 20
WELL_STAFFED = 3
MIN_CONFIDENCE = 0.3
MAX_CONFIDENCE = 0.95


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def time_of_day_factor(hour: int) -> float:
    """Congestion multiplier for the given hour of day."""
    if any(start <= hour <= end for start, end in PEAK_HOURS):
        return PEAK_FACTOR
    if hour < OFF_PEAK_START or hour > OFF_PEAK_END:
        return OFF_PEAK_FACTOR
    return 1.0


def queue_position(target: QueueEntry, queue: Sequence[QueueEntry]) -> int:
    """
    1-based position of ``target`` in service order.

    Service order is priority ascending, then arrival ascending. A target
    that is not in ``queue`` goes to the back.
    """
    ordered = sorted(queue, key=QueueEntry.service_order_key)
    for index, entry in enumerate(ordered):
        if entry.id == target.id:
            return index + 1
    return len(queue) + 1


@dataclass
class EstimationContext:
    """Intermediate values of one estimate, kept for logging and tests."""
    relevant_queue: List[QueueEntry]
    department_doctors: List[Doctor]
    position: int = 0
    avg_consultation_time: float = 0.0
    priority_multiplier: float = 1.0
    time_factor: float = 1.0


class WaitTimeEstimator:
    """
    Heuristic wait-time estimator.

    Every call recomputes from its inputs; nothing is cached between calls,
    so predictions for different patients can run concurrently.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    def relevant_queue(self, queue_entry: QueueEntry, current_queue: Sequence[QueueEntry]) -> List[QueueEntry]:
        """Waiting entries in the same department with equal or higher urgency."""
        return [
            entry for entry in current_queue
            if entry.department_id == queue_entry.department_id
            and entry.priority_level <= queue_entry.priority_level
            and entry.status == QueueStatus.WAITING
        ]

    def department_doctors(self, queue_entry: QueueEntry, available_doctors: Sequence[Doctor]) -> List[Doctor]:
        return [
            doctor for doctor in available_doctors
            if doctor.department_id == queue_entry.department_id and doctor.is_available
        ]

    def calculate_confidence(self, queue_length: int, doctor_count: int, priority: int) -> float:
        """
        Confidence in an estimate, clamped to [0.3, 0.95].

        Long queues lower it; a well-staffed department and emergency cases
        (which are called almost immediately) raise it.
        """
        confidence = self.config.base_confidence

        if queue_length > LONG_QUEUE:
            confidence -= 0.1
        if queue_length > VERY_LONG_QUEUE:
            confidence -= 0.1

        if doctor_count > WELL_STAFFED:
            confidence += 0.1

        if priority == PriorityLevel.EMERGENCY:
            confidence += 0.1

        return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))

    def fallback_prediction(self, queue_entry: QueueEntry, queue_length: int, now: datetime) -> WaitTimePrediction:
        """Fixed estimate used when the department has no available doctor."""
        return WaitTimePrediction(
            patient_id=queue_entry.patient_id,
            estimated_wait_time=self.config.fallback_wait_minutes,
            confidence=self.config.fallback_confidence,
            factors=PredictionFactors(
                queue_length=queue_length,
                doctor_availability=0,
                priority_level=queue_entry.priority_level,
                avg_consultation_time=self.config.fallback_avg_consultation_minutes,
                time_of_day=now.strftime("%H:%M"),
            ),
        )

    def predict_wait_time(
        self,
        queue_entry: QueueEntry,
        current_queue: Sequence[QueueEntry],
        available_doctors: Sequence[Doctor],
        now: Optional[datetime] = None,
    ) -> WaitTimePrediction:
        """
        Predict the wait for ``queue_entry``.

        Args:
            queue_entry: The patient's entry
            current_queue: Entries currently in the store (any department/status)
            available_doctors: Doctor roster (any department/availability)
            now: Clock reading; its hour drives the time-of-day factor

        Returns:
            WaitTimePrediction, or the fixed fallback when no doctor is available
        """
        now = now or datetime.now().astimezone()

        context = EstimationContext(
            relevant_queue=self.relevant_queue(queue_entry, current_queue),
            department_doctors=self.department_doctors(queue_entry, available_doctors),
        )
        queue_length = len(context.relevant_queue)

        if not context.department_doctors:
            logger.info(
                "No available doctors, using fallback estimate",
                extra={"department_id": queue_entry.department_id, "patient_id": queue_entry.patient_id},
            )
            return self.fallback_prediction(queue_entry, queue_length, now)

        doctor_count = len(context.department_doctors)
        context.avg_consultation_time = (
            sum(doctor.avg_consultation_time for doctor in context.department_doctors) / doctor_count
        )
        context.position = queue_position(queue_entry, context.relevant_queue)
        context.priority_multiplier = PriorityLevel.get_wait_multiplier(queue_entry.priority_level)
        context.time_factor = time_of_day_factor(now.hour)

        estimate = context.position * context.avg_consultation_time / doctor_count
        estimate *= context.priority_multiplier
        estimate *= context.time_factor
        estimate += context.position * self.config.transition_buffer_minutes

        confidence = self.calculate_confidence(queue_length, doctor_count, queue_entry.priority_level)

        prediction = WaitTimePrediction(
            patient_id=queue_entry.patient_id,
            estimated_wait_time=round_half_up(estimate),
            confidence=round(confidence, 2),
            factors=PredictionFactors(
                queue_length=queue_length,
                doctor_availability=doctor_count,
                priority_level=queue_entry.priority_level,
                avg_consultation_time=round_half_up(context.avg_consultation_time),
                time_of_day=now.strftime("%H:%M"),
            ),
        )

        logger.debug(
            "Wait time estimated",
            extra={
                "patient_id": queue_entry.patient_id,
                "position": context.position,
                "estimate": prediction.estimated_wait_time,
                "confidence": prediction.confidence,
            },
        )

        return prediction
