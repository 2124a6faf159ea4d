"""
Doctor Allocation Module.

Assigns queued patients to available doctors, department by department.

Each doctor's shift is a "bin" whose capacity is the number of consultations
that fit in it:

    capacity = floor(shift_minutes / avg_consultation_time)

Patients are the "items", taken in service order (priority, then arrival).
Doctors are filled one after another in roster order, so this is a
single-pass greedy packing and not a globally balanced one. Entries are
taken as given: callers that only want waiting patients pass only those.
Patients a doctor is already seeing are not counted against their capacity.
"""

import logging
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional, Sequence

from .config import Settings, settings
from .models import Allocation, Doctor, QueueEntry

logger = logging.getLogger(__name__)


class AllocationOptimizer:
    """Greedy per-department doctor allocation."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    def shift_capacity(self, doctor: Doctor) -> int:
        """Maximum patients a doctor can see in one shift."""
        return int(self.config.shift_minutes // doctor.avg_consultation_time)

    def department_queues(self, queue_entries: Sequence[QueueEntry]) -> Dict[int, Deque[QueueEntry]]:
        """Entries grouped by department, each in service order."""
        grouped: Dict[int, List[QueueEntry]] = OrderedDict()
        for entry in queue_entries:
            grouped.setdefault(entry.department_id, []).append(entry)

        return {
            department_id: deque(sorted(entries, key=QueueEntry.service_order_key))
            for department_id, entries in grouped.items()
        }

    def optimize_allocation(
        self,
        queue_entries: Sequence[QueueEntry],
        doctors: Sequence[Doctor],
    ) -> List[Allocation]:
        """
        Allocate waiting patients to doctors.

        Unavailable doctors are skipped. An available doctor whose department
        has no patients left gets an empty allocation. No patient is assigned
        twice within one call.
        """
        queues = self.department_queues(queue_entries)
        allocations: List[Allocation] = []

        for doctor in doctors:
            if not doctor.is_available:
                continue

            queue = queues.get(doctor.department_id, deque())
            capacity = self.shift_capacity(doctor)

            assigned: List[int] = []
            while queue and len(assigned) < capacity:
                assigned.append(queue.popleft().patient_id)

            allocations.append(Allocation(doctor_id=doctor.id, patient_ids=assigned))

        unassigned = sum(len(queue) for queue in queues.values())
        logger.info(
            f"Allocation complete: {len(allocations)} doctors, "
            f"{sum(len(a.patient_ids) for a in allocations)} assigned, "
            f"{unassigned} over capacity"
        )

        return allocations
