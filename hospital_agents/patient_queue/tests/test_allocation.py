"""
Patient Queue Agent - Allocation Optimizer Unit Tests

Run with: pytest tests/test_allocation.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from hospital_agents.patient_queue.allocation import AllocationOptimizer
from hospital_agents.patient_queue.config import Settings
from hospital_agents.patient_queue.exceptions import ValidationError
from hospital_agents.patient_queue.models import Doctor, QueueEntry


NOW = datetime(2024, 1, 15, 12, 30, tzinfo=timezone.utc)


def make_entry(entry_id, priority, minutes_ago, department_id=1, status="waiting"):
    return QueueEntry(
        id=entry_id,
        patient_id=100 + entry_id,
        hospital_id=1,
        department_id=department_id,
        priority_level=priority,
        arrival_time=NOW - timedelta(minutes=minutes_ago),
        status=status,
    )


def make_doctor(doctor_id, avg, department_id=1, available=True):
    return Doctor(
        id=doctor_id,
        hospital_id=1,
        department_id=department_id,
        name=f"Dr. {doctor_id}",
        avg_consultation_time=avg,
        is_available=available,
    )


@pytest.fixture
def optimizer():
    return AllocationOptimizer(Settings())


class TestShiftCapacity:
    """Capacity is floor(shift minutes / average consultation)."""

    @pytest.mark.parametrize("avg,capacity", [(20, 24), (25, 19), (7, 68), (480, 1), (500, 0)])
    def test_capacity(self, optimizer, avg, capacity):
        assert optimizer.shift_capacity(make_doctor(1, avg)) == capacity

    def test_shift_length_configurable(self):
        optimizer = AllocationOptimizer(Settings(shift_minutes=240))
        assert optimizer.shift_capacity(make_doctor(1, 20)) == 12

    def test_non_positive_consultation_time_rejected(self):
        with pytest.raises(ValidationError):
            make_doctor(1, 0)


class TestOptimizeAllocation:
    """Greedy packing per department."""

    def test_most_urgent_patients_fill_first_doctor(self, optimizer):
        entries = [
            make_entry(1, priority=3, minutes_ago=50),
            make_entry(2, priority=1, minutes_ago=5),
            make_entry(3, priority=3, minutes_ago=60),
        ]
        doctors = [make_doctor(1, 240), make_doctor(2, 240)]

        allocations = optimizer.optimize_allocation(entries, doctors)

        assert [a.doctor_id for a in allocations] == [1, 2]
        assert allocations[0].patient_ids == [102, 103]
        assert allocations[1].patient_ids == [101]

    def test_no_patient_assigned_twice(self, optimizer):
        entries = [make_entry(i, priority=(i % 4) + 1, minutes_ago=i) for i in range(1, 40)]
        doctors = [make_doctor(1, 30), make_doctor(2, 45), make_doctor(3, 60)]

        allocations = optimizer.optimize_allocation(entries, doctors)
        assigned = [pid for a in allocations for pid in a.patient_ids]

        assert len(assigned) == len(set(assigned))

    def test_capacity_never_exceeded(self, optimizer):
        entries = [make_entry(i, priority=3, minutes_ago=i) for i in range(1, 60)]
        doctors = [make_doctor(1, 30), make_doctor(2, 45)]

        allocations = optimizer.optimize_allocation(entries, doctors)

        assert len(allocations[0].patient_ids) == 16
        assert len(allocations[1].patient_ids) == 10

    def test_unavailable_doctors_skipped(self, optimizer):
        entries = [make_entry(1, priority=2, minutes_ago=10)]
        doctors = [make_doctor(1, 20, available=False), make_doctor(2, 20)]

        allocations = optimizer.optimize_allocation(entries, doctors)

        assert [a.doctor_id for a in allocations] == [2]
        assert allocations[0].patient_ids == [101]

    def test_doctor_without_patients_gets_empty_list(self, optimizer):
        entries = [make_entry(1, priority=2, minutes_ago=10, department_id=1)]
        doctors = [make_doctor(1, 20, department_id=1), make_doctor(2, 20, department_id=2)]

        allocations = optimizer.optimize_allocation(entries, doctors)

        assert allocations[1].doctor_id == 2
        assert allocations[1].patient_ids == []

    def test_departments_do_not_mix(self, optimizer):
        entries = [
            make_entry(1, priority=1, minutes_ago=10, department_id=2),
            make_entry(2, priority=3, minutes_ago=10, department_id=1),
        ]
        doctors = [make_doctor(1, 20, department_id=1), make_doctor(2, 20, department_id=2)]

        allocations = optimizer.optimize_allocation(entries, doctors)

        assert allocations[0].patient_ids == [102]
        assert allocations[1].patient_ids == [101]

    def test_entries_allocated_whatever_their_status(self, optimizer):
        entries = [make_entry(1, priority=1, minutes_ago=10, status="in_consultation")]
        allocations = optimizer.optimize_allocation(entries, [make_doctor(1, 20)])
        assert allocations[0].patient_ids == [101]

    def test_mixed_statuses_keep_service_order(self, optimizer):
        entries = [
            make_entry(1, priority=3, minutes_ago=10),
            make_entry(2, priority=1, minutes_ago=5, status="in_consultation"),
        ]
        allocations = optimizer.optimize_allocation(entries, [make_doctor(1, 20)])
        assert allocations[0].patient_ids == [102, 101]

    def test_empty_inputs(self, optimizer):
        assert optimizer.optimize_allocation([], []) == []
        assert optimizer.optimize_allocation([], [make_doctor(1, 20)])[0].patient_ids == []
