"""
Patient Queue Agent - Queue Store Unit Tests

Run with: pytest tests/test_repository.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hospital_agents.patient_queue.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StaleEntryError,
    ValidationError,
)
from hospital_agents.patient_queue.models import (
    Doctor,
    PredictionFactors,
    QueueStatus,
    WaitTimePrediction,
)
from hospital_agents.patient_queue.repository import create_sample_repository


NOW = datetime(2024, 1, 15, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def repository():
    return create_sample_repository(now=NOW)


def run(coro):
    return asyncio.run(coro)


class TestReads:
    """Filtering and copy semantics."""

    def test_seeded_queue(self, repository):
        entries = run(repository.get_queue_entries())
        assert sorted(e.id for e in entries) == [1, 2, 3]
        assert run(repository.get_queue_entry(1)).department_name == "Emergency Department"

    def test_filters(self, repository):
        assert [e.id for e in run(repository.get_queue_entries(department_id=2))] == [2]
        assert run(repository.get_queue_entries(hospital_id=7)) == []

    def test_doctors_filtered_by_department(self, repository):
        doctors = run(repository.get_doctors(1, 1))
        assert [d.id for d in doctors] == [1, 2]

    def test_unavailable_doctors_hidden(self, repository):
        repository.add_doctor(Doctor(id=9, hospital_id=1, department_id=2, name="Dr. Off",
                                     avg_consultation_time=15, is_available=False))
        assert [d.id for d in run(repository.get_doctors(1, 2))] == [3]

    def test_unknown_entry(self, repository):
        with pytest.raises(NotFoundError):
            run(repository.get_queue_entry(99))

    def test_reads_are_copies(self, repository):
        entry = run(repository.get_queue_entry(1))
        entry.symptoms = "changed"
        entry.patient.name = "changed"

        stored = run(repository.get_queue_entry(1))
        assert stored.symptoms == "Chest pain, shortness of breath"
        assert stored.patient.name == "John Smith"


class TestUpdates:
    """Field rules and lifecycle transitions."""

    def test_priority_update(self, repository):
        updated = run(repository.update_queue_entry(2, priority_level=2))
        assert updated.priority_level == 2
        assert run(repository.get_queue_entry(2)).priority_level == 2

    def test_invalid_priority_leaves_entry_untouched(self, repository):
        with pytest.raises(ValidationError):
            run(repository.update_queue_entry(2, priority_level=5, estimated_wait_time=1))

        entry = run(repository.get_queue_entry(2))
        assert entry.priority_level == 3
        assert entry.estimated_wait_time == 45

    def test_arrival_time_is_immutable(self, repository):
        with pytest.raises(InvalidTransitionError):
            run(repository.update_queue_entry(1, arrival_time=NOW))

    def test_unknown_field_rejected(self, repository):
        with pytest.raises(ValidationError):
            run(repository.update_queue_entry(1, room="B12"))

    def test_update_unknown_entry(self, repository):
        with pytest.raises(NotFoundError):
            run(repository.update_queue_entry(99, priority_level=1))

    def test_lifecycle_records_timestamps(self, repository):
        started = run(repository.update_queue_entry(1, status="in_consultation"))
        assert started.status == QueueStatus.IN_CONSULTATION
        assert started.consultation_start_time is not None
        assert started.actual_wait_time >= 45

        finished = run(repository.update_queue_entry(1, status=QueueStatus.COMPLETED))
        assert finished.consultation_end_time is not None
        assert [e.id for e in run(repository.get_queue_entries())] == [2, 3]

    def test_terminal_status_cannot_reopen(self, repository):
        run(repository.update_queue_entry(2, status="cancelled"))
        with pytest.raises(InvalidTransitionError):
            run(repository.update_queue_entry(2, status="waiting"))

    def test_same_status_is_a_no_op(self, repository):
        entry = run(repository.update_queue_entry(1, status="waiting"))
        assert entry.status == QueueStatus.WAITING

    def test_expected_status_guards_update(self, repository):
        run(repository.update_queue_entry(1, status="in_consultation"))

        with pytest.raises(StaleEntryError, match="is in_consultation, expected waiting"):
            run(repository.update_queue_entry(1, expected_status="waiting", priority_level=2))

        assert run(repository.get_queue_entry(1)).priority_level == 1

    def test_expected_status_matches(self, repository):
        updated = run(repository.update_queue_entry(
            2, expected_status=QueueStatus.WAITING, priority_level=2,
        ))
        assert updated.priority_level == 2

    def test_concurrent_transitions_serialized(self, repository):
        async def race():
            return await asyncio.gather(
                repository.update_queue_entry(1, status="in_consultation"),
                repository.update_queue_entry(1, status="cancelled"),
                return_exceptions=True,
            )

        results = run(race())
        errors = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(errors) == 1
        assert run(repository.get_queue_entry(1)).status == QueueStatus.IN_CONSULTATION


class TestAddPatient:
    def test_registers_patient_and_entry(self, repository):
        entry = run(repository.add_patient_to_queue(
            name="Ada Lovelace",
            symptoms="severe headache",
            priority_level=2,
            hospital_id=1,
            department_id=1,
            age=36,
            arrival_time=NOW,
        ))

        assert entry.id == 4
        assert entry.patient_id == 4
        assert entry.patient.medical_record_number == "MR000004"
        assert entry.doctor_id == 1
        assert entry.status == QueueStatus.WAITING
        assert entry.department_name == "Emergency Department"
        assert len(run(repository.get_queue_entries())) == 4

    def test_no_doctor_in_department(self, repository):
        entry = run(repository.add_patient_to_queue("Lone Patient", "rash", 4, 1, 8))
        assert entry.doctor_id is None

    def test_invalid_priority(self, repository):
        with pytest.raises(ValidationError):
            run(repository.add_patient_to_queue("Bad", "rash", 0, 1, 1))
        assert len(run(repository.get_queue_entries())) == 3


class TestPredictions:
    def test_saved_in_order(self, repository):
        factors = PredictionFactors(
            queue_length=1, doctor_availability=2, priority_level=1,
            avg_consultation_time=19, time_of_day="12:30",
        )
        for estimate in (7, 9):
            run(repository.save_prediction(1, WaitTimePrediction(1, estimate, 0.9, factors)))

        records = run(repository.get_predictions(1))
        assert [r.predicted_wait_time for r in records] == [7, 9]
        assert records[0].prediction_factors["time_of_day"] == "12:30"
        assert records[0].id < records[1].id

    def test_no_predictions(self, repository):
        assert run(repository.get_predictions(2)) == []


class TestReadModels:
    """Queue status, position and emergency cases."""

    def test_queue_status(self, repository):
        status = run(repository.get_queue_status(1))
        assert status == {
            "total_patients": 3,
            "avg_wait_time": 35,
            "critical_count": 1,
            "urgent_count": 1,
            "department_breakdown": {
                "Emergency Department": 1,
                "General Medicine": 1,
                "Cardiology": 1,
            },
        }

    def test_empty_queue_status(self, repository):
        status = run(repository.get_queue_status(42))
        assert status["total_patients"] == 0
        assert status["avg_wait_time"] == 0

    def test_patient_position(self, repository):
        assert run(repository.get_patient_position(1)) == 1
        assert run(repository.get_patient_position(99)) is None

    def test_position_counts_earlier_equal_priority(self, repository):
        entry = run(repository.add_patient_to_queue(
            "Late Arrival", "chest pain", 1, 1, 1, arrival_time=NOW + timedelta(minutes=1),
        ))
        assert run(repository.get_patient_position(entry.patient_id)) == 2
        assert run(repository.get_patient_position(1)) == 1

    def test_emergency_cases(self, repository):
        cases = run(repository.get_emergency_cases(1, now=NOW))
        assert len(cases) == 1
        assert cases[0]["patient_name"] == "John Smith"
        assert cases[0]["wait_time"] == 45
        assert cases[0]["department"] == "Emergency Department"
