"""
Patient Queue Agent - Wait Time Estimator Unit Tests

Run with: pytest tests/test_wait_time.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from hospital_agents.patient_queue.config import Settings
from hospital_agents.patient_queue.models import Doctor, Patient, QueueEntry
from hospital_agents.patient_queue.wait_time import (
    WaitTimeEstimator,
    queue_position,
    round_half_up,
    time_of_day_factor,
)


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
        patient=Patient(id=100 + entry_id, name=f"Patient {entry_id}"),
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
def estimator():
    return WaitTimeEstimator(Settings())


@pytest.fixture
def queue():
    return [
        make_entry(1, priority=1, minutes_ago=30),
        make_entry(2, priority=3, minutes_ago=20),
        make_entry(3, priority=3, minutes_ago=10),
    ]


@pytest.fixture
def doctors():
    return [make_doctor(1, 20), make_doctor(2, 10)]


class TestPrediction:
    """Closed-form estimate from queue, doctors, priority and time of day."""

    def test_routine_patient_at_back_of_queue(self, estimator, queue, doctors):
        """Position 3, avg 15 min, 2 doctors: 22.5 + 15 buffer = 37.5 -> 38."""
        prediction = estimator.predict_wait_time(queue[2], queue, doctors, now=NOW)

        assert prediction.estimated_wait_time == 38
        assert prediction.confidence == 0.8
        assert prediction.patient_id == 103
        assert prediction.factors.to_dict() == {
            "queue_length": 3,
            "doctor_availability": 2,
            "priority_level": 3,
            "avg_consultation_time": 15,
            "time_of_day": "12:30",
        }

    def test_emergency_patient_rounds_half_up(self, estimator, queue, doctors):
        """Position 1: 7.5 * 0.2 + 5 = 6.5 -> 7."""
        prediction = estimator.predict_wait_time(queue[0], queue, doctors, now=NOW)

        assert prediction.estimated_wait_time == 7
        assert prediction.confidence == 0.9
        assert prediction.factors.queue_length == 1

    def test_emergency_waits_less_than_routine(self, estimator, queue, doctors):
        emergency = estimator.predict_wait_time(queue[0], queue, doctors, now=NOW)
        routine = estimator.predict_wait_time(queue[1], queue, doctors, now=NOW)
        assert emergency.estimated_wait_time < routine.estimated_wait_time

    def test_peak_hours_slow_the_queue(self, estimator, queue, doctors):
        peak = NOW.replace(hour=10)
        prediction = estimator.predict_wait_time(queue[2], queue, doctors, now=peak)
        # 22.5 * 1.3 + 15 = 44.25
        assert prediction.estimated_wait_time == 44
        assert prediction.factors.time_of_day == "10:30"

    def test_non_waiting_entries_ignored(self, estimator, queue, doctors):
        queue.append(make_entry(4, priority=1, minutes_ago=60, status="in_consultation"))
        prediction = estimator.predict_wait_time(queue[2], queue, doctors, now=NOW)
        assert prediction.factors.queue_length == 3
        assert prediction.estimated_wait_time == 38

    def test_other_departments_ignored(self, estimator, queue, doctors):
        queue.append(make_entry(4, priority=1, minutes_ago=60, department_id=2))
        doctors.append(make_doctor(3, 60, department_id=2))
        prediction = estimator.predict_wait_time(queue[2], queue, doctors, now=NOW)
        assert prediction.estimated_wait_time == 38

    def test_same_inputs_same_result(self, estimator, queue, doctors):
        first = estimator.predict_wait_time(queue[1], queue, doctors, now=NOW)
        second = estimator.predict_wait_time(queue[1], queue, doctors, now=NOW)
        assert first.to_dict() == second.to_dict()


class TestFallback:
    """No available doctor in the department."""

    def test_no_doctors(self, estimator, queue):
        prediction = estimator.predict_wait_time(queue[1], queue, [], now=NOW)

        assert prediction.estimated_wait_time == 120
        assert prediction.confidence == 0.3
        assert prediction.factors.doctor_availability == 0
        assert prediction.factors.avg_consultation_time == 20
        assert prediction.factors.queue_length == 3

    def test_only_unavailable_doctors(self, estimator, queue):
        doctors = [make_doctor(1, 20, available=False)]
        prediction = estimator.predict_wait_time(queue[1], queue, doctors, now=NOW)
        assert prediction.estimated_wait_time == 120

    def test_doctors_in_other_department_only(self, estimator, queue):
        doctors = [make_doctor(1, 20, department_id=2)]
        prediction = estimator.predict_wait_time(queue[1], queue, doctors, now=NOW)
        assert prediction.confidence == 0.3

    def test_fallback_values_are_configurable(self, queue):
        estimator = WaitTimeEstimator(Settings(fallback_wait_minutes=90, fallback_confidence=0.4))
        prediction = estimator.predict_wait_time(queue[1], queue, [], now=NOW)
        assert prediction.estimated_wait_time == 90
        assert prediction.confidence == 0.4


class TestConfidence:
    """Confidence adjustments and clamping."""

    @pytest.mark.parametrize("queue_length,doctor_count,priority,expected", [
        (3, 2, 3, 0.8),
        (11, 1, 3, 0.7),
        (21, 1, 3, 0.6),
        (3, 4, 3, 0.9),
        (3, 2, 1, 0.9),
        (5, 4, 1, 0.95),
    ])
    def test_adjustments(self, estimator, queue_length, doctor_count, priority, expected):
        confidence = estimator.calculate_confidence(queue_length, doctor_count, priority)
        assert confidence == pytest.approx(expected)

    def test_lower_clamp(self):
        estimator = WaitTimeEstimator(Settings(base_confidence=0.35))
        assert estimator.calculate_confidence(25, 1, 3) == pytest.approx(0.3)


class TestHelpers:
    """Time-of-day factor, rounding and queue position."""

    @pytest.mark.parametrize("hour,factor", [
        (0, 0.8), (7, 0.8), (8, 1.0), (9, 1.3), (11, 1.3), (12, 1.0),
        (14, 1.3), (16, 1.3), (17, 1.0), (18, 1.0), (19, 0.8), (23, 0.8),
    ])
    def test_time_of_day_factor(self, hour, factor):
        assert time_of_day_factor(hour) == factor

    @pytest.mark.parametrize("value,expected", [(6.5, 7), (37.5, 38), (6.49, 6), (0.0, 0)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_queue_position_orders_by_priority_then_arrival(self, queue):
        assert queue_position(queue[2], list(reversed(queue))) == 3
        assert queue_position(queue[0], queue) == 1

    def test_queue_position_absent_goes_to_back(self, queue):
        outsider = make_entry(9, priority=1, minutes_ago=5)
        assert queue_position(outsider, queue) == 4
