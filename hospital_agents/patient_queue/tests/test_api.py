"""
Patient Queue Agent - API Unit Tests

Tests for the FastAPI endpoints using TestClient against the seeded demo
hospital. AI enrichment is switched off per request with ``use_ai: false``.

Run with: pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from hospital_agents.patient_queue.api import app, app_state


@pytest.fixture
def client():
    """Test client with the lifespan run, so every test gets a fresh store."""
    with TestClient(app) as test_client:
        yield test_client


def register(client, **overrides):
    payload = {
        "name": "Test Patient",
        "symptoms": "sore throat",
        "priority_level": 3,
        "hospital_id": 1,
        "department_id": 2,
        "age": 30,
    }
    payload.update(overrides)
    return client.post("/queue", json=payload)


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_check_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_check_returns_valid_structure(self, client):
        """Health endpoint should report the store and enrichment checks."""
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["checks"]["repository"] == {"status": "ok", "waiting_patients": 3}
        assert data["checks"]["enrichment"]["status"] in ("ok", "disabled")
        assert app_state.is_ready is True


class TestQueueEndpoints:
    """Tests for /queue and its sub-resources."""

    def test_list_queue(self, client):
        data = client.get("/queue").json()

        assert data["success"] is True
        assert data["total_waiting"] == 3
        assert [e["id"] for e in data["queue"]] == [1, 3, 2]

    def test_list_queue_by_department(self, client):
        data = client.get("/queue", params={"department_id": 2}).json()
        assert data["total_waiting"] == 1
        assert data["queue"][0]["patient"]["name"] == "Maria Garcia"

    def test_register_patient(self, client):
        response = register(client)
        assert response.status_code == 200

        data = response.json()
        assert data["queue_entry"]["id"] == 4
        assert data["queue_entry"]["status"] == "waiting"
        assert data["queue_entry"]["doctor_id"] == 3
        assert data["prediction"]["estimated_wait_time"] >= 5
        assert client.get("/queue").json()["total_waiting"] == 4

    def test_register_requires_name(self, client):
        payload = {"symptoms": "rash", "hospital_id": 1, "department_id": 2}
        assert client.post("/queue", json=payload).status_code == 422

    def test_register_rejects_invalid_priority(self, client):
        assert register(client, priority_level=5).status_code == 422

    def test_queue_status(self, client):
        data = client.get("/queue/status", params={"hospital_id": 1}).json()

        assert data["total_patients"] == 3
        assert data["avg_wait_time"] == 35
        assert data["critical_count"] == 1
        assert data["urgent_count"] == 1
        assert data["department_breakdown"]["Cardiology"] == 1

    def test_patient_position(self, client):
        assert client.get("/queue/position/1").json() == {"patient_id": 1, "position": 1}

    def test_patient_position_not_found(self, client):
        response = client.get("/queue/position/99")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_status_lifecycle(self, client):
        first = client.patch("/queue/1/status", json={"status": "in_consultation"})
        assert first.status_code == 200
        assert first.json()["queue_entry"]["consultation_start_time"] is not None

        second = client.patch("/queue/1/status", json={"status": "completed"})
        assert second.status_code == 200

        reopened = client.patch("/queue/1/status", json={"status": "waiting"})
        assert reopened.status_code == 409
        assert reopened.json()["error"] == "invalid_transition"

    def test_unknown_status_rejected(self, client):
        response = client.patch("/queue/1/status", json={"status": "done"})
        assert response.status_code == 422

    def test_status_of_unknown_entry(self, client):
        response = client.patch("/queue/99/status", json={"status": "cancelled"})
        assert response.status_code == 404


class TestPredictEndpoint:
    """Tests for /predict-wait-time."""

    def test_local_prediction(self, client):
        response = client.post("/predict-wait-time", json={"queue_entry_id": 2, "use_ai": False})
        assert response.status_code == 200

        prediction = response.json()["prediction"]
        assert prediction["patient_id"] == 2
        assert prediction["estimated_wait_time"] >= 5
        assert 0.3 <= prediction["confidence"] <= 0.95
        assert prediction["factors"]["queue_length"] == 1
        assert prediction["factors"]["doctor_availability"] == 1
        assert "ai_insights" not in prediction["factors"]

    def test_prediction_updates_entry(self, client):
        prediction = client.post(
            "/predict-wait-time", json={"queue_entry_id": 2, "use_ai": False}
        ).json()["prediction"]

        queue = client.get("/queue", params={"department_id": 2}).json()["queue"]
        assert queue[0]["estimated_wait_time"] == prediction["estimated_wait_time"]

    def test_unknown_entry(self, client):
        response = client.post("/predict-wait-time", json={"queue_entry_id": 99, "use_ai": False})
        assert response.status_code == 404


class TestAllocationEndpoint:
    """Tests for /optimize-allocation."""

    def test_allocation(self, client):
        response = client.post("/optimize-allocation", json={"hospital_id": 1, "use_ai": False})
        assert response.status_code == 200

        data = response.json()
        assert data["total_patients"] == 3
        assert data["total_doctors"] == 4
        by_doctor = {a["doctor_id"]: a["patient_ids"] for a in data["allocation"]}
        assert by_doctor == {1: [1], 2: [], 3: [2], 5: [3]}

    def test_empty_department(self, client):
        data = client.post(
            "/optimize-allocation", json={"department_id": 9, "use_ai": False}
        ).json()
        assert data["allocation"] == []
        assert data["message"] == "No patients in queue"


class TestTriageEndpoints:
    """Tests for /emergency-triage, /emergency-recommendations, /emergency-alerts and /protocols."""

    def test_pain_revises_priority(self, client):
        response = client.post("/emergency-triage", json={"queue_entry_id": 1, "pain_level": 9})
        assert response.status_code == 200

        data = response.json()
        assert data["triage_score"]["category"] == "urgent"
        assert data["priority_updated"] is True
        assert data["new_priority_level"] == 2

    def test_low_oxygen_escalates(self, client):
        payload = {"queue_entry_id": 1, "vital_signs": {"oxygen_saturation": 85}}
        data = client.post("/emergency-triage", json=payload).json()

        assert data["escalation"]["required"] is True
        assert data["escalation"]["reason"] == "Critical oxygen saturation level"

    def test_pain_out_of_range(self, client):
        response = client.post("/emergency-triage", json={"queue_entry_id": 1, "pain_level": 11})
        assert response.status_code == 422

    def test_unknown_consciousness(self, client):
        payload = {"queue_entry_id": 1, "consciousness": "sleepy"}
        assert client.post("/emergency-triage", json=payload).status_code == 422

    def test_emergency_overview(self, client):
        data = client.get("/emergency-triage", params={"hospital_id": 1}).json()

        assert data["success"] is True
        assert data["total_emergencies"] == 2
        assert len(data["prioritized_patients"]) == 2

    def test_emergency_overview_requires_hospital(self, client):
        assert client.get("/emergency-triage").status_code == 422

    def test_emergency_recommendations(self, client):
        data = client.get("/emergency-recommendations", params={"hospital_id": 1}).json()

        assert data["total_emergencies"] == 1
        assert data["recommendations"][0]["urgency_level"] == "critical"

    def test_triage_after_call_in_keeps_priority(self, client):
        client.patch("/queue/1/status", json={"status": "in_consultation"})

        data = client.post("/emergency-triage", json={"queue_entry_id": 1, "pain_level": 9}).json()

        assert data["priority_updated"] is False
        assert data["new_priority_level"] == 1

    def test_emergency_alerts(self, client):
        response = client.get("/emergency-alerts", params={"hospital_id": 1})
        assert response.status_code == 200

        data = response.json()
        assert data["type"] == "emergency_alert"
        assert data["count"] == 1
        assert data["critical_cases"][0]["patient_name"] == "John Smith"
        assert data["critical_cases"][0]["priority"] == "critical"
        assert "timestamp" in data

    def test_emergency_alerts_clear_once_patient_called_in(self, client):
        client.patch("/queue/1/status", json={"status": "in_consultation"})
        data = client.get("/emergency-alerts", params={"hospital_id": 1}).json()

        assert data["count"] == 0
        assert data["critical_cases"] == []

    def test_protocols(self, client):
        data = client.get("/protocols", params={"symptoms": "stroke"}).json()
        assert data["count"] == 1
        assert data["protocols"][0]["id"] == "stroke-alert"
