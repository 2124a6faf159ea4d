"""
Patient Queue Agent

A microservice for hospital queue management: wait-time prediction,
emergency triage and doctor allocation.

This agent provides:
- Heuristic wait-time estimation per department queue
- Additive triage scoring with clinical categories and protocols
- Escalation monitoring for emergency and urgent patients
- Greedy doctor allocation by shift capacity
- Optional AI enrichment of predictions and allocations
- REST API for staff and patient-facing clients

Components:
-----------
- config: Environment-based configuration and priority/category constants
- models: Queue, doctor, patient and result dataclasses
- triage: TriageScorer
- wait_time: WaitTimeEstimator
- allocation: AllocationOptimizer
- escalation: EscalationPolicy
- repository: QueueRepository and the in-memory store
- enrichment: OpenAI-backed enrichers and fallback combinators
- service: QueueService orchestrating the flows
- api: FastAPI application

Usage:
------
    # As API server
    python -m uvicorn hospital_agents.patient_queue.api:app --host 0.0.0.0 --port 8006

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import settings
from .allocation import AllocationOptimizer
from .escalation import EscalationPolicy
from .repository import InMemoryQueueRepository, QueueRepository, create_sample_repository
from .service import QueueService
from .triage import TriageScorer
from .wait_time import WaitTimeEstimator

__all__ = [
    "settings",
    "AllocationOptimizer",
    "EscalationPolicy",
    "InMemoryQueueRepository",
    "QueueRepository",
    "QueueService",
    "TriageScorer",
    "WaitTimeEstimator",
    "create_sample_repository",
    "__version__",
]
