"""
Patient Queue Agent - FastAPI Application

REST API for the hospital patient queue: registration, wait-time prediction,
emergency triage, escalation monitoring and doctor allocation.

================================================================================
REQUEST FLOW
================================================================================

    ┌──────────────┐     ┌──────────────┐     ┌───────────────────────────┐
    │   Endpoint   │ ──► │ QueueService │ ──► │ repository (fetch/persist)│
    └──────────────┘     └──────┬───────┘     └───────────────────────────┘
                                │
                ┌───────────────┼──────────────────┬───────────────────┐
                ▼               ▼                  ▼                   ▼
         TriageScorer   WaitTimeEstimator  AllocationOptimizer  EscalationPolicy
                                │                  │
                                ▼                  ▼
                        (optional) AI enrichment, fallback on failure

ERROR MAPPING
─────────────
    NotFoundError            404
    InvalidTransitionError   409
    ValidationError          422
    anything else            500 (detail only in debug mode)

Predictions and triage scores are advisory: the service never changes a
patient's status on its own, it only revises priority after an explicit
triage assessment.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .enrichment import build_enrichers
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError
from .models import Consciousness, QueueStatus, VitalSigns, utcnow
from .repository import InMemoryQueueRepository, QueueRepository, create_sample_repository
from .service import QueueService


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class VitalsInput(BaseModel):
    """Vital signs recorded at triage."""

    heart_rate: Optional[float] = Field(
        default=None,
        ge=20,
        le=250,
        description="Heart rate in beats per minute",
    )
    systolic_bp: Optional[float] = Field(
        default=None,
        ge=40,
        le=300,
        description="Systolic blood pressure in mmHg",
    )
    diastolic_bp: Optional[float] = Field(
        default=None,
        ge=20,
        le=200,
        description="Diastolic blood pressure in mmHg",
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=85,
        le=110,
        description="Body temperature in Fahrenheit",
    )
    oxygen_saturation: Optional[float] = Field(
        default=None,
        ge=50,
        le=100,
        description="Oxygen saturation (SpO2) percentage",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "heart_rate": 112,
                "systolic_bp": 150,
                "diastolic_bp": 95,
                "temperature": 99.1,
                "oxygen_saturation": 93,
            }
        }

    def to_domain(self) -> VitalSigns:
        return VitalSigns(**self.model_dump())


class RegisterPatientRequest(BaseModel):
    """New patient joining a department queue."""
    name: str = Field(..., min_length=1, max_length=200)
    symptoms: str = Field(..., min_length=1, max_length=2000)
    priority_level: int = Field(default=3, ge=1, le=4, description="1=emergency ... 4=follow-up")
    hospital_id: int = Field(..., ge=1)
    department_id: int = Field(..., ge=1)
    age: Optional[int] = Field(default=None, ge=0, le=130)
    phone: Optional[str] = None
    gender: Optional[str] = None


class RegisterPatientResponse(BaseModel):
    success: bool
    queue_entry: Dict[str, Any]
    prediction: Dict[str, Any]
    message: str


class QueueResponse(BaseModel):
    success: bool
    queue: List[Dict[str, Any]]
    total_waiting: int


class QueueStatusResponse(BaseModel):
    """Summary of the waiting queue."""
    total_patients: int
    avg_wait_time: int
    critical_count: int
    urgent_count: int
    department_breakdown: Dict[str, int]


class PositionResponse(BaseModel):
    patient_id: int
    position: int


class StatusUpdateRequest(BaseModel):
    status: QueueStatus


class PredictWaitTimeRequest(BaseModel):
    """Request for a wait-time prediction."""
    queue_entry_id: int = Field(..., ge=1)
    use_ai: bool = Field(default=True, description="Try AI enrichment when configured")


class PredictWaitTimeResponse(BaseModel):
    success: bool
    prediction: Dict[str, Any]


class AllocationRequest(BaseModel):
    """Scope of an allocation run; omitted ids mean all."""
    hospital_id: Optional[int] = Field(default=None, ge=1)
    department_id: Optional[int] = Field(default=None, ge=1)
    use_ai: bool = True


class AllocationResponse(BaseModel):
    success: bool
    allocation: List[Dict[str, Any]]
    total_patients: int
    total_doctors: int
    message: Optional[str] = None
    strategy: Optional[str] = None


class TriageRequest(BaseModel):
    """Triage assessment of a queued patient."""
    queue_entry_id: int = Field(..., ge=1)
    vital_signs: Optional[VitalsInput] = None
    pain_level: Optional[int] = Field(default=None, ge=0, le=10)
    consciousness: Optional[Consciousness] = None


class TriageResponse(BaseModel):
    success: bool
    triage_score: Dict[str, Any]
    escalation: Dict[str, Any]
    protocols: List[Dict[str, Any]]
    priority_updated: bool
    previous_priority_level: int
    new_priority_level: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the queue store and the service built on it.
    """

    def __init__(self):
        self.repository: Optional[QueueRepository] = None
        self.service: Optional[QueueService] = None
        self.enrichment_enabled: bool = False
        self.is_ready: bool = False

        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the store (with demo data if configured) and the service."""
        async with self._lock:
            if settings.seed_sample_data:
                self.repository = create_sample_repository()
            else:
                self.repository = InMemoryQueueRepository()

            wait_time_enricher, allocation_enricher = build_enrichers(settings)
            self.enrichment_enabled = wait_time_enricher is not None

            self.service = QueueService(
                self.repository,
                wait_time_enricher=wait_time_enricher,
                allocation_enricher=allocation_enricher,
                config=settings,
            )
            self.is_ready = True
            logger.info("Application state initialized")


# Global state
app_state = AppState()


def get_service() -> QueueService:
    if not app_state.is_ready or app_state.service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue service not initialized",
        )
    return app_state.service


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    await app_state.initialize()

    yield

    # Shutdown
    logger.info("Shutting down patient queue agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Patient Queue Agent",
    description="""
    Hospital patient queue with wait-time prediction and emergency triage.

    ## Features
    - **Wait Time Prediction**: Heuristic estimate from queue, doctors, priority and time of day
    - **Emergency Triage**: Additive triage score, category and clinical protocols
    - **Escalation Monitoring**: Flags patients who need staff attention now
    - **Doctor Allocation**: Greedy per-department shift packing

    ## Priority Levels
    - **1 (Emergency)**, **2 (Urgent)**, **3 (Routine)**, **4 (Follow-up)**

    AI enrichment is optional; without an API key every result is local.
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Checks:
    - Service initialization
    - Queue store availability
    - AI enrichment configuration
    """
    checks = {}
    overall_status = "healthy"

    if app_state.is_ready and app_state.repository is not None:
        waiting = await app_state.repository.get_queue_entries()
        checks["repository"] = {"status": "ok", "waiting_patients": len(waiting)}
    else:
        checks["repository"] = {"status": "error"}
        overall_status = "unhealthy"

    checks["enrichment"] = {
        "status": "ok" if app_state.enrichment_enabled else "disabled",
        "model": settings.openai_model if app_state.enrichment_enabled else None,
    }

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=utcnow(),
        checks=checks,
    )


@app.get("/queue", response_model=QueueResponse, tags=["Queue"])
async def get_queue(
    hospital_id: Optional[int] = Query(default=None, ge=1),
    department_id: Optional[int] = Query(default=None, ge=1),
) -> QueueResponse:
    """Waiting patients in service order (priority, then arrival)."""
    entries = await get_service().list_queue(hospital_id, department_id)
    return QueueResponse(
        success=True,
        queue=[entry.to_dict() for entry in entries],
        total_waiting=len(entries),
    )


@app.post("/queue", response_model=RegisterPatientResponse, tags=["Queue"])
async def register_patient(request: RegisterPatientRequest) -> RegisterPatientResponse:
    """
    Add a patient to a department queue.

    The patient is assigned the first available doctor of the department
    (if any) and receives an immediate local wait-time estimate.
    """
    entry, prediction = await get_service().register_patient(**request.model_dump())
    return RegisterPatientResponse(
        success=True,
        queue_entry=entry.to_dict(),
        prediction=prediction.to_dict(),
        message="Patient added to queue successfully",
    )


@app.get("/queue/status", response_model=QueueStatusResponse, tags=["Queue"])
async def get_queue_status(
    hospital_id: Optional[int] = Query(default=None, ge=1),
) -> QueueStatusResponse:
    summary = await get_service().queue_status(hospital_id)
    return QueueStatusResponse(**summary)


@app.get("/queue/position/{patient_id}", response_model=PositionResponse, tags=["Queue"])
async def get_patient_position(patient_id: int) -> PositionResponse:
    """Position of a waiting patient within their department queue."""
    position = await get_service().patient_position(patient_id)
    return PositionResponse(patient_id=patient_id, position=position)


@app.patch("/queue/{entry_id}/status", tags=["Queue"])
async def update_queue_status(entry_id: int, request: StatusUpdateRequest) -> Dict[str, Any]:
    """
    Move a queue entry along its lifecycle.

    Allowed: waiting -> in_consultation -> completed, waiting -> cancelled.
    """
    entry = await get_service().update_status(entry_id, request.status)
    return {"success": True, "queue_entry": entry.to_dict()}


@app.post("/predict-wait-time", response_model=PredictWaitTimeResponse, tags=["Predictions"])
async def predict_wait_time(request: PredictWaitTimeRequest) -> PredictWaitTimeResponse:
    """
    Predict the wait for a queue entry.

    The local estimate is refined by AI enrichment when requested and
    configured. If enrichment fails the local estimate is returned with a
    ``fallback_reason`` in its factors. The prediction is stored and the
    entry's estimated wait time is updated.
    """
    request_id = str(uuid.uuid4())
    logger.info(
        f"Wait time request: {request_id}",
        extra={"queue_entry_id": request.queue_entry_id, "use_ai": request.use_ai},
    )

    prediction = await get_service().predict_wait_time(
        request.queue_entry_id, use_ai=request.use_ai
    )
    return PredictWaitTimeResponse(success=True, prediction=prediction.to_dict())


@app.post("/optimize-allocation", response_model=AllocationResponse, tags=["Allocation"])
async def optimize_allocation(request: AllocationRequest) -> AllocationResponse:
    """
    Allocate waiting patients to available doctors.

    Each doctor takes up to floor(480 / avg consultation time) patients per
    shift, most urgent first. AI enrichment can only add reasoning.
    """
    plan = await get_service().optimize_allocation(
        request.hospital_id, request.department_id, use_ai=request.use_ai
    )

    logger.info(
        f"Allocation plan: {len(plan.allocations)} doctors, {plan.total_patients} patients"
    )

    return AllocationResponse(
        success=True,
        allocation=[allocation.to_dict() for allocation in plan.allocations],
        total_patients=plan.total_patients,
        total_doctors=plan.total_doctors,
        message=plan.message,
        strategy=plan.strategy,
    )


@app.post("/emergency-triage", response_model=TriageResponse, tags=["Triage"])
async def emergency_triage(request: TriageRequest) -> TriageResponse:
    """
    Triage assessment of a queued patient.

    Scores symptoms, vitals, pain, consciousness, age and wait time, checks
    the immediate-escalation rules, lists matching protocols and revises the
    entry's priority from the triage category.
    """
    assessment = await get_service().assess_triage(
        request.queue_entry_id,
        vital_signs=request.vital_signs.to_domain() if request.vital_signs else None,
        pain_level=request.pain_level,
        consciousness=request.consciousness,
    )
    return TriageResponse(
        success=True,
        triage_score=assessment.triage_score.to_dict(),
        escalation=assessment.escalation.to_dict(),
        protocols=[protocol.to_dict() for protocol in assessment.protocols],
        priority_updated=assessment.priority_updated,
        previous_priority_level=assessment.previous_priority_level,
        new_priority_level=assessment.new_priority_level,
    )


@app.get("/emergency-triage", tags=["Triage"])
async def emergency_overview(hospital_id: int = Query(..., ge=1)) -> Dict[str, Any]:
    """Re-scored emergency/urgent patients and the current escalations."""
    report = await get_service().emergency_overview(hospital_id)
    return {"success": True, **report.to_dict()}


@app.get("/emergency-recommendations", tags=["Triage"])
async def emergency_recommendations(
    hospital_id: Optional[int] = Query(default=None, ge=1),
) -> Dict[str, Any]:
    recommendations = await get_service().emergency_recommendations(hospital_id)
    return {
        "success": True,
        "total_emergencies": len(recommendations),
        "recommendations": recommendations,
    }


@app.get("/emergency-alerts", tags=["Triage"])
async def emergency_alerts(
    hospital_id: Optional[int] = Query(default=None, ge=1),
) -> Dict[str, Any]:
    """
    Snapshot of waiting emergency-priority patients for staff dashboards.

    Clients poll this endpoint; ``count`` is 0 when nothing needs attention.
    """
    cases = await get_service().emergency_cases(hospital_id)
    return {
        "type": "emergency_alert",
        "hospital_id": hospital_id,
        "critical_cases": cases,
        "count": len(cases),
        "timestamp": utcnow().isoformat(),
    }


@app.get("/protocols", tags=["Triage"])
async def get_protocols(symptoms: str = Query(..., min_length=1)) -> Dict[str, Any]:
    """Emergency protocols triggered by a symptom description."""
    protocols = get_service().applicable_protocols(symptoms)
    return {
        "protocols": [protocol.to_dict() for protocol in protocols],
        "count": len(protocols),
    }


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "message": str(exc)},
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc: InvalidTransitionError):
    logger.warning(f"Rejected queue update: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "invalid_transition", "message": str(exc)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "validation_error", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if settings.debug else None,
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hospital_agents.patient_queue.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
