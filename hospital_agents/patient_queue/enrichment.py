"""
Patient Queue Agent - AI Enrichment

Optional, best-effort refinement of local results by a language model.

================================================================================
CONTRACT
================================================================================

The local heuristic is always computed first and is always a valid answer.
Enrichment is an injected strategy whose ``try_enrich()`` NEVER raises: every
failure comes back as an EnrichmentOutcome with ``failure`` set, and the
combinators below decide what to do with it.

    ┌───────────────┐    context    ┌────────────────┐   outcome   ┌────────────┐
    │ local result  │ ────────────► │   Enricher     │ ──────────► │ combinator │
    └───────────────┘               │ (OpenAI / fake)│             └─────┬──────┘
            │                       └────────────────┘                   │
            └──────────────────── kept on any failure ◄──────────────────┘

Wait-time payload:
    {"timeAdjustment": number, "confidence": number,
     "patientAdvice": string, "reasoning": string}

Allocation payload:
    {"recommendations": [{"doctorId": number, "patientIds": [...],
                          "reasoning": string}],
     "overallStrategy": string}

Every field is required. Responses are parsed into WaitTimeInsights and
AllocationInsights; anything that does not fit, including an empty object,
is a failure. Only the reasoning strings of an allocation payload are used;
the assignments themselves always come from the local optimizer.

================================================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import pydantic
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict

from .config import Settings, settings
from .models import (
    Allocation,
    Doctor,
    QueueEntry,
    WaitTimePrediction,
    elapsed_minutes,
    utcnow,
)
from .wait_time import round_half_up

logger = logging.getLogger(__name__)


MIN_ENRICHED_WAIT_MINUTES = 5
MIN_ENRICHED_CONFIDENCE = 0.3
MAX_ENRICHED_CONFIDENCE = 0.95

WAIT_TIME_INSTRUCTIONS = (
    "You are a medical AI assistant helping optimize hospital wait times. "
    "Provide practical, evidence-based insights while being empathetic to patient concerns. "
    "Output ONLY valid JSON."
)

ALLOCATION_INSTRUCTIONS = (
    "You are a medical operations AI optimizing patient flow in hospitals. "
    "Focus on patient safety, efficient resource utilization, and reducing wait times. "
    "Output ONLY valid JSON."
)


class EnrichmentError(Exception):
    """Raised inside an enricher when a response cannot be used."""
    pass


@dataclass
class EnrichmentOutcome:
    """Result of one enrichment attempt: parsed insights or a failure reason."""
    payload: Optional[BaseModel] = None
    failure: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.payload is not None

    @classmethod
    def success(cls, payload: BaseModel) -> "EnrichmentOutcome":
        return cls(payload=payload)

    @classmethod
    def failed(cls, reason: str) -> "EnrichmentOutcome":
        return cls(failure=reason)


@dataclass
class WaitTimeContext:
    """What a wait-time enricher gets to see."""
    queue_entry: QueueEntry
    prediction: WaitTimePrediction
    queue_length: int
    doctor_count: int
    now: datetime = field(default_factory=utcnow)


@dataclass
class AllocationContext:
    """What an allocation enricher gets to see."""
    queue_entries: List[QueueEntry]
    doctors: List[Doctor]
    allocations: List[Allocation]
    now: datetime = field(default_factory=utcnow)


# =============================================================================
# STRATEGY INTERFACES
# =============================================================================

class WaitTimeEnricher(ABC):
    @abstractmethod
    async def try_enrich(self, context: WaitTimeContext) -> EnrichmentOutcome:
        """Return an outcome; must not raise."""


class AllocationEnricher(ABC):
    @abstractmethod
    async def try_enrich(self, context: AllocationContext) -> EnrichmentOutcome:
        """Return an outcome; must not raise."""


# =============================================================================
# PROMPTS
# =============================================================================

def build_wait_time_prompt(context: WaitTimeContext) -> str:
    entry = context.queue_entry
    age = entry.patient_age if entry.patient_age is not None else "Unknown"
    return (
        "Patient Information:\n"
        f"- Symptoms: {entry.symptoms}\n"
        f"- Priority Level: {entry.priority_level} "
        "(1=emergency, 2=urgent, 3=routine, 4=follow-up)\n"
        f"- Age: {age}\n"
        "\n"
        "Current Hospital Situation:\n"
        f"- Queue Length: {context.queue_length} patients waiting\n"
        f"- Available Doctors: {context.doctor_count}\n"
        f"- Department: {entry.department_name or entry.department_id}\n"
        f"- Time of Day: {context.now.strftime('%H:%M')}\n"
        "\n"
        f"Basic Prediction: {context.prediction.estimated_wait_time} minutes\n"
        "\n"
        "Based on this medical context, provide insights about:\n"
        "1. Any factors that might affect wait time (complexity of symptoms, potential complications)\n"
        "2. Recommendations for the patient while waiting\n"
        "3. Confidence adjustment based on symptom complexity\n"
        "\n"
        'Respond in JSON format with: { "timeAdjustment": number, "confidence": number, '
        '"patientAdvice": string, "reasoning": string }'
    )


def build_allocation_prompt(context: AllocationContext) -> str:
    lines = [
        "Current Hospital Queue Analysis:",
        f"Total Patients Waiting: {len(context.queue_entries)}",
        f"Available Doctors: {len(context.doctors)}",
        "",
        "Patient Details:",
    ]
    for entry in context.queue_entries:
        name = entry.patient.name if entry.patient else f"#{entry.patient_id}"
        lines.append(f"- Patient: {name} (Priority: {entry.priority_level})")
        lines.append(f"  Symptoms: {entry.symptoms}")
        lines.append(f"  Wait Time: {elapsed_minutes(entry.arrival_time, context.now)} minutes")

    lines += ["", "Doctor Details:"]
    for doctor in context.doctors:
        lines.append(f"- {doctor.name} ({doctor.specialization or 'General'})")
        lines.append(f"  Avg Consultation: {doctor.avg_consultation_time} minutes")
        lines.append(f"  Department: {doctor.department_id}")

    lines += ["", "Current Basic Allocation:"]
    for allocation in context.allocations:
        lines.append(
            f"- Doctor ID {allocation.doctor_id}: {len(allocation.patient_ids)} patients assigned"
        )

    lines += [
        "",
        "Provide optimization recommendations considering:",
        "1. Patient priority and symptom complexity",
        "2. Doctor specialization match",
        "3. Workload balancing",
        "4. Emergency case handling",
        "",
        'Respond with JSON: { "recommendations": [{"doctorId": number, "patientIds": number[], '
        '"reasoning": string}], "overallStrategy": string }',
    ]
    return "\n".join(lines)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class InsightsModel(BaseModel):
    """
    Base for model responses.

    Strict mode keeps booleans and numeric strings out of number fields.
    Unknown keys are ignored when parsing, but the published schema forbids
    them so structured output stays closed.
    """

    model_config = ConfigDict(
        strict=True,
        extra="ignore",
        json_schema_extra={"additionalProperties": False},
    )


class WaitTimeInsights(InsightsModel):
    timeAdjustment: float
    confidence: float
    patientAdvice: str
    reasoning: str


class DoctorRecommendation(InsightsModel):
    doctorId: int
    patientIds: List[int]
    reasoning: str


class AllocationInsights(InsightsModel):
    recommendations: List[DoctorRecommendation]
    overallStrategy: str


def describe_validation_error(error: pydantic.ValidationError) -> str:
    """One-line summary of the first problem, e.g. ``confidence: Field required``."""
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    message = f"{location}: {first['msg']}" if location else first["msg"]
    if error.error_count() > 1:
        message += f" (+{error.error_count() - 1} more)"
    return message


def parse_insights(model: Type[InsightsModel], raw_text: str) -> InsightsModel:
    """Parse raw model output into ``model``, raising EnrichmentError on any mismatch."""
    try:
        return model.model_validate_json(raw_text)
    except pydantic.ValidationError as e:
        raise EnrichmentError(describe_validation_error(e)) from e


def response_format(name: str, model: Type[InsightsModel]) -> Dict[str, Any]:
    """Structured-output format block for the Responses API ``text`` argument."""
    return {
        "format": {
            "type": "json_schema",
            "name": name,
            "strict": True,
            "schema": model.model_json_schema(),
        }
    }


# =============================================================================
# OPENAI-BACKED ENRICHERS
# =============================================================================

class OpenAIEnricher:
    """
    Shared plumbing for enrichers backed by the OpenAI Responses API.

    Calls are bounded by ``enrichment_timeout_seconds`` and a low
    temperature keeps answers stable between identical requests. The
    subclass's ``insights_model`` is sent as a strict JSON schema and the
    answer is parsed back into it.
    """

    instructions = ""
    schema_name = ""
    insights_model: Type[InsightsModel] = InsightsModel

    def __init__(self, client: AsyncOpenAI, config: Optional[Settings] = None):
        self.client = client
        self.config = config or settings

    async def request_insights(self, prompt: str) -> InsightsModel:
        resp = await asyncio.wait_for(
            self.client.responses.create(
                model=self.config.openai_model,
                instructions=self.instructions,
                input=[{"role": "user", "content": prompt}],
                text=response_format(self.schema_name, self.insights_model),
                temperature=0.1,
                max_output_tokens=self.config.enrichment_max_output_tokens,
            ),
            timeout=self.config.enrichment_timeout_seconds,
        )

        raw_text = getattr(resp, "output_text", None)
        if not raw_text:
            raise EnrichmentError("model output missing")

        return parse_insights(self.insights_model, raw_text)

    async def attempt(self, prompt: str) -> EnrichmentOutcome:
        try:
            payload = await self.request_insights(prompt)
        except asyncio.TimeoutError:
            reason = f"enrichment timed out after {self.config.enrichment_timeout_seconds}s"
        except EnrichmentError as e:
            reason = f"malformed enrichment response: {e}"
        except OpenAIError as e:
            reason = f"enrichment service error: {type(e).__name__}"
        except Exception as e:
            logger.error(f"Unexpected enrichment failure: {e}", exc_info=True)
            reason = f"enrichment failed: {type(e).__name__}"
        else:
            return EnrichmentOutcome.success(payload)

        logger.warning(
            "Enrichment unavailable, keeping local result",
            extra={"enricher": type(self).__name__, "reason": reason},
        )
        return EnrichmentOutcome.failed(reason)


class OpenAIWaitTimeEnricher(OpenAIEnricher, WaitTimeEnricher):
    instructions = WAIT_TIME_INSTRUCTIONS
    schema_name = "wait_time_insights"
    insights_model = WaitTimeInsights

    async def try_enrich(self, context: WaitTimeContext) -> EnrichmentOutcome:
        return await self.attempt(build_wait_time_prompt(context))


class OpenAIAllocationEnricher(OpenAIEnricher, AllocationEnricher):
    instructions = ALLOCATION_INSTRUCTIONS
    schema_name = "allocation_insights"
    insights_model = AllocationInsights

    async def try_enrich(self, context: AllocationContext) -> EnrichmentOutcome:
        return await self.attempt(build_allocation_prompt(context))


def build_enrichers(
    config: Optional[Settings] = None,
) -> Tuple[Optional[WaitTimeEnricher], Optional[AllocationEnricher]]:
    """
    Create the OpenAI enrichers, or (None, None) when enrichment is disabled
    or no API key is configured.
    """
    config = config or settings
    if not config.enrichment_available:
        logger.info("AI enrichment disabled (no API key or ENRICHMENT_ENABLED=false)")
        return None, None

    client = AsyncOpenAI(api_key=config.openai_api_key)
    logger.info(f"AI enrichment enabled with model {config.openai_model}")
    return (
        OpenAIWaitTimeEnricher(client, config),
        OpenAIAllocationEnricher(client, config),
    )


# =============================================================================
# COMBINATORS
# =============================================================================

def apply_wait_time_enrichment(
    prediction: WaitTimePrediction,
    outcome: EnrichmentOutcome,
) -> WaitTimePrediction:
    """
    Combine a local prediction with an enrichment outcome.

    On success the adjustment is added (never below 5 minutes), confidence is
    replaced and clamped to [0.3, 0.95], and the advice is attached as
    ``ai_insights``. On failure the local numbers are kept and the reason is
    recorded as ``fallback_reason``.
    """
    if not outcome.ok:
        return replace(
            prediction,
            factors=replace(prediction.factors, fallback_reason=outcome.failure),
        )

    insights: WaitTimeInsights = outcome.payload
    estimated = max(
        MIN_ENRICHED_WAIT_MINUTES,
        round_half_up(prediction.estimated_wait_time + insights.timeAdjustment),
    )
    confidence = max(
        MIN_ENRICHED_CONFIDENCE,
        min(MAX_ENRICHED_CONFIDENCE, insights.confidence),
    )

    return replace(
        prediction,
        estimated_wait_time=estimated,
        confidence=round(confidence, 2),
        factors=replace(
            prediction.factors,
            ai_insights={
                "patient_advice": insights.patientAdvice,
                "reasoning": insights.reasoning,
            },
        ),
    )


def apply_allocation_enrichment(
    allocations: Sequence[Allocation],
    outcome: EnrichmentOutcome,
) -> Tuple[List[Allocation], Optional[str]]:
    """
    Attach reasoning from an allocation payload to the matching local
    allocations. Returns the annotated allocations and the overall strategy.
    """
    if not outcome.ok:
        return list(allocations), None

    insights: AllocationInsights = outcome.payload
    reasoning_by_doctor: Dict[int, str] = {
        recommendation.doctorId: recommendation.reasoning
        for recommendation in insights.recommendations
    }

    annotated = [
        replace(allocation, reasoning=reasoning_by_doctor[allocation.doctor_id])
        if allocation.doctor_id in reasoning_by_doctor
        else allocation
        for allocation in allocations
    ]
    return annotated, insights.overallStrategy
