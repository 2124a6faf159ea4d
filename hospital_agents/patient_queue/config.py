"""
Patient Queue Agent - Configuration Module

This module centralizes all environment-based configuration for the patient
queue microservice. Configuration is externalized through environment
variables (and an optional .env file) following the 12-factor methodology.

================================================================================
PRIORITY LEVELS VS TRIAGE CATEGORIES
================================================================================

Two related but distinct scales are used across the service:

    PRIORITY LEVEL (queue field, 4 levels)
    ──────────────────────────────────────
    Set at registration and revised after a triage assessment.
    Lower number = seen sooner.

        1 - Emergency       wait multiplier x0.2
        2 - Urgent          wait multiplier x0.5
        3 - Routine         wait multiplier x1.0
        4 - Follow-up       wait multiplier x1.2

    TRIAGE CATEGORY (derived, 5 levels)
    ───────────────────────────────────
    Computed from the additive triage score.

        score >= 9   resuscitation   -> priority 1
        score >= 7   emergent        -> priority 1
        score >= 5   urgent          -> priority 2
        score >= 3   less-urgent     -> priority 3
        otherwise    non-urgent      -> priority 4

================================================================================
"""

from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="patient-queue-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # WAIT TIME ESTIMATION
    # ==========================================================================
    fallback_wait_minutes: int = Field(
        default=120,
        ge=0,
        description="Estimate returned when no doctor is available in the department"
    )
    fallback_confidence: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Confidence attached to the no-doctor fallback estimate"
    )
    fallback_avg_consultation_minutes: int = Field(
        default=20,
        gt=0,
        description="Consultation time reported in the fallback factor snapshot"
    )
    transition_buffer_minutes: int = Field(
        default=5,
        ge=0,
        description="Minutes added per queue position for patient changeover"
    )
    base_confidence: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Starting confidence before queue/doctor adjustments"
    )

    # ==========================================================================
    # DOCTOR ALLOCATION
    # ==========================================================================
    shift_minutes: int = Field(
        default=480,
        gt=0,
        description="Shift length used to derive a doctor's patient capacity"
    )

    # ==========================================================================
    # AI ENRICHMENT (OPTIONAL)
    # ==========================================================================
    enrichment_enabled: bool = Field(
        default=True,
        description="Allow AI enrichment when an API key is configured"
    )
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key; enrichment is skipped when unset"
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="Model used for wait-time and allocation enrichment"
    )
    enrichment_timeout_seconds: float = Field(
        default=8.0,
        gt=0,
        le=60,
        description="Upper bound on a single enrichment call"
    )
    enrichment_max_output_tokens: int = Field(
        default=400,
        ge=50,
        le=4000,
        description="Output token bound for enrichment responses"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8006,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    seed_sample_data: bool = Field(
        default=True,
        description="Load demo hospitals, doctors and queue entries at startup"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @property
    def enrichment_available(self) -> bool:
        """Whether AI enrichment can be attempted at all."""
        return self.enrichment_enabled and bool(self.openai_api_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# PRIORITY LEVEL CONSTANTS
# ==========================================================================
class PriorityLevel:
    """
    Queue priority constants.

    Priority doubles as a sort key: lower numbers are served first.
    """
    EMERGENCY = 1
    URGENT = 2
    ROUTINE = 3
    FOLLOW_UP = 4

    VALID = (1, 2, 3, 4)

    LABELS = {
        1: "Emergency",
        2: "Urgent",
        3: "Routine",
        4: "Follow-up",
    }

    # Emergency cases are called almost immediately; follow-ups wait longer
    WAIT_MULTIPLIERS = {
        1: 0.2,
        2: 0.5,
        3: 1.0,
        4: 1.2,
    }

    @classmethod
    def is_valid(cls, level: int) -> bool:
        return level in cls.VALID

    @classmethod
    def get_label(cls, level: int) -> str:
        """Get human-readable label for a priority level."""
        return cls.LABELS.get(level, f"Unknown ({level})")

    @classmethod
    def get_wait_multiplier(cls, level: int) -> float:
        return cls.WAIT_MULTIPLIERS.get(level, 1.0)


# ==========================================================================
# TRIAGE CATEGORY CONSTANTS
# ==========================================================================
class TriageCategory(str, Enum):
    """Clinical triage categories, declared most to least severe."""
    RESUSCITATION = "resuscitation"
    EMERGENT = "emergent"
    URGENT = "urgent"
    LESS_URGENT = "less-urgent"
    NON_URGENT = "non-urgent"


# Minimum score for each category, checked top to bottom
CATEGORY_THRESHOLDS = (
    (9, TriageCategory.RESUSCITATION),
    (7, TriageCategory.EMERGENT),
    (5, TriageCategory.URGENT),
    (3, TriageCategory.LESS_URGENT),
)

CATEGORY_PRIORITY: Dict[TriageCategory, int] = {
    TriageCategory.RESUSCITATION: PriorityLevel.EMERGENCY,
    TriageCategory.EMERGENT: PriorityLevel.EMERGENCY,
    TriageCategory.URGENT: PriorityLevel.URGENT,
    TriageCategory.LESS_URGENT: PriorityLevel.ROUTINE,
    TriageCategory.NON_URGENT: PriorityLevel.FOLLOW_UP,
}
