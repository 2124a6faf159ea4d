"""
Patient Queue Agent - Triage Scorer

Scores a patient's clinical severity and maps it to a triage category.

================================================================================
ADDITIVE POINT SYSTEM
================================================================================

Each factor contributes an independent, capped number of points. The total
drives the category; it is NOT a weighted average.

┌──────────────────┬──────────────────────────────────────────┬──────────┐
│  FACTOR          │  RULE                                    │  POINTS  │
├──────────────────┼──────────────────────────────────────────┼──────────┤
│  Symptoms        │  critical keyword / high-priority        │  4/3/2/1 │
│                  │  keyword / "pain" or "fever" / other     │          │
│                  │  (exactly one tier, first match wins)    │          │
├──────────────────┼──────────────────────────────────────────┼──────────┤
│  Vital signs     │  HR outside 50-120                       │  +2      │
│  (stacking)      │  BP outside 90-180 / 60-110              │  +2      │
│                  │  SpO2 below 95                           │  +3      │
│                  │  Temp outside 95-103 °F                  │  +1      │
├──────────────────┼──────────────────────────────────────────┼──────────┤
│  Pain (0-10)     │  >= 8 / >= 5                             │  2/1     │
│  Consciousness   │  unconscious / confused / alert          │  3/2/0   │
│  Age             │  under 2 or over 65                      │  1       │
│  Wait time       │  > 120 min / > 60 min                    │  2/1     │
└──────────────────┴──────────────────────────────────────────┴──────────┘

Every rule that fires appends its recommendation; nothing is deduplicated.

WAIT THRESHOLDS
───────────────
Three different wait thresholds are in use and are kept where they apply
until clinical governance settles on one:

    > 120 / > 60 min   wait-time points in calculate_triage_score()
    > 90 min           escalation_required flag
    > 60 min           high-priority rule in requires_immediate_escalation()

================================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from .config import CATEGORY_PRIORITY, CATEGORY_THRESHOLDS, TriageCategory
from .models import (
    Consciousness,
    EmergencyProtocol,
    EscalationCheck,
    PrioritizedPatient,
    TriageCandidate,
    TriageFactors,
    TriageScore,
    VitalSigns,
    elapsed_minutes,
)


logger = logging.getLogger(__name__)


# =============================================================================
# KEYWORD TABLES
# =============================================================================

CRITICAL_SYMPTOMS: Tuple[str, ...] = (
    "chest pain",
    "heart attack",
    "stroke",
    "severe bleeding",
    "unconscious",
    "difficulty breathing",
    "cardiac arrest",
    "severe trauma",
    "poisoning",
    "severe burns",
    "anaphylaxis",
    "seizure",
    "severe head injury",
)

HIGH_PRIORITY_SYMPTOMS: Tuple[str, ...] = (
    "moderate bleeding",
    "broken bone",
    "severe pain",
    "high fever",
    "allergic reaction",
    "dehydration",
    "infection",
    "vomiting blood",
    "severe abdominal pain",
    "eye injury",
    "psychiatric emergency",
)

GENERAL_SYMPTOMS: Tuple[str, ...] = ("pain", "fever")

# Narrower life-threatening subset that bypasses the score entirely
LIFE_THREATENING_SYMPTOMS: Tuple[str, ...] = (
    "cardiac arrest",
    "no pulse",
    "unconscious",
    "severe bleeding",
)


# =============================================================================
# RULE TABLES
# =============================================================================
# Symptom tiers: (tier name, keywords, points, recommendation)
# Evaluated top to bottom; the first tier with a matching keyword wins.

SYMPTOM_TIERS: Tuple[Tuple[str, Tuple[str, ...], int, Optional[str]], ...] = (
    ("critical", CRITICAL_SYMPTOMS, 4, "Immediate medical attention required"),
    ("high_priority", HIGH_PRIORITY_SYMPTOMS, 3, "Urgent medical evaluation needed"),
    ("general", GENERAL_SYMPTOMS, 2, None),
)
DEFAULT_SYMPTOM_POINTS = 1


def _outside(value: Optional[float], low: float, high: float) -> bool:
    return value is not None and not (low <= value <= high)


def _blood_pressure_abnormal(vitals: VitalSigns) -> bool:
    return _outside(vitals.systolic_bp, 90, 180) or _outside(vitals.diastolic_bp, 60, 110)


# Vital sign rules: (name, predicate, points, recommendation). All rules stack.
VITAL_SIGN_RULES: Tuple[Tuple[str, Callable[[VitalSigns], bool], int, str], ...] = (
    (
        "heart_rate",
        lambda v: _outside(v.heart_rate, 50, 120),
        2,
        "Abnormal heart rate detected",
    ),
    (
        "blood_pressure",
        _blood_pressure_abnormal,
        2,
        "Blood pressure abnormality",
    ),
    (
        "oxygen_saturation",
        lambda v: v.oxygen_saturation is not None and v.oxygen_saturation < 95,
        3,
        "Low oxygen saturation - oxygen therapy needed",
    ),
    (
        "temperature",
        lambda v: _outside(v.temperature, 95, 103),
        1,
        "Temperature abnormality",
    ),
)

# (minimum pain level, points, recommendation); first match wins
PAIN_RULES: Tuple[Tuple[int, int, str], ...] = (
    (8, 2, "Severe pain management required"),
    (5, 1, "Pain management needed"),
)

CONSCIOUSNESS_RULES = {
    Consciousness.UNCONSCIOUS: (3, "Altered consciousness - immediate evaluation"),
    Consciousness.CONFUSED: (2, "Mental status changes noted"),
    Consciousness.ALERT: (0, None),
}

INFANT_AGE_LIMIT = 2
ELDERLY_AGE_LIMIT = 65
AGE_POINTS = 1
AGE_RECOMMENDATION = "Age-related priority consideration"

# (wait strictly above, points, recommendation); first match wins
WAIT_TIME_RULES: Tuple[Tuple[int, int, str], ...] = (
    (120, 2, "Extended wait time - priority escalation"),
    (60, 1, "Monitor for condition changes"),
)

ESCALATION_SCORE = 7
ESCALATION_WAIT_MINUTES = 90
IMMEDIATE_ESCALATION_WAIT_MINUTES = 60
CRITICAL_OXYGEN_SATURATION = 90


# =============================================================================
# EMERGENCY PROTOCOLS
# =============================================================================

EMERGENCY_PROTOCOLS: Tuple[EmergencyProtocol, ...] = (
    EmergencyProtocol(
        id="cardiac-arrest",
        name="Cardiac Arrest Protocol",
        triggers=("cardiac arrest", "no pulse", "cpr needed"),
        actions=(
            "Immediate CPR",
            "Call code blue",
            "Prepare defibrillator",
            "IV access",
            "Intubation if needed",
        ),
        time_limit=2,
        required_personnel=("Emergency Physician", "Nurse", "Respiratory Therapist"),
    ),
    EmergencyProtocol(
        id="stroke-alert",
        name="Stroke Alert Protocol",
        triggers=("stroke", "facial drooping", "speech difficulty", "weakness"),
        actions=(
            "Immediate CT scan",
            "Neurologist consult",
            "Blood work",
            "IV access",
            "Monitor vitals",
        ),
        time_limit=15,
        required_personnel=("Emergency Physician", "Neurologist", "CT Technician"),
    ),
    EmergencyProtocol(
        id="trauma-alert",
        name="Trauma Alert Protocol",
        triggers=("severe trauma", "multiple injuries", "motor vehicle accident"),
        actions=(
            "Trauma team activation",
            "X-rays and CT",
            "Blood type and cross-match",
            "IV access",
            "Surgery consult",
        ),
        time_limit=10,
        required_personnel=("Trauma Surgeon", "Emergency Physician", "Anesthesiologist"),
    ),
)


# Staff-facing urgency labels for the emergency recommendation list
URGENCY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("critical", ("chest pain", "heart attack", "stroke", "severe bleeding", "unconscious")),
    ("high", ("difficulty breathing", "severe pain", "high fever", "allergic reaction")),
)

EMERGENCY_RECOMMENDATIONS: Tuple[Tuple[str, str], ...] = (
    ("chest pain", "Immediate cardiac evaluation required. Monitor vital signs continuously."),
    ("difficulty breathing", "Respiratory assessment needed. Ensure oxygen availability."),
    ("severe pain", "Pain management and underlying cause investigation required."),
)
DEFAULT_EMERGENCY_RECOMMENDATION = "Standard emergency protocol. Monitor patient condition."


def _first_match(text: str, keywords: Iterable[str]) -> Optional[str]:
    """Return the first keyword contained in ``text`` (already lower-cased)."""
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def category_for_score(score: int) -> TriageCategory:
    for minimum, category in CATEGORY_THRESHOLDS:
        if score >= minimum:
            return category
    return TriageCategory.NON_URGENT


def priority_for_category(category: Union[TriageCategory, str]) -> int:
    """Queue priority level implied by a triage category."""
    return CATEGORY_PRIORITY[TriageCategory(category)]


class TriageScorer:
    """
    Rule-table triage scorer.

    All methods are pure: the same inputs (and the same ``now`` where a wait
    time is derived) always give the same result.

    Usage:
        scorer = TriageScorer()
        result = scorer.calculate_triage_score("chest pain", 52, pain_level=9)
        if result.escalation_required:
            ...
    """

    def __init__(self, protocols: Sequence[EmergencyProtocol] = EMERGENCY_PROTOCOLS):
        self.protocols = tuple(protocols)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def calculate_triage_score(
        self,
        symptoms: str,
        age: Optional[int],
        vital_signs: Optional[VitalSigns] = None,
        pain_level: Optional[int] = None,
        consciousness: Optional[Union[Consciousness, str]] = None,
        wait_time_minutes: Optional[int] = None,
    ) -> TriageScore:
        """
        Calculate the triage score for one patient.

        Args:
            symptoms: Free-text complaint
            age: Age in years (None when unknown; contributes no points)
            vital_signs: Optional vitals; each abnormal reading stacks
            pain_level: Self-reported pain 0-10
            consciousness: alert / confused / unconscious
            wait_time_minutes: Minutes already spent waiting

        Returns:
            TriageScore with category, factor breakdown and recommendations
        """
        factors = TriageFactors()
        recommendations: List[str] = []
        text = (symptoms or "").lower()

        factors.symptoms = DEFAULT_SYMPTOM_POINTS
        for _tier, keywords, points, message in SYMPTOM_TIERS:
            if _first_match(text, keywords) is not None:
                factors.symptoms = points
                if message:
                    recommendations.append(message)
                break

        if vital_signs is not None:
            for _name, predicate, points, message in VITAL_SIGN_RULES:
                if predicate(vital_signs):
                    factors.vital_signs += points
                    recommendations.append(message)

        if pain_level:
            for minimum, points, message in PAIN_RULES:
                if pain_level >= minimum:
                    factors.pain_level = points
                    recommendations.append(message)
                    break

        if consciousness is not None:
            points, message = CONSCIOUSNESS_RULES[Consciousness(consciousness)]
            factors.consciousness = points
            if message:
                recommendations.append(message)

        if age is not None and (age < INFANT_AGE_LIMIT or age > ELDERLY_AGE_LIMIT):
            factors.age = AGE_POINTS
            recommendations.append(AGE_RECOMMENDATION)

        wait = wait_time_minutes or 0
        for threshold, points, message in WAIT_TIME_RULES:
            if wait > threshold:
                factors.wait_time = points
                recommendations.append(message)
                break

        score = factors.total
        category = category_for_score(score)
        escalation_required = score >= ESCALATION_SCORE or wait > ESCALATION_WAIT_MINUTES

        logger.debug(
            "Triage score calculated",
            extra={
                "score": score,
                "category": category.value,
                "escalation_required": escalation_required,
            },
        )

        return TriageScore(
            score=score,
            category=category,
            factors=factors,
            recommendations=recommendations,
            escalation_required=escalation_required,
        )

    # ------------------------------------------------------------------
    # Protocols and escalation
    # ------------------------------------------------------------------

    def get_applicable_protocols(self, symptoms: str) -> List[EmergencyProtocol]:
        """Protocols whose trigger phrases appear in the complaint."""
        text = (symptoms or "").lower()
        return [
            protocol for protocol in self.protocols
            if _first_match(text, protocol.triggers) is not None
        ]

    def requires_immediate_escalation(
        self,
        symptoms: str,
        wait_time_minutes: int,
        vital_signs: Optional[VitalSigns] = None,
    ) -> EscalationCheck:
        """
        Check the rules that send a patient straight to staff.

        Rules are checked in order and the first one that applies supplies
        the reason:
        1. Life-threatening symptom (with its protocol, if any)
        2. High-priority symptom and waiting over an hour
        3. Oxygen saturation below 90
        """
        text = (symptoms or "").lower()

        keyword = _first_match(text, LIFE_THREATENING_SYMPTOMS)
        if keyword is not None:
            protocols = self.get_applicable_protocols(text)
            return EscalationCheck(
                required=True,
                reason=f"Critical symptom detected: {keyword}",
                protocol=protocols[0] if protocols else None,
            )

        if (
            (wait_time_minutes or 0) > IMMEDIATE_ESCALATION_WAIT_MINUTES
            and _first_match(text, HIGH_PRIORITY_SYMPTOMS) is not None
        ):
            return EscalationCheck(
                required=True,
                reason=f"High-priority patient waiting over 1 hour: {symptoms}",
            )

        if (
            vital_signs is not None
            and vital_signs.oxygen_saturation is not None
            and vital_signs.oxygen_saturation < CRITICAL_OXYGEN_SATURATION
        ):
            return EscalationCheck(required=True, reason="Critical oxygen saturation level")

        return EscalationCheck(required=False)

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def prioritize_patients(
        self,
        patients: Sequence[TriageCandidate],
        now: Optional[datetime] = None,
    ) -> List[PrioritizedPatient]:
        """
        Rank patients by triage score.

        Wait time is derived from each arrival time at ``now``. Highest score
        first; equal scores are ordered by earliest arrival.
        """
        scored = []
        for patient in patients:
            wait_time = elapsed_minutes(patient.arrival_time, now)
            triage_score = self.calculate_triage_score(
                patient.symptoms,
                patient.age,
                patient.vital_signs,
                patient.pain_level,
                patient.consciousness,
                wait_time,
            )
            scored.append((patient, triage_score))

        scored.sort(key=lambda item: (-item[1].score, item[0].arrival_time))

        return [
            PrioritizedPatient(patient=patient, triage_score=triage_score, queue_position=index + 1)
            for index, (patient, triage_score) in enumerate(scored)
        ]

    # ------------------------------------------------------------------
    # Staff-facing summaries
    # ------------------------------------------------------------------

    @staticmethod
    def urgency_level(symptoms: str) -> str:
        """Coarse urgency label (critical / high / moderate)."""
        text = (symptoms or "").lower()
        for label, keywords in URGENCY_KEYWORDS:
            if _first_match(text, keywords) is not None:
                return label
        return "moderate"

    @staticmethod
    def emergency_recommendation(symptoms: str) -> str:
        text = (symptoms or "").lower()
        for keyword, recommendation in EMERGENCY_RECOMMENDATIONS:
            if keyword in text:
                return recommendation
        return DEFAULT_EMERGENCY_RECOMMENDATION


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

_scorer_instance: Optional[TriageScorer] = None


def get_scorer() -> TriageScorer:
    """Get or create the singleton TriageScorer instance."""
    global _scorer_instance
    if _scorer_instance is None:
        _scorer_instance = TriageScorer()
    return _scorer_instance


def calculate_triage_score(
    symptoms: str,
    age: Optional[int],
    vital_signs: Optional[VitalSigns] = None,
    pain_level: Optional[int] = None,
    consciousness: Optional[Union[Consciousness, str]] = None,
    wait_time_minutes: Optional[int] = None,
) -> TriageScore:
    """Convenience wrapper around the shared scorer."""
    return get_scorer().calculate_triage_score(
        symptoms, age, vital_signs, pain_level, consciousness, wait_time_minutes
    )
