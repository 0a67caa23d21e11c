"""
Deterministic risk assessment.

A RiskAssessment is computed on demand and never persisted. Its score is
the heat score and its level is the classifier tier; the factor list
explains which history patterns contributed.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from heatwatch.records.models import BehaviorRecord, active_records, within_days
from heatwatch.scoring.classifier import GOOD_MAX, WARNING_MAX, RiskTier, classify
from heatwatch.scoring.heat_score import DEFAULT_POLICY, ScoringPolicy, score_breakdown

RECENT_WINDOW_DAYS: int = 7
MONTHLY_WINDOW_DAYS: int = 30
REPEAT_PATTERN_COUNT: int = 3

CONFIDENCE_BASE: float = 0.5
CONFIDENCE_PER_RECORD: float = 0.05
CONFIDENCE_CAP: float = 0.95

FACTOR_HIGH_SCORE = "High current behavior score"
FACTOR_ELEVATED_SCORE = "Elevated behavior score"
FACTOR_RECENT_INCIDENTS = "Multiple recent incidents"
FACTOR_MONTHLY_INCIDENTS = "Frequent monthly incidents"
FACTOR_ESCALATING = "Escalating pattern detected"
FACTOR_REPEAT = "Repeat offense pattern"
FACTOR_NO_RECOGNITION = "No recent positive recognition"

# (predicted outcome, suggested intervention, timeline)
_PREDICTIONS: dict[RiskTier, tuple[str, str, str]] = {
    RiskTier.CRITICAL: (
        "High risk of suspension or exclusion within 2 weeks",
        "Immediate counseling session, parent meeting, and behavior contract",
        "Immediate action required",
    ),
    RiskTier.WARNING: (
        "Likely to reach critical threshold within 1 month",
        "Schedule counseling, implement behavior monitoring plan",
        "Within 1 week",
    ),
    RiskTier.GOOD: (
        "May escalate without intervention within 6 weeks",
        "Teacher check-ins, positive reinforcement program",
        "Within 2 weeks",
    ),
    RiskTier.EXCELLENT: (
        "Low risk of behavioral issues",
        "Continue current positive approach",
        "Monitor monthly",
    ),
}


@dataclass(frozen=True)
class RiskAssessment:
    student_id: str
    risk_score: float
    risk_level: RiskTier
    factors: list[str] = field(default_factory=list)
    predicted_outcome: str = ""
    suggested_intervention: str = ""
    timeline: str = ""
    confidence: float = CONFIDENCE_BASE


def _confidence(record_count: int) -> float:
    return round(min(CONFIDENCE_BASE + CONFIDENCE_PER_RECORD * record_count, CONFIDENCE_CAP), 2)


def assess_risk(
    student_id: str,
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> RiskAssessment:
    as_of = as_of or datetime.now()
    history = active_records(records)
    breakdown = score_breakdown(history, as_of, policy)
    tier = classify(breakdown.score)

    incidents = [r for r in history if r.is_incident]
    merits = [r for r in history if r.is_merit]
    recent = [r for r in incidents if within_days(r.timestamp, as_of, RECENT_WINDOW_DAYS)]
    monthly = [r for r in incidents if within_days(r.timestamp, as_of, MONTHLY_WINDOW_DAYS)]
    monthly_merits = [r for r in merits if within_days(r.timestamp, as_of, MONTHLY_WINDOW_DAYS)]

    factors: list[str] = []
    if breakdown.score > WARNING_MAX:
        factors.append(FACTOR_HIGH_SCORE)
    elif breakdown.score > GOOD_MAX:
        factors.append(FACTOR_ELEVATED_SCORE)

    if len(recent) > 2:
        factors.append(FACTOR_RECENT_INCIDENTS)
    elif len(monthly) > 3:
        factors.append(FACTOR_MONTHLY_INCIDENTS)

    if breakdown.pattern_multiplier > 1.0:
        factors.append(FACTOR_ESCALATING)

    groups = Counter(r.offense_group for r in incidents if r.offense_group)
    if groups and max(groups.values()) >= REPEAT_PATTERN_COUNT:
        factors.append(FACTOR_REPEAT)

    if monthly and not monthly_merits:
        factors.append(FACTOR_NO_RECOGNITION)

    outcome, intervention, timeline = _PREDICTIONS[tier]
    return RiskAssessment(
        student_id=student_id,
        risk_score=breakdown.score,
        risk_level=tier,
        factors=factors,
        predicted_outcome=outcome,
        suggested_intervention=intervention,
        timeline=timeline,
        confidence=_confidence(len(history)),
    )


def rank_assessments(assessments: Iterable[RiskAssessment]) -> list[RiskAssessment]:
    """Highest score first; ties broken by student id."""
    return sorted(assessments, key=lambda a: (-a.risk_score, a.student_id))
