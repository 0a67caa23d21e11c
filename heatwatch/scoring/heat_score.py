"""
Heatwatch Heat Score Engine

Computes a student's behavior heat score from their record history.

RULES (non-negotiable):
- Pure function. Same records and same as_of always give the same score.
- Empty history scores 0. The score is never negative.
- Adding a merit never raises the score. Adding an incident never lowers it.
- Voided records are ignored.
- No hard ceiling. Heat bars clamp at 10 for display only.

POLICY (DEFAULT_POLICY)
-----------------------
incident weight  = severity weight x recency decay x repeat multiplier
severity weight  = 0.5, 1.0, 1.5, 2.0, 3.0 for severity 1..5 (missing -> 2)
recency decay    = 0.5 ** (age_days / 30)
repeat multiplier= 1.5 ** (ordinal - 1), ordinal capped at 4
pattern factor   = trailing run of k incidents within 14 days, no merit in
                   between; k >= 3 -> min(1 + 0.1 * (k - 2), 1.5)
merit credit     = points x recency decay x 0.5
score            = max(0, incident total x pattern factor - merit credit)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from heatwatch.records.misdemeanors import derive_offense_numbers
from heatwatch.records.models import (
    BehaviorRecord,
    active_records,
    age_in_days,
    chronological,
    within_days,
)
from heatwatch.scoring.classifier import RiskTier, classify

logger = logging.getLogger(__name__)

COUNSELING_INCIDENT_COUNT: int = 3
COUNSELING_WINDOW_DAYS: int = 7


@dataclass(frozen=True)
class ScoringPolicy:
    severity_weights: tuple[float, ...] = (0.5, 1.0, 1.5, 2.0, 3.0)
    default_severity: int = 2
    half_life_days: float = 30.0
    repeat_multiplier: float = 1.5
    repeat_ordinal_cap: int = 4
    streak_window_days: float = 14.0
    streak_min_length: int = 3
    streak_step: float = 0.1
    streak_cap: float = 1.5
    merit_weight: float = 0.5
    precision: int = 2

    def severity_weight(self, severity: int) -> float:
        index = min(max(severity, 1), len(self.severity_weights)) - 1
        return self.severity_weights[index]


DEFAULT_POLICY = ScoringPolicy()


@dataclass(frozen=True)
class HeatScoreBreakdown:
    score: float
    incident_total: float
    merit_credit: float
    pattern_multiplier: float
    streak_length: int
    incident_count: int
    merit_count: int
    as_of: datetime


def recency_weight(
    ts: Optional[datetime],
    as_of: datetime,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    if policy.half_life_days <= 0:
        return 1.0
    return 0.5 ** (age_in_days(ts, as_of) / policy.half_life_days)


def trailing_incident_streak(
    history: list[BehaviorRecord],
    as_of: datetime,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> int:
    """
    Count incidents from the newest record backwards, stopping at the first
    merit or the first record older than the streak window.

    `history` must already be chronological and free of voided records.
    """
    streak = 0
    for record in reversed(history):
        if not within_days(record.timestamp, as_of, policy.streak_window_days):
            break
        if record.is_merit:
            break
        streak += 1
    return streak


def pattern_multiplier(streak: int, policy: ScoringPolicy = DEFAULT_POLICY) -> float:
    if streak < policy.streak_min_length:
        return 1.0
    factor = 1.0 + policy.streak_step * (streak - policy.streak_min_length + 1)
    return min(factor, policy.streak_cap)


def score_breakdown(
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> HeatScoreBreakdown:
    as_of = as_of or datetime.now()
    history = chronological(active_records(records))
    ordinals = derive_offense_numbers(history)

    incident_total = 0.0
    merit_credit = 0.0
    incident_count = 0
    merit_count = 0

    for record in history:
        weight = recency_weight(record.timestamp, as_of, policy)
        if record.is_incident:
            incident_count += 1
            ordinal = min(ordinals.get(record.record_id, 1), policy.repeat_ordinal_cap)
            severity = record.effective_severity(policy.default_severity)
            incident_total += (
                policy.severity_weight(severity)
                * weight
                * policy.repeat_multiplier ** (ordinal - 1)
            )
        elif record.is_merit:
            merit_count += 1
            merit_credit += record.effective_points() * weight * policy.merit_weight

    streak = trailing_incident_streak(history, as_of, policy)
    multiplier = pattern_multiplier(streak, policy)
    raw = incident_total * multiplier - merit_credit
    score = round(max(raw, 0.0), policy.precision)

    return HeatScoreBreakdown(
        score=score,
        incident_total=incident_total,
        merit_credit=merit_credit,
        pattern_multiplier=multiplier,
        streak_length=streak,
        incident_count=incident_count,
        merit_count=merit_count,
        as_of=as_of,
    )


def compute_heat_score(
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    return score_breakdown(records, as_of, policy).score


def recent_incident_count(
    records: Iterable[BehaviorRecord],
    as_of: datetime,
    days: float,
) -> int:
    return sum(
        1 for r in active_records(records)
        if r.is_incident and within_days(r.timestamp, as_of, days)
    )


def needs_counseling(
    score: float,
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
) -> bool:
    """Critical tier, or 3+ incidents in the trailing 7 days."""
    as_of = as_of or datetime.now()
    if classify(score) is RiskTier.CRITICAL:
        return True
    return recent_incident_count(records, as_of, COUNSELING_WINDOW_DAYS) >= COUNSELING_INCIDENT_COUNT
