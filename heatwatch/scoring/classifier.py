"""
Heat score tier classifier.

Every surface that renders a heat bar must agree on these boundaries, so the
mapping lives here and nowhere else.

    EXCELLENT : score <= 3
    GOOD      : 3 < score <= 5
    WARNING   : 5 < score <= 7
    CRITICAL  : score > 7

Upper bounds are inclusive. Negative, missing and NaN scores classify as 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

EXCELLENT_MAX: float = 3.0
GOOD_MAX: float = 5.0
WARNING_MAX: float = 7.0
DISPLAY_MAX: float = 10.0


class RiskTier(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def label(self) -> str:
        return self.value.title()

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER: list[RiskTier] = [
    RiskTier.EXCELLENT,
    RiskTier.GOOD,
    RiskTier.WARNING,
    RiskTier.CRITICAL,
]


@dataclass(frozen=True)
class TierPolicy:
    tier: RiskTier
    label: str
    color: str
    advisory: str


TIER_POLICIES: dict[RiskTier, TierPolicy] = {
    RiskTier.EXCELLENT: TierPolicy(
        RiskTier.EXCELLENT, "Excellent", "#3b82f6",
        "Keep up the excellent behavior!",
    ),
    RiskTier.GOOD: TierPolicy(
        RiskTier.GOOD, "Good", "#22c55e",
        "Good behavior with room for improvement.",
    ),
    RiskTier.WARNING: TierPolicy(
        RiskTier.WARNING, "Warning", "#eab308",
        "Some concerns - focus on improvement.",
    ),
    RiskTier.CRITICAL: TierPolicy(
        RiskTier.CRITICAL, "Critical", "#ef4444",
        "Immediate attention required.",
    ),
}


def normalize_score(score) -> float:
    """Coerce any score-like value to a non-negative float."""
    if score is None:
        return 0.0
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or value < 0:
        return 0.0
    return value


def classify(score) -> RiskTier:
    value = normalize_score(score)
    if value <= EXCELLENT_MAX:
        return RiskTier.EXCELLENT
    if value <= GOOD_MAX:
        return RiskTier.GOOD
    if value <= WARNING_MAX:
        return RiskTier.WARNING
    return RiskTier.CRITICAL


def tier_policy(tier: RiskTier) -> TierPolicy:
    return TIER_POLICIES[tier]


def display_score(score) -> float:
    """Score clamped to the 0..10 heat bar."""
    return min(normalize_score(score), DISPLAY_MAX)


def heat_bar_percentage(score) -> float:
    return display_score(score) / DISPLAY_MAX * 100.0
