"""
Heatwatch Record Model

Behavior records, students, merit tiers and the misdemeanor catalog entry.

RULES:
- A BehaviorRecord is immutable. Status changes produce a new record.
- A voided record is a soft delete. It stays in the history but no
  computation counts it.
- Student.behavior_score is a cache. It is written only by
  heatwatch.records.recording.refresh_student.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATUS_OPEN: str = "open"
STATUS_CLOSED: str = "closed"
STATUS_VOIDED: str = "voided"

KNOWN_STATUSES: frozenset[str] = frozenset({STATUS_OPEN, STATUS_CLOSED, STATUS_VOIDED})

SEVERITY_MIN: int = 1
SEVERITY_MAX: int = 5

ALERT_CRITICAL_SCORE: str = "critical_score"
ALERT_INCIDENT_CLUSTER: str = "incident_cluster"
ALERT_MANUAL_REFERRAL: str = "manual_referral"

ALERT_SEVERITY: dict[str, str] = {
    ALERT_CRITICAL_SCORE: "critical",
    ALERT_INCIDENT_CLUSTER: "high",
    ALERT_MANUAL_REFERRAL: "medium",
}


class RecordKind(str, Enum):
    INCIDENT = "incident"
    MERIT = "merit"

    @classmethod
    def parse(cls, raw) -> Optional["RecordKind"]:
        """Return the kind for a raw export value, or None if unrecognized."""
        if raw is None:
            return None
        if isinstance(raw, RecordKind):
            return raw
        value = str(raw).strip().lower()
        for kind in cls:
            if value == kind.value:
                return kind
        return None


class MeritTier(Enum):
    """Ordered merit tiers. Value is (rank, points, display color)."""

    BRONZE = (1, 1.0, "#fed7aa")
    SILVER = (2, 2.0, "#e5e7eb")
    GOLD = (3, 3.0, "#fef08a")
    DIAMOND = (4, 3.5, "#bfdbfe")
    PLATINUM = (5, 4.0, "#e9d5ff")

    @property
    def rank(self) -> int:
        return self.value[0]

    @property
    def points(self) -> float:
        return self.value[1]

    @property
    def color(self) -> str:
        return self.value[2]

    @property
    def label(self) -> str:
        return self.name.title()

    def __lt__(self, other: "MeritTier") -> bool:
        if not isinstance(other, MeritTier):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, raw) -> Optional["MeritTier"]:
        if raw is None:
            return None
        if isinstance(raw, MeritTier):
            return raw
        value = str(raw).strip().upper()
        return cls.__members__.get(value)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Misdemeanor:
    """Catalog entry. Sanctions are keyed by offense key ("1st" .. "4th+")."""
    misdemeanor_id: str
    name: str
    category: Optional[str] = None
    severity_level: int = 2
    location: Optional[str] = None
    sanctions: dict[str, str] = field(default_factory=dict)
    active: bool = True


@dataclass(frozen=True)
class BehaviorRecord:
    record_id: str
    student_id: str
    kind: RecordKind
    timestamp: Optional[datetime] = None
    severity: Optional[int] = None
    misdemeanor_id: Optional[str] = None
    category: Optional[str] = None
    points: Optional[float] = None
    merit_tier: Optional[MeritTier] = None
    description: str = ""
    location: Optional[str] = None
    offense_number: Optional[int] = None
    sanction: Optional[str] = None
    reported_by: Optional[str] = None
    status: str = STATUS_OPEN

    @property
    def is_incident(self) -> bool:
        return self.kind is RecordKind.INCIDENT

    @property
    def is_merit(self) -> bool:
        return self.kind is RecordKind.MERIT

    @property
    def is_voided(self) -> bool:
        return (self.status or "").strip().lower() == STATUS_VOIDED

    @property
    def offense_group(self) -> Optional[str]:
        """Key used to count repeat offenses: misdemeanor id, else category."""
        return self.misdemeanor_id or self.category or None

    def effective_severity(self, default: int = 2) -> int:
        """Severity clamped to 1..5; missing or non-numeric -> default."""
        return clamp_severity(self.severity, default)

    def effective_points(self) -> float:
        """Merit points: explicit points if valid, else tier points, else 0."""
        if self.points is not None:
            try:
                value = float(self.points)
            except (TypeError, ValueError):
                value = math.nan
            if not math.isnan(value):
                return max(value, 0.0)
        if self.merit_tier is not None:
            return self.merit_tier.points
        return 0.0

    def with_status(self, status: str) -> "BehaviorRecord":
        return replace(self, status=status)


@dataclass
class Student:
    student_id: str
    name: str = ""
    grade: Optional[str] = None
    boarding_status: Optional[str] = None
    behavior_score: float = 0.0
    needs_counseling: bool = False
    counseling_override: bool = False
    counseling_reason: Optional[str] = None
    counseling_flagged_at: Optional[datetime] = None
    shadow_parent_id: Optional[str] = None
    score_updated_at: Optional[datetime] = None


@dataclass
class CounselingAlert:
    """
    A referral to the counselor. Raised when a student's counseling flag
    turns on; stays open until a staff member resolves it.
    """
    alert_id: str
    student_id: str
    alert_type: str
    severity_level: str
    created_at: datetime
    description: str = ""
    triggered_by_record_id: Optional[str] = None
    is_resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def clamp_severity(raw, default: int = 2) -> int:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value):
        return default
    return int(min(max(round(value), SEVERITY_MIN), SEVERITY_MAX))


def naive_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None or ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _comparable(ts: datetime, reference: datetime) -> datetime:
    # Mixed naive/aware pairs are compared in naive UTC.
    if (ts.tzinfo is None) == (reference.tzinfo is None):
        return ts
    return naive_utc(ts)


def age_in_days(ts: Optional[datetime], as_of: datetime) -> float:
    """
    Days between ts and as_of. Missing and future timestamps are age 0.
    """
    if ts is None:
        return 0.0
    ts = _comparable(ts, as_of)
    as_of = _comparable(as_of, ts)
    return max((as_of - ts).total_seconds() / 86400.0, 0.0)


def within_days(ts: Optional[datetime], as_of: datetime, days: float) -> bool:
    """True if ts falls in the trailing window of `days` ending at as_of."""
    if ts is None:
        return True
    return age_in_days(ts, as_of) <= days


def active_records(records) -> list[BehaviorRecord]:
    """Drop voided records. Order is preserved."""
    return [r for r in records if not r.is_voided]


def chronological(records) -> list[BehaviorRecord]:
    """
    Sort by timestamp, then record id. Records without a timestamp sort last
    so they behave as the newest entries. Naive and aware timestamps are
    ordered together in UTC.
    """
    return sorted(
        records,
        key=lambda r: (r.timestamp is None, naive_utc(r.timestamp) or datetime.min, r.record_id),
    )
