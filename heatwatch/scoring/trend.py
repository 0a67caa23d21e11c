"""
Trend indicators for dashboards.

compute_trend compares a current-period aggregate with the prior one:

- direction is "stable" iff the values are equal, else "up" iff current > prior
- percentage = round(|current - prior| / prior * 100), half-up
- prior == 0 and current != 0 -> 100 by convention
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

import pandas as pd

from heatwatch.records.frames import records_frame
from heatwatch.records.models import BehaviorRecord, naive_utc
from heatwatch.scoring.heat_score import DEFAULT_POLICY, ScoringPolicy, compute_heat_score

DIRECTION_UP: str = "up"
DIRECTION_DOWN: str = "down"
DIRECTION_STABLE: str = "stable"

ZERO_BASELINE_PERCENTAGE: int = 100
DEFAULT_PERIOD_DAYS: int = 30


@dataclass(frozen=True)
class Trend:
    direction: str
    percentage: int

    @property
    def is_stable(self) -> bool:
        return self.direction == DIRECTION_STABLE


@dataclass(frozen=True)
class PeriodAggregate:
    start: datetime
    end: datetime
    incidents: int
    merits: int
    merit_points: float


def _as_number(value) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_trend(current, prior) -> Trend:
    current = _as_number(current)
    prior = _as_number(prior)
    if current == prior:
        return Trend(DIRECTION_STABLE, 0)
    direction = DIRECTION_UP if current > prior else DIRECTION_DOWN
    if prior == 0:
        return Trend(direction, ZERO_BASELINE_PERCENTAGE)
    return Trend(direction, _round_half_up(abs(current - prior) / abs(prior) * 100))


def aggregate_period(
    records: Iterable[BehaviorRecord],
    start: datetime,
    end: datetime,
) -> PeriodAggregate:
    """Aggregate records with start < timestamp <= end. Undated records are skipped."""
    frame = records_frame(records)
    lo, hi = naive_utc(start), naive_utc(end)
    mask = frame["timestamp"].notna() & (frame["timestamp"] > lo) & (frame["timestamp"] <= hi)
    window = frame[mask]
    merits = window[window["kind"] == "merit"]
    return PeriodAggregate(
        start=start,
        end=end,
        incidents=int((window["kind"] == "incident").sum()),
        merits=int(len(merits)),
        merit_points=float(merits["points"].sum()),
    )


def period_trends(
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> dict[str, Trend]:
    """Trends for incidents, merits and merit points: current window vs the one before."""
    records = list(records)
    as_of = as_of or datetime.now()
    span = timedelta(days=period_days)
    current = aggregate_period(records, as_of - span, as_of)
    prior = aggregate_period(records, as_of - 2 * span, as_of - span)
    return {
        "incidents": compute_trend(current.incidents, prior.incidents),
        "merits": compute_trend(current.merits, prior.merits),
        "merit_points": compute_trend(current.merit_points, prior.merit_points),
    }


def score_trend(
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    period_days: int = DEFAULT_PERIOD_DAYS,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> Trend:
    """Heat score now vs the score the same history produced one period ago."""
    records = list(records)
    as_of = as_of or datetime.now()
    earlier = as_of - timedelta(days=period_days)
    cutoff = naive_utc(earlier)
    prior_history = [
        r for r in records
        if r.timestamp is not None and naive_utc(r.timestamp) <= cutoff
    ]
    current_score = compute_heat_score(records, as_of, policy)
    prior_score = compute_heat_score(prior_history, earlier, policy)
    return compute_trend(current_score, prior_score)


def monthly_activity(
    records: Iterable[BehaviorRecord],
    as_of: Optional[datetime] = None,
    months: int = 6,
) -> pd.DataFrame:
    """
    Incidents and merits per calendar month for the last `months` months,
    ending with the month containing as_of. Empty months are zero-filled.
    """
    as_of = naive_utc(as_of or datetime.now())
    periods = pd.period_range(end=pd.Period(as_of, freq="M"), periods=months, freq="M")
    table = pd.DataFrame(index=periods)

    frame = records_frame(records).dropna(subset=["timestamp"])
    if frame.empty:
        counts = pd.DataFrame()
    else:
        frame = frame.assign(month=frame["timestamp"].dt.to_period("M"))
        counts = frame.groupby(["month", "kind"]).size().unstack("kind", fill_value=0)

    for kind, column in (("incident", "incidents"), ("merit", "merits")):
        if kind in counts.columns:
            table[column] = counts[kind].reindex(periods, fill_value=0).astype(int)
        else:
            table[column] = 0

    table.index.name = "month"
    table = table.reset_index()
    table["month"] = table["month"].astype(str)
    return table
