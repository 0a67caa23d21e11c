"""
DataFrame views over behavior records for aggregation and reporting.
"""

from __future__ import annotations

from typing import Iterable

import pandas as pd

from heatwatch.records.models import BehaviorRecord, active_records, naive_utc

RECORD_FRAME_COLUMNS: list[str] = [
    "record_id",
    "student_id",
    "kind",
    "timestamp",
    "severity",
    "misdemeanor_id",
    "offense_group",
    "points",
    "location",
    "status",
]


def records_frame(records: Iterable[BehaviorRecord]) -> pd.DataFrame:
    """One row per non-voided record. Merit points are effective points."""
    rows = [
        {
            "record_id": r.record_id,
            "student_id": r.student_id,
            "kind": r.kind.value,
            "timestamp": naive_utc(r.timestamp),
            "severity": r.effective_severity() if r.is_incident else None,
            "misdemeanor_id": r.misdemeanor_id,
            "offense_group": r.offense_group,
            "points": r.effective_points() if r.is_merit else 0.0,
            "location": r.location or "Unspecified",
            "status": r.status,
        }
        for r in active_records(records)
    ]
    frame = pd.DataFrame(rows, columns=RECORD_FRAME_COLUMNS)
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], errors="coerce")
    frame["points"] = pd.to_numeric(frame["points"], errors="coerce").fillna(0.0)
    return frame
