"""
Heatwatch Ingestion Pipeline

Loads behavior records (required), students and the misdemeanor catalog
(optional) from CSV exports into the record model.

CONTRACT ANCHORS
----------------
- Headers are resolved through the column_mapper alias library. Operator
  overrides win over auto-resolved aliases.
- Missing or unparseable files and missing required columns halt with an
  IngestionError. Nothing is partially loaded.
- Bad rows are excluded, counted and surfaced in the DataReadinessReport.
  No row is dropped silently.
- Without a students file, one Student is synthesized per record student id.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from heatwatch.records.column_mapper import get_unmatched_columns, resolve_columns
from heatwatch.records.models import (
    STATUS_OPEN,
    BehaviorRecord,
    MeritTier,
    Misdemeanor,
    RecordKind,
    Student,
    naive_utc,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants (CONTRACT-LOCKED)
# ---------------------------------------------------------------------------

RECORDS_REQUIRED: list[str] = ["student_id", "record_type", "timestamp"]
STUDENTS_REQUIRED: list[str] = ["student_id"]
MISDEMEANORS_REQUIRED: list[str] = ["misdemeanor_id", "name"]

# Raw record-type values seen in exports -> kind
RECORD_TYPE_VALUES: dict[str, RecordKind] = {
    "incident": RecordKind.INCIDENT,
    "misdemeanor": RecordKind.INCIDENT,
    "discipline": RecordKind.INCIDENT,
    "negative": RecordKind.INCIDENT,
    "merit": RecordKind.MERIT,
    "positive": RecordKind.MERIT,
    "commendation": RecordKind.MERIT,
}

TIMESTAMP_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%m-%d-%Y",
)

TRUTHY: frozenset[str] = frozenset({"true", "yes", "y", "1", "active"})

EXCLUDE_UNKNOWN_TYPE = "Unknown record type"
EXCLUDE_BAD_TIMESTAMP = "Missing or unparseable timestamp"
EXCLUDE_NO_STUDENT = "Missing student_id"
EXCLUDE_EMPTY_MERIT = "Merit with no points and no tier"
EXCLUDE_DUPLICATE_ID = "Duplicate record_id"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class IngestionError(Exception):
    """Structured halt error. Nothing is loaded when this is raised."""
    reason: str
    affected_file: str
    missing_or_invalid_fields: list[str]
    operator_fix_steps: list[str]

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "HEATWATCH INGESTION HALT",
            "═" * 60,
            f"Reason          : {self.reason}",
            f"Affected File   : {self.affected_file}",
        ]
        if self.missing_or_invalid_fields:
            lines.append(f"Missing/Invalid : {', '.join(self.missing_or_invalid_fields)}")
        lines.append("Fix Steps:")
        for i, step in enumerate(self.operator_fix_steps, 1):
            lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class ExclusionLog:
    reason: str
    count: int
    row_indices: list[int] = field(default_factory=list)


@dataclass
class DataReadinessReport:
    """Produced before analysis begins. Every flag is surfaced."""
    timestamp: str
    records_file: str
    records_file_hash: str
    students_file: Optional[str]
    misdemeanors_file: Optional[str]
    record_row_count: int
    records_loaded: int
    incident_count: int
    merit_count: int
    student_count: int
    students_synthesized: bool
    misdemeanor_count: int
    excluded_rows: list[ExclusionLog]
    alias_map: dict[str, dict[str, str]]
    unmatched_columns: dict[str, list[str]]
    flags: list[str]

    @property
    def excluded_count(self) -> int:
        return sum(ex.count for ex in self.excluded_rows)

    def as_text(self) -> str:
        lines = [
            "═" * 60,
            "HEATWATCH DATA READINESS REPORT",
            "═" * 60,
            f"Generated       : {self.timestamp}",
            "",
            "FILES",
            f"  Records       : {self.records_file} (sha256 {self.records_file_hash})",
            f"  Students      : {self.students_file or 'not provided (synthesized from records)'}",
            f"  Misdemeanors  : {self.misdemeanors_file or 'not provided'}",
            "",
            "ROW COUNTS",
            f"  Record rows   : {self.record_row_count}",
            f"  Loaded        : {self.records_loaded}"
            f" ({self.incident_count} incidents, {self.merit_count} merits)",
            f"  Students      : {self.student_count}",
            f"  Misdemeanors  : {self.misdemeanor_count}",
            "",
            "EXCLUDED ROWS",
        ]
        if not self.excluded_rows:
            lines.append("  None")
        for ex in self.excluded_rows:
            lines.append(f"  {ex.reason}: {ex.count} rows")
        lines += ["", "COLUMN ALIAS MAP"]
        for file_label, amap in self.alias_map.items():
            lines.append(f"  [{file_label}]")
            for raw, normalized in amap.items():
                lines.append(f"    '{raw}' → '{normalized}'")
        unmatched = {k: v for k, v in self.unmatched_columns.items() if v}
        if unmatched:
            lines += ["", "UNMATCHED COLUMNS (kept, not used)"]
            for file_label, cols in unmatched.items():
                lines.append(f"  [{file_label}] {', '.join(cols)}")
        if self.flags:
            lines += ["", "FLAGS (all surfaced)"]
            for flag in self.flags:
                lines.append(f"  ⚑ {flag}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class IngestionResult:
    records: list[BehaviorRecord]
    students: list[Student]
    misdemeanors: list[Misdemeanor]
    report: DataReadinessReport


# ---------------------------------------------------------------------------
# Internal utilities
# ---------------------------------------------------------------------------


def _mechanical_normalize(df: pd.DataFrame) -> tuple[pd.DataFrame, list[str]]:
    """
    Trim whitespace and strip BOM / zero-width characters from every cell
    and header. Returns the normalized frame and a log of touched columns.
    """
    log: list[str] = []
    df = df.copy()
    df.columns = [
        str(c).replace("\ufeff", "").strip() for c in df.columns
    ]
    for col in df.columns:
        original = df[col].astype(str)
        df[col] = (
            original
            .str.replace("[\u200b\u200c\u200d\ufeff]", "", regex=True)
            .str.strip()
        )
        if not df[col].equals(original):
            log.append(f"Mechanical normalize applied to column '{col}'")
    return df, log


def _read_csv(path: str, label: str) -> pd.DataFrame:
    if not Path(path).exists():
        raise IngestionError(
            reason=f"{label} file not found",
            affected_file=path,
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                f"Verify the path is correct: {path}",
                "Ensure the file has been exported before running ingestion.",
            ],
        )
    try:
        return pd.read_csv(path, dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise IngestionError(
            reason=f"{label} file is not parseable",
            affected_file=path,
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                "Verify the file is a valid UTF-8 CSV with a header row.",
                f"Parse error: {e}",
            ],
        ) from e


def _resolve_aliases(
    df: pd.DataFrame,
    file_label: str,
    overrides: Optional[dict[str, str]],
) -> tuple[pd.DataFrame, dict[str, str], list[str]]:
    alias = resolve_columns(df, file_label)
    if overrides:
        for raw, normalized in overrides.items():
            if raw in df.columns:
                # An override replaces any auto alias already targeting the same field.
                alias = {k: v for k, v in alias.items() if v != normalized}
                alias[raw] = normalized
                logger.info("[ingestion] %s: operator override '%s' → '%s'", file_label, raw, normalized)
    unmatched = get_unmatched_columns(df, alias)
    return df.rename(columns=alias), alias, unmatched


def _validate_required_columns(df: pd.DataFrame, required: list[str], file_label: str) -> None:
    """Halt if any required column is absent after alias resolution."""
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise IngestionError(
            reason="Required columns missing",
            affected_file=file_label,
            missing_or_invalid_fields=missing,
            operator_fix_steps=[
                f"Add or rename missing column(s): {', '.join(missing)}",
                "Ensure headers match a known export variant, or pass an operator column override.",
            ],
        )


def _text(row: pd.Series, col: str) -> Optional[str]:
    value = row.get(col)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp tolerantly. Return None if unparseable.
    Offset-bearing values are converted to naive UTC so a file never mixes
    naive and aware timestamps.
    """
    if value is None:
        return None
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _parse_kind(value: Optional[str]) -> Optional[RecordKind]:
    if value is None:
        return None
    return RECORD_TYPE_VALUES.get(value.strip().lower())


def _file_hash(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()[:12]


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _parse_records(
    df: pd.DataFrame,
    exclusions: dict[str, list[int]],
) -> list[BehaviorRecord]:
    records: list[BehaviorRecord] = []
    seen_ids: set[str] = set()
    has_ids = "record_id" in df.columns

    for idx, row in df.iterrows():
        student_id = _text(row, "student_id")
        if student_id is None:
            exclusions.setdefault(EXCLUDE_NO_STUDENT, []).append(idx)
            continue
        kind = _parse_kind(_text(row, "record_type"))
        if kind is None:
            exclusions.setdefault(EXCLUDE_UNKNOWN_TYPE, []).append(idx)
            continue
        timestamp = _parse_timestamp(_text(row, "timestamp"))
        if timestamp is None:
            exclusions.setdefault(EXCLUDE_BAD_TIMESTAMP, []).append(idx)
            continue

        points = _parse_float(_text(row, "points"))
        tier = MeritTier.parse(_text(row, "merit_tier"))
        if kind is RecordKind.MERIT and points is None and tier is None:
            exclusions.setdefault(EXCLUDE_EMPTY_MERIT, []).append(idx)
            continue

        record_id = (_text(row, "record_id") if has_ids else None) or f"row-{idx + 2}"
        if record_id in seen_ids:
            exclusions.setdefault(EXCLUDE_DUPLICATE_ID, []).append(idx)
            continue
        seen_ids.add(record_id)

        records.append(BehaviorRecord(
            record_id=record_id,
            student_id=student_id,
            kind=kind,
            timestamp=timestamp,
            severity=_parse_int(_text(row, "severity")),
            misdemeanor_id=_text(row, "misdemeanor_id"),
            category=_text(row, "category"),
            points=points,
            merit_tier=tier,
            description=_text(row, "description") or "",
            location=_text(row, "location"),
            offense_number=_parse_int(_text(row, "offense_number")),
            sanction=_text(row, "sanction"),
            reported_by=_text(row, "reported_by"),
            status=(_text(row, "status") or STATUS_OPEN).lower(),
        ))
    return records


def _parse_students(df: pd.DataFrame, flags: list[str]) -> list[Student]:
    students: dict[str, Student] = {}
    skipped = 0
    for _, row in df.iterrows():
        student_id = _text(row, "student_id")
        if student_id is None:
            skipped += 1
            continue
        if student_id in students:
            flags.append(f"Duplicate student '{student_id}' in students file; first row kept")
            continue
        students[student_id] = Student(
            student_id=student_id,
            name=_text(row, "name") or "",
            grade=_text(row, "grade"),
            boarding_status=_text(row, "boarding_status"),
            shadow_parent_id=_text(row, "shadow_parent_id"),
        )
    if skipped:
        flags.append(f"{skipped} student rows skipped: missing student_id")
    return list(students.values())


def _parse_misdemeanors(df: pd.DataFrame, flags: list[str]) -> list[Misdemeanor]:
    entries: list[Misdemeanor] = []
    for idx, row in df.iterrows():
        misdemeanor_id = _text(row, "misdemeanor_id")
        name = _text(row, "name")
        if misdemeanor_id is None or name is None:
            flags.append(f"Misdemeanor row {idx + 2} skipped: missing id or name")
            continue
        sanctions: dict[str, str] = {}
        raw_sanctions = _text(row, "sanctions")
        if raw_sanctions:
            try:
                parsed = json.loads(raw_sanctions)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                sanctions = {str(k): str(v) for k, v in parsed.items()}
            else:
                flags.append(f"Misdemeanor '{misdemeanor_id}': sanctions are not a JSON object; ignored")
        level = _parse_int(_text(row, "severity_level") or _text(row, "severity"))
        active_raw = _text(row, "active")
        entries.append(Misdemeanor(
            misdemeanor_id=misdemeanor_id,
            name=name,
            category=_text(row, "category"),
            severity_level=level if level is not None else 2,
            location=_text(row, "location"),
            sanctions=sanctions,
            active=active_raw is None or active_raw.lower() in TRUTHY,
        ))
    return entries


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def run_ingestion(
    records_path: str,
    students_path: Optional[str] = None,
    misdemeanors_path: Optional[str] = None,
    operator_column_overrides: Optional[dict[str, dict[str, str]]] = None,
) -> IngestionResult:
    """
    Load behavior records and, optionally, students and misdemeanors.

    Parameters
    ----------
    records_path : str
        Path to the behavior records CSV.
    students_path : str, optional
        Path to the students CSV. When omitted, students are synthesized
        from the distinct record student ids.
    misdemeanors_path : str, optional
        Path to the misdemeanor catalog CSV. `sanctions` is a JSON object
        keyed by "1st", "2nd", "3rd", "4th+".
    operator_column_overrides : dict, optional
        {"records": {"Raw Header": "normalized_key"}, "students": {...},
        "misdemeanors": {...}}

    Raises
    ------
    IngestionError
        On a missing or unparseable file, or a missing required column.
    """
    overrides = operator_column_overrides or {}
    flags: list[str] = []
    alias_map: dict[str, dict[str, str]] = {}
    unmatched: dict[str, list[str]] = {}
    timestamp = datetime.now().isoformat(timespec="seconds")

    # ------------------------------------------------------------------
    # STEP 1: Verify files are parseable
    # ------------------------------------------------------------------
    rec_df = _read_csv(records_path, "Records")
    stu_df = _read_csv(students_path, "Students") if students_path else None
    mis_df = _read_csv(misdemeanors_path, "Misdemeanors") if misdemeanors_path else None
    record_row_count = len(rec_df)

    # ------------------------------------------------------------------
    # STEP 2: Mechanical normalization + alias resolution
    # ------------------------------------------------------------------
    frames = {"records": rec_df, "students": stu_df, "misdemeanors": mis_df}
    for label, df in list(frames.items()):
        if df is None:
            continue
        df, norm_log = _mechanical_normalize(df)
        flags.extend(f"[{label}] {entry}" for entry in norm_log)
        df, alias, extra = _resolve_aliases(df, label, overrides.get(label))
        if label == "misdemeanors" and "misdemeanor_id" not in df.columns and "record_id" in df.columns:
            df = df.rename(columns={"record_id": "misdemeanor_id"})
        frames[label] = df
        alias_map[label] = alias
        unmatched[label] = extra
        if extra:
            logger.info("[ingestion] %s: unmatched columns kept: %s", label, extra)

    # ------------------------------------------------------------------
    # STEP 3: Validate required columns
    # ------------------------------------------------------------------
    _validate_required_columns(frames["records"], RECORDS_REQUIRED, records_path)
    if frames["students"] is not None:
        _validate_required_columns(frames["students"], STUDENTS_REQUIRED, students_path)
    if frames["misdemeanors"] is not None:
        _validate_required_columns(frames["misdemeanors"], MISDEMEANORS_REQUIRED, misdemeanors_path)

    # ------------------------------------------------------------------
    # STEP 4: Parse records, excluding bad rows
    # ------------------------------------------------------------------
    excluded: dict[str, list[int]] = {}
    records = _parse_records(frames["records"], excluded)
    exclusions = [
        ExclusionLog(reason=reason, count=len(rows), row_indices=rows)
        for reason, rows in excluded.items()
    ]
    for ex in exclusions:
        logger.warning("[ingestion] %d record rows excluded: %s", ex.count, ex.reason)
        flags.append(f"{ex.count} record rows excluded: {ex.reason}")

    # ------------------------------------------------------------------
    # STEP 5: Students (file or synthesized) and misdemeanors
    # ------------------------------------------------------------------
    if frames["students"] is not None:
        students = _parse_students(frames["students"], flags)
        known = {s.student_id for s in students}
        orphans = sorted({r.student_id for r in records} - known)
        if orphans:
            flags.append(
                f"{len(orphans)} student id(s) in records are missing from the students file: "
                f"{', '.join(orphans[:10])}{' ...' if len(orphans) > 10 else ''}"
            )
    else:
        students = [Student(student_id=sid) for sid in sorted({r.student_id for r in records})]

    misdemeanors = _parse_misdemeanors(frames["misdemeanors"], flags) if frames["misdemeanors"] is not None else []
    if misdemeanors:
        catalog_ids = {m.misdemeanor_id for m in misdemeanors}
        unknown = sorted({r.misdemeanor_id for r in records if r.misdemeanor_id} - catalog_ids)
        if unknown:
            flags.append(f"Records reference {len(unknown)} misdemeanor id(s) not in the catalog")

    # ------------------------------------------------------------------
    # STEP 6: Build Data Readiness Report
    # ------------------------------------------------------------------
    report = DataReadinessReport(
        timestamp=timestamp,
        records_file=Path(records_path).name,
        records_file_hash=_file_hash(records_path),
        students_file=Path(students_path).name if students_path else None,
        misdemeanors_file=Path(misdemeanors_path).name if misdemeanors_path else None,
        record_row_count=record_row_count,
        records_loaded=len(records),
        incident_count=sum(1 for r in records if r.is_incident),
        merit_count=sum(1 for r in records if r.is_merit),
        student_count=len(students),
        students_synthesized=students_path is None,
        misdemeanor_count=len(misdemeanors),
        excluded_rows=exclusions,
        alias_map=alias_map,
        unmatched_columns=unmatched,
        flags=flags,
    )
    logger.info(
        "[ingestion] loaded %d records, %d students, %d misdemeanors (%d rows excluded)",
        len(records), len(students), len(misdemeanors), report.excluded_count,
    )
    return IngestionResult(records=records, students=students, misdemeanors=misdemeanors, report=report)


# ---------------------------------------------------------------------------
# CLI / direct execution
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    if len(sys.argv) not in (2, 3, 4):
        print("Usage: python -m heatwatch.records.ingestion <records_csv> [students_csv] [misdemeanors_csv]")
        sys.exit(1)

    try:
        result = run_ingestion(*sys.argv[1:])
        print(result.report.as_text())
        print(f"\nRecords ready for scoring: {len(result.records)}")
    except IngestionError as e:
        print(str(e))
        sys.exit(2)
