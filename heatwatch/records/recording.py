"""
Record entry and student refresh.

Every write that can change a student's score goes through this module, and
refresh_student is the only code that writes Student.behavior_score and
Student.needs_counseling. It always recomputes from the full record set
while holding the student's lock. When a student's counseling flag turns on
a CounselingAlert is raised; staff close it with resolve_alert.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from heatwatch.records.misdemeanors import next_offense_number, sanction_for
from heatwatch.records.models import (
    ALERT_CRITICAL_SCORE,
    ALERT_INCIDENT_CLUSTER,
    ALERT_MANUAL_REFERRAL,
    ALERT_SEVERITY,
    STATUS_OPEN,
    STATUS_VOIDED,
    BehaviorRecord,
    CounselingAlert,
    MeritTier,
    RecordKind,
    Student,
    chronological,
)
from heatwatch.records.repository import BehaviorRepository
from heatwatch.scoring.classifier import RiskTier, classify
from heatwatch.scoring.heat_score import (
    DEFAULT_POLICY,
    ScoringPolicy,
    compute_heat_score,
    needs_counseling,
)

logger = logging.getLogger(__name__)

REASON_CRITICAL = "Critical behavior score"
REASON_CLUSTER = "Multiple incidents in the last 7 days"


def _new_record_id() -> str:
    return uuid.uuid4().hex[:12]


def _require_student(repo: BehaviorRepository, student_id: str) -> Student:
    student = repo.get_student(student_id)
    if student is None:
        raise KeyError(f"student '{student_id}' not found")
    return student


def _raise_alert(
    repo: BehaviorRepository,
    student: Student,
    records: list[BehaviorRecord],
    derived: bool,
    as_of: datetime,
) -> CounselingAlert:
    if derived:
        critical = classify(student.behavior_score) is RiskTier.CRITICAL
        alert_type = ALERT_CRITICAL_SCORE if critical else ALERT_INCIDENT_CLUSTER
        incidents = [r for r in chronological(records) if r.is_incident]
        trigger = incidents[-1].record_id if incidents else None
    else:
        alert_type = ALERT_MANUAL_REFERRAL
        trigger = None
    alert = CounselingAlert(
        alert_id=_new_record_id(),
        student_id=student.student_id,
        alert_type=alert_type,
        severity_level=ALERT_SEVERITY[alert_type],
        created_at=as_of,
        description=student.counseling_reason or "",
        triggered_by_record_id=trigger,
    )
    repo.save_alert(alert)
    logger.info(
        "[recording] counseling alert %s (%s) raised for '%s'",
        alert.alert_id, alert_type, student.student_id,
    )
    return alert


def _refresh_locked(
    repo: BehaviorRepository,
    student: Student,
    as_of: datetime,
    policy: ScoringPolicy,
) -> Student:
    records = repo.records_for(student.student_id)
    score = compute_heat_score(records, as_of, policy)
    derived = needs_counseling(score, records, as_of)
    was_flagged = student.needs_counseling

    student.behavior_score = score
    student.score_updated_at = as_of
    student.needs_counseling = derived or student.counseling_override
    if derived and not student.counseling_override:
        student.counseling_reason = (
            REASON_CRITICAL if classify(score) is RiskTier.CRITICAL else REASON_CLUSTER
        )
    elif not student.needs_counseling:
        student.counseling_reason = None
    repo.save_student(student)
    # Raised only when the flag turns on.
    if student.needs_counseling and not was_flagged:
        _raise_alert(repo, student, records, derived, as_of)
    return student


def refresh_student(
    repo: BehaviorRepository,
    student_id: str,
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> Student:
    """Recompute the cached score and counseling flag from the full record set."""
    as_of = as_of or datetime.now()
    with repo.student_lock(student_id):
        student = _require_student(repo, student_id)
        return _refresh_locked(repo, student, as_of, policy)


def record_incident(
    repo: BehaviorRepository,
    student_id: str,
    misdemeanor_id: Optional[str] = None,
    *,
    timestamp: Optional[datetime] = None,
    severity: Optional[int] = None,
    category: Optional[str] = None,
    description: str = "",
    location: Optional[str] = None,
    reported_by: Optional[str] = None,
    record_id: Optional[str] = None,
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> BehaviorRecord:
    """
    Record an incident. The offense ordinal and sanction text come from the
    student's history and the misdemeanor catalog; severity, category and
    location default to the catalog entry.
    The student is rescored as of `as_of`, or now when not given.
    """
    timestamp = timestamp or datetime.now()
    misdemeanor = repo.catalog().get(misdemeanor_id)
    if misdemeanor_id and misdemeanor is None:
        logger.warning("[recording] misdemeanor '%s' is not in the active catalog", misdemeanor_id)

    with repo.student_lock(student_id):
        student = _require_student(repo, student_id)
        offense_number = None
        if misdemeanor_id:
            offense_number = next_offense_number(repo.records_for(student_id), student_id, misdemeanor_id)
        record = BehaviorRecord(
            record_id=record_id or _new_record_id(),
            student_id=student_id,
            kind=RecordKind.INCIDENT,
            timestamp=timestamp,
            severity=severity if severity is not None else (misdemeanor.severity_level if misdemeanor else None),
            misdemeanor_id=misdemeanor_id,
            category=category or (misdemeanor.category if misdemeanor else None),
            description=description,
            location=location or (misdemeanor.location if misdemeanor else None),
            offense_number=offense_number,
            sanction=sanction_for(misdemeanor, offense_number or 1) or None,
            reported_by=reported_by,
            status=STATUS_OPEN,
        )
        repo.add_record(record)
        _refresh_locked(repo, student, as_of or datetime.now(), policy)

    logger.info(
        "[recording] incident %s for '%s' (%s, offense #%s)",
        record.record_id, student_id, misdemeanor_id or record.category or "uncategorized",
        offense_number or "-",
    )
    return record


def record_merit(
    repo: BehaviorRepository,
    student_id: str,
    tier: MeritTier,
    *,
    timestamp: Optional[datetime] = None,
    category: Optional[str] = None,
    description: str = "",
    reported_by: Optional[str] = None,
    record_id: Optional[str] = None,
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> BehaviorRecord:
    """Record a merit. Points are fixed by the tier."""
    timestamp = timestamp or datetime.now()
    with repo.student_lock(student_id):
        student = _require_student(repo, student_id)
        record = BehaviorRecord(
            record_id=record_id or _new_record_id(),
            student_id=student_id,
            kind=RecordKind.MERIT,
            timestamp=timestamp,
            category=category,
            points=tier.points,
            merit_tier=tier,
            description=description,
            reported_by=reported_by,
            status=STATUS_OPEN,
        )
        repo.add_record(record)
        _refresh_locked(repo, student, as_of or datetime.now(), policy)

    logger.info("[recording] %s merit %s for '%s'", tier.label, record.record_id, student_id)
    return record


def void_record(
    repo: BehaviorRepository,
    record_id: str,
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> BehaviorRecord:
    """Soft-delete a record and rescore its student."""
    record = repo.get_record(record_id)
    if record is None:
        raise KeyError(f"record '{record_id}' not found")
    with repo.student_lock(record.student_id):
        voided = record.with_status(STATUS_VOIDED)
        repo.replace_record(voided)
        student = repo.get_student(record.student_id)
        if student is not None:
            _refresh_locked(repo, student, as_of or datetime.now(), policy)
    logger.info("[recording] record %s voided", record_id)
    return voided


def flag_for_counseling(
    repo: BehaviorRepository,
    student_id: str,
    reason: str,
    flagged: bool = True,
    as_of: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> Student:
    """
    Set or clear the manual counseling override. Clearing the override
    leaves the derived flag in place.
    """
    as_of = as_of or datetime.now()
    with repo.student_lock(student_id):
        student = _require_student(repo, student_id)
        student.counseling_override = flagged
        student.counseling_reason = reason if flagged else None
        student.counseling_flagged_at = as_of if flagged else None
        _refresh_locked(repo, student, as_of, policy)
    logger.info(
        "[recording] counseling override %s for '%s'",
        "set" if flagged else "cleared", student_id,
    )
    return student


def resolve_alert(
    repo: BehaviorRepository,
    alert_id: str,
    resolved_by: str,
    resolved_at: Optional[datetime] = None,
) -> CounselingAlert:
    """
    Close a counseling alert. The student's counseling flag is not touched;
    it stays derived from the records and the manual override. Resolving an
    alert twice keeps the first resolver.
    """
    alert = repo.get_alert(alert_id)
    if alert is None:
        raise KeyError(f"counseling alert '{alert_id}' not found")
    if alert.is_resolved:
        logger.info("[recording] counseling alert %s already resolved by %s", alert_id, alert.resolved_by)
        return alert
    with repo.student_lock(alert.student_id):
        alert.is_resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = resolved_at or datetime.now()
        repo.save_alert(alert)
    logger.info("[recording] counseling alert %s resolved by %s", alert_id, resolved_by)
    return alert
