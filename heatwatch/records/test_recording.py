"""
Recording and Repository Test Suite

Every write rescores the student from the full record set.
"""

import concurrent.futures
from datetime import datetime, timedelta

import pytest

from heatwatch.records.models import (
    ALERT_CRITICAL_SCORE,
    ALERT_INCIDENT_CLUSTER,
    ALERT_MANUAL_REFERRAL,
    STATUS_VOIDED,
    BehaviorRecord,
    MeritTier,
    Misdemeanor,
    RecordKind,
    Student,
)
from heatwatch.records.recording import (
    REASON_CLUSTER,
    REASON_CRITICAL,
    flag_for_counseling,
    record_incident,
    record_merit,
    refresh_student,
    resolve_alert,
    void_record,
)
from heatwatch.records.repository import InMemoryBehaviorRepository
from heatwatch.scoring.heat_score import compute_heat_score

NOW = datetime(2024, 11, 4, 13, 0)

FIGHT = Misdemeanor(
    misdemeanor_id="FIGHT",
    name="Fighting",
    category="Violence",
    severity_level=5,
    location="Playground",
    sanctions={"1st": "Detention", "2nd": "Suspension", "3rd": "Exclusion review"},
)
UNIFORM = Misdemeanor(
    misdemeanor_id="UNIFORM",
    name="Uniform violation",
    category="Dress code",
    severity_level=1,
    sanctions={"1st": "Warning"},
)


def make_repo(*records):
    return InMemoryBehaviorRepository(
        students=[Student("S1", name="Ada Obi"), Student("S2", name="Ben Tal")],
        records=records,
        misdemeanors=[FIGHT, UNIFORM],
    )


# ---------------------------------------------------------------------------
# RULE: Repository
# ---------------------------------------------------------------------------

class TestRepository:
    def test_duplicate_record_id_rejected(self):
        repo = make_repo()
        record = BehaviorRecord("R1", "S1", RecordKind.INCIDENT, NOW)
        repo.add_record(record)
        with pytest.raises(KeyError):
            repo.add_record(record)

    def test_replace_missing_record_rejected(self):
        with pytest.raises(KeyError):
            make_repo().replace_record(BehaviorRecord("nope", "S1", RecordKind.INCIDENT, NOW))

    def test_voided_hidden_by_default(self):
        repo = make_repo(
            BehaviorRecord("R1", "S1", RecordKind.INCIDENT, NOW),
            BehaviorRecord("R2", "S1", RecordKind.INCIDENT, NOW, status=STATUS_VOIDED),
        )
        assert [r.record_id for r in repo.records_for("S1")] == ["R1"]
        assert len(repo.records_for("S1", include_voided=True)) == 2
        assert len(repo.all_records()) == 1

    def test_lock_is_per_student(self):
        repo = make_repo()
        assert repo.student_lock("S1") is repo.student_lock("S1")
        assert repo.student_lock("S1") is not repo.student_lock("S2")

    def test_catalog_lookup(self):
        assert make_repo().catalog().get("FIGHT") is FIGHT


# ---------------------------------------------------------------------------
# RULE: Incidents carry offense ordinal and sanction
# ---------------------------------------------------------------------------

class TestRecordIncident:
    def test_ordinals_and_sanctions(self):
        repo = make_repo()
        first = record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=3), record_id="F1")
        second = record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=2), record_id="F2")
        third = record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=1), record_id="F3")
        fourth = record_incident(repo, "S1", "FIGHT", timestamp=NOW, record_id="F4")
        assert [r.offense_number for r in (first, second, third, fourth)] == [1, 2, 3, 4]
        assert [r.sanction for r in (first, second, third, fourth)] == [
            "Detention", "Suspension", "Exclusion review", "Detention",
        ]

    def test_catalog_defaults(self):
        record = record_incident(make_repo(), "S1", "FIGHT", timestamp=NOW)
        assert record.severity == 5
        assert record.category == "Violence"
        assert record.location == "Playground"

    def test_explicit_values_win(self):
        record = record_incident(make_repo(), "S1", "FIGHT", timestamp=NOW, severity=3, location="Gym")
        assert record.severity == 3
        assert record.location == "Gym"

    def test_other_students_do_not_count(self):
        repo = make_repo()
        record_incident(repo, "S2", "FIGHT", timestamp=NOW)
        assert record_incident(repo, "S1", "FIGHT", timestamp=NOW).offense_number == 1

    def test_uncatalogued_incident(self):
        record = record_incident(make_repo(), "S1", timestamp=NOW, category="Other", severity=2)
        assert record.offense_number is None
        assert record.sanction is None

    def test_unknown_student(self):
        with pytest.raises(KeyError):
            record_incident(make_repo(), "S404", "FIGHT", timestamp=NOW)

    def test_score_refreshed(self):
        repo = make_repo()
        record_incident(repo, "S1", "FIGHT", timestamp=NOW, as_of=NOW)
        student = repo.get_student("S1")
        assert student.behavior_score == 3.0
        assert student.score_updated_at == NOW

    def test_backdated_entry_rescored_as_of_now(self):
        repo = make_repo()
        record_incident(repo, "S1", "FIGHT", timestamp=NOW, record_id="F1")
        record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=30), record_id="F0")
        student = repo.get_student("S1")
        assert student.score_updated_at > NOW
        assert student.behavior_score == compute_heat_score(repo.records_for("S1"), student.score_updated_at)

    def test_concurrent_entries_get_distinct_ordinals(self):
        repo = make_repo()
        with concurrent.futures.ThreadPoolExecutor(max_workers=4) as executor:
            futures = [
                executor.submit(record_incident, repo, "S1", "UNIFORM",
                                timestamp=NOW - timedelta(hours=n), record_id=f"U{n}")
                for n in range(8)
            ]
            records = [f.result() for f in futures]
        assert sorted(r.offense_number for r in records) == list(range(1, 9))


# ---------------------------------------------------------------------------
# RULE: Merits lower the score
# ---------------------------------------------------------------------------

class TestRecordMerit:
    def test_points_from_tier(self):
        record = record_merit(make_repo(), "S1", MeritTier.DIAMOND, timestamp=NOW)
        assert record.points == 3.5
        assert record.kind is RecordKind.MERIT

    def test_merit_lowers_cached_score(self):
        repo = make_repo()
        record_incident(repo, "S1", "FIGHT", timestamp=NOW, as_of=NOW)
        before = repo.get_student("S1").behavior_score
        record_merit(repo, "S1", MeritTier.GOLD, timestamp=NOW, as_of=NOW)
        assert repo.get_student("S1").behavior_score < before


# ---------------------------------------------------------------------------
# RULE: Cached score always equals a fresh computation
# ---------------------------------------------------------------------------

class TestRefresh:
    def test_matches_fresh_computation(self):
        repo = make_repo(
            BehaviorRecord("R1", "S1", RecordKind.INCIDENT, NOW - timedelta(days=10), severity=4),
            BehaviorRecord("R2", "S1", RecordKind.MERIT, NOW - timedelta(days=2), merit_tier=MeritTier.SILVER),
        )
        student = refresh_student(repo, "S1", NOW)
        assert student.behavior_score == compute_heat_score(repo.records_for("S1"), NOW)

    def test_void_rescores(self):
        repo = make_repo()
        record_incident(repo, "S1", "FIGHT", timestamp=NOW, record_id="F1")
        voided = void_record(repo, "F1", as_of=NOW)
        assert voided.is_voided
        assert repo.get_record("F1").is_voided
        assert repo.get_student("S1").behavior_score == 0.0

    def test_void_unknown_record(self):
        with pytest.raises(KeyError):
            void_record(make_repo(), "missing")

    def test_refresh_unknown_student(self):
        with pytest.raises(KeyError):
            refresh_student(make_repo(), "S404", NOW)


# ---------------------------------------------------------------------------
# RULE: Counseling flag (derived or manual override)
# ---------------------------------------------------------------------------

class TestCounselingFlag:
    def test_critical_score_flags(self):
        repo = make_repo()
        for n in range(3):
            record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=n * 10), as_of=NOW)
        student = repo.get_student("S1")
        assert student.needs_counseling
        assert student.counseling_reason == REASON_CRITICAL

    def test_incident_cluster_flags(self):
        repo = make_repo()
        for n in range(3):
            record_incident(repo, "S1", timestamp=NOW - timedelta(days=n), severity=1, as_of=NOW)
        student = repo.get_student("S1")
        assert student.needs_counseling
        assert student.counseling_reason == REASON_CLUSTER

    def test_manual_override(self):
        repo = make_repo()
        student = flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        assert student.behavior_score == 0.0
        assert student.needs_counseling
        assert student.counseling_reason == "Parent request"
        assert student.counseling_flagged_at == NOW

    def test_override_survives_refresh(self):
        repo = make_repo()
        flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        assert refresh_student(repo, "S2", NOW).needs_counseling

    def test_clearing_override(self):
        repo = make_repo()
        flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        student = flag_for_counseling(repo, "S2", "", flagged=False, as_of=NOW)
        assert not student.needs_counseling
        assert student.counseling_reason is None


# ---------------------------------------------------------------------------
# RULE: Counseling alerts are raised when the flag turns on and resolved by staff
# ---------------------------------------------------------------------------

class TestCounselingAlerts:
    def cluster(self, repo, count=3):
        for n in range(count):
            record_incident(repo, "S1", timestamp=NOW - timedelta(days=n), severity=1,
                            record_id=f"C{n}", as_of=NOW)

    def test_cluster_alert_fields(self):
        repo = make_repo()
        self.cluster(repo)
        [alert] = repo.alerts_for("S1")
        assert alert.alert_type == ALERT_INCIDENT_CLUSTER
        assert alert.severity_level == "high"
        assert alert.triggered_by_record_id == "C0"
        assert alert.description == REASON_CLUSTER
        assert alert.created_at == NOW
        assert not alert.is_resolved

    def test_raised_once_while_flag_stays_on(self):
        repo = make_repo()
        self.cluster(repo, count=5)
        refresh_student(repo, "S1", NOW)
        assert len(repo.alerts_for("S1")) == 1

    def test_no_alert_below_threshold(self):
        repo = make_repo()
        self.cluster(repo, count=2)
        assert repo.alerts_for("S1") == []

    def test_critical_alert(self):
        repo = make_repo()
        for n in range(3):
            record_incident(repo, "S1", "FIGHT", timestamp=NOW - timedelta(days=n * 10),
                            record_id=f"F{n}", as_of=NOW)
        [alert] = repo.alerts_for("S1")
        assert alert.alert_type == ALERT_CRITICAL_SCORE
        assert alert.severity_level == "critical"
        assert alert.triggered_by_record_id == "F0"

    def test_manual_referral(self):
        repo = make_repo()
        flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        [alert] = repo.alerts_for("S2")
        assert alert.alert_type == ALERT_MANUAL_REFERRAL
        assert alert.severity_level == "medium"
        assert alert.triggered_by_record_id is None
        assert alert.description == "Parent request"

    def test_flag_turning_on_again_raises_new_alert(self):
        repo = make_repo()
        flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        flag_for_counseling(repo, "S2", "", flagged=False, as_of=NOW)
        flag_for_counseling(repo, "S2", "Teacher concern", as_of=NOW + timedelta(days=1))
        assert [a.description for a in repo.alerts_for("S2")] == ["Parent request", "Teacher concern"]

    def test_resolve(self):
        repo = make_repo()
        self.cluster(repo)
        [alert] = repo.alerts_for("S1")
        resolved = resolve_alert(repo, alert.alert_id, "counselor-1", NOW + timedelta(hours=2))
        assert resolved.is_resolved
        assert resolved.resolved_by == "counselor-1"
        assert resolved.resolved_at == NOW + timedelta(hours=2)
        assert repo.alerts_for("S1") == []
        assert repo.alerts_for("S1", include_resolved=True) == [resolved]
        assert repo.get_student("S1").needs_counseling

    def test_resolve_twice_keeps_first_resolver(self):
        repo = make_repo()
        flag_for_counseling(repo, "S2", "Parent request", as_of=NOW)
        [alert] = repo.alerts_for("S2")
        resolve_alert(repo, alert.alert_id, "counselor-1", NOW)
        again = resolve_alert(repo, alert.alert_id, "counselor-2", NOW + timedelta(days=1))
        assert again.resolved_by == "counselor-1"
        assert again.resolved_at == NOW

    def test_resolve_unknown_alert(self):
        with pytest.raises(KeyError):
            resolve_alert(make_repo(), "missing", "counselor-1")
