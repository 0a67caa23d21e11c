"""
Misdemeanor Catalog Test Suite

Offense ordinals and sanction lookup. No random data.
"""

from datetime import datetime, timedelta

import pytest

from heatwatch.records.misdemeanors import (
    MisdemeanorCatalog,
    derive_offense_numbers,
    next_offense_number,
    offense_key,
    sanction_for,
)
from heatwatch.records.models import STATUS_VOIDED, BehaviorRecord, Misdemeanor, RecordKind

AS_OF = datetime(2024, 5, 1, 10, 0)

LATE = Misdemeanor(
    misdemeanor_id="LATE",
    name="Late to class",
    category="Punctuality",
    severity_level=1,
    sanctions={"1st": "Verbal warning", "2nd": "Lunch detention", "4th+": "Parent meeting"},
)


def incident(rid, days_ago, misdemeanor_id="LATE", student_id="S1", status="open", category=None):
    return BehaviorRecord(
        record_id=rid,
        student_id=student_id,
        kind=RecordKind.INCIDENT,
        timestamp=AS_OF - timedelta(days=days_ago),
        misdemeanor_id=misdemeanor_id,
        category=category,
        status=status,
    )


# ---------------------------------------------------------------------------
# RULE: Offense keys
# ---------------------------------------------------------------------------

class TestOffenseKey:
    @pytest.mark.parametrize("number, key", [
        (0, "1st"), (1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th+"), (11, "4th+"),
    ])
    def test_key(self, number, key):
        assert offense_key(number) == key


# ---------------------------------------------------------------------------
# RULE: Sanction lookup falls back to the 1st-offense sanction
# ---------------------------------------------------------------------------

class TestSanctionFor:
    def test_exact_key(self):
        assert sanction_for(LATE, 2) == "Lunch detention"

    def test_missing_key_falls_back_to_first(self):
        assert sanction_for(LATE, 3) == "Verbal warning"

    def test_fourth_and_beyond(self):
        assert sanction_for(LATE, 6) == "Parent meeting"

    def test_no_catalog_entry(self):
        assert sanction_for(None, 1) == ""

    def test_no_sanctions(self):
        assert sanction_for(Misdemeanor("X", "Other"), 1) == ""


# ---------------------------------------------------------------------------
# RULE: Ordinal = prior non-voided incidents of the same misdemeanor + 1
# ---------------------------------------------------------------------------

class TestOffenseNumbers:
    def test_first_offense(self):
        assert next_offense_number([], "S1", "LATE") == 1

    def test_counts_prior(self):
        records = [incident("r1", 5), incident("r2", 3)]
        assert next_offense_number(records, "S1", "LATE") == 3

    def test_ignores_voided_other_students_and_other_offenses(self):
        records = [
            incident("r1", 5, status=STATUS_VOIDED),
            incident("r2", 4, student_id="S2"),
            incident("r3", 3, misdemeanor_id="PHONE"),
        ]
        assert next_offense_number(records, "S1", "LATE") == 1

    def test_derived_ordinals_follow_time(self):
        records = [incident("late-c", 1), incident("late-a", 9), incident("late-b", 4)]
        assert derive_offense_numbers(records) == {"late-a": 1, "late-b": 2, "late-c": 3}

    def test_category_groups_when_no_misdemeanor(self):
        records = [
            incident("r1", 3, misdemeanor_id=None, category="Uniform"),
            incident("r2", 2, misdemeanor_id=None, category="Uniform"),
            incident("r3", 1, misdemeanor_id=None),
        ]
        assert derive_offense_numbers(records) == {"r1": 1, "r2": 2, "r3": 1}


# ---------------------------------------------------------------------------
# RULE: Catalog hides inactive entries, first duplicate wins
# ---------------------------------------------------------------------------

class TestCatalog:
    def test_lookup(self):
        catalog = MisdemeanorCatalog([LATE])
        assert catalog.get("LATE") is LATE
        assert "LATE" in catalog
        assert catalog.get(None) is None

    def test_inactive_hidden(self):
        retired = Misdemeanor("OLD", "Retired rule", active=False)
        catalog = MisdemeanorCatalog([LATE, retired])
        assert catalog.get("OLD") is None
        assert [m.misdemeanor_id for m in catalog.active()] == ["LATE"]
        assert len(catalog) == 2

    def test_duplicate_keeps_first(self):
        copy = Misdemeanor("LATE", "Tardy")
        catalog = MisdemeanorCatalog([LATE, copy])
        assert catalog.get("LATE").name == "Late to class"
