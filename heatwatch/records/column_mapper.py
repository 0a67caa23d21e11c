"""
Heatwatch Column Mapping Engine

Deterministic alias library for behavior, student and misdemeanor export
headers.

RULES (non-negotiable):
- Deterministic string matching only. No fuzzy matching.
- Case-insensitive. Whitespace stripped before comparison.
- Same input always produces same output.
- No column renamed without being logged.
- No column silently dropped. Unmatched headers are returned to the caller.

Public API:
  resolve_columns(df, file_label) -> dict[str, str]
  get_unmatched_columns(df, resolved_map) -> list[str]
"""

from __future__ import annotations

import logging

import pandas as pd

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Normalized field names
# ---------------------------------------------------------------------------

RECORD_FIELDS: frozenset[str] = frozenset({
    "record_id",
    "student_id",
    "record_type",
    "timestamp",
    "severity",
    "misdemeanor_id",
    "category",
    "points",
    "merit_tier",
    "description",
    "location",
    "offense_number",
    "sanction",
    "reported_by",
    "status",
})

STUDENT_FIELDS: frozenset[str] = frozenset({
    "student_id",
    "name",
    "grade",
    "boarding_status",
    "shadow_parent_id",
})

MISDEMEANOR_FIELDS: frozenset[str] = frozenset({
    "misdemeanor_id",
    "name",
    "category",
    "severity_level",
    "location",
    "sanctions",
    "active",
})

NORMALIZED_FIELDS: frozenset[str] = RECORD_FIELDS | STUDENT_FIELDS | MISDEMEANOR_FIELDS

# ---------------------------------------------------------------------------
# Source alias libraries
# ---------------------------------------------------------------------------
# Each section maps raw header variants from one export source to normalized
# field names. Comparison is case-insensitive + whitespace-stripped.
#
# OVERLAP RULE: a variant may appear in several sections only if it maps to
# the same target everywhere. A header that means different things in two
# sources is left out and needs an operator override.
# ---------------------------------------------------------------------------

# ── Heatwatch dashboard export ──────────────────────────────────────────────
_DASHBOARD_VARIANTS: dict[str, str] = {
    "id":                              "record_id",
    "record_id":                       "record_id",
    "student_id":                      "student_id",
    "type":                            "record_type",
    "created_at":                      "timestamp",
    "severity":                        "severity",
    "misdemeanor_id":                  "misdemeanor_id",
    "category":                        "category",
    "points":                          "points",
    "merit_tier":                      "merit_tier",
    "description":                     "description",
    "location":                        "location",
    "offense_number":                  "offense_number",
    "sanction":                        "sanction",
    "reported_by":                     "reported_by",
    "status":                          "status",
    # students
    "name":                            "name",
    "grade":                           "grade",
    "boarding_status":                 "boarding_status",
    "shadow_parent_id":                "shadow_parent_id",
    # misdemeanors
    "severity_level":                  "severity_level",
    "sanctions":                       "sanctions",
    "is_active":                       "active",
}

# ── DeansList ───────────────────────────────────────────────────────────────
_DEANSLIST_VARIANTS: dict[str, str] = {
    "Incident ID":                     "record_id",
    "Incident_ID":                     "record_id",
    "Student ID":                      "student_id",
    "Student_ID":                      "student_id",
    "Student School ID":               "student_id",    # DL local id
    "Behavior Type":                   "record_type",
    "Behavior_Type":                   "record_type",
    "Behavior Date":                   "timestamp",
    "Behavior_Date":                   "timestamp",
    "Date of Incident":                "timestamp",
    "Infraction ID":                   "misdemeanor_id",
    "Infraction_ID":                   "misdemeanor_id",
    "Behavior Category":               "category",
    "Behavior_Category":               "category",
    "Point Value":                     "points",
    "Point_Value":                     "points",
    "Notes":                           "description",
    "Location":                        "location",
    "Staff":                           "reported_by",
    "Staff Name":                      "reported_by",
    "Staff_Name":                      "reported_by",
    "Incident Status":                 "status",
    "Incident_Status":                 "status",
    "Student Name":                    "name",
    "Student_Name":                    "name",
    "Grade Level":                     "grade",
    "Grade_Level":                     "grade",
}

# ── PowerSchool ─────────────────────────────────────────────────────────────
_POWERSCHOOL_VARIANTS: dict[str, str] = {
    "Log_ID":                          "record_id",
    "Log ID":                          "record_id",
    "DCID":                            "record_id",
    "Student_Number":                  "student_id",
    "Student Number":                  "student_id",
    "Log Type":                        "record_type",
    "Log_Type":                        "record_type",
    "Entry_Date":                      "timestamp",
    "Entry Date":                      "timestamp",
    "Incident_Date":                   "timestamp",
    "Incident Date":                   "timestamp",
    "Discipline_IncidentType":         "category",
    "Incident Type":                   "category",
    "Incident_Type":                   "category",
    "Discipline_IncidentTypeCode":     "misdemeanor_id",
    "Severity Level":                  "severity",
    "Entry":                           "description",
    "Discipline_IncidentLocation":     "location",
    "Incident Location":               "location",
    "Incident_Location":               "location",
    "Discipline_ActionTaken":          "sanction",
    "Action Taken":                    "sanction",
    "Action_Taken":                    "sanction",
    "Entry_Author":                    "reported_by",
    "Entry Author":                    "reported_by",
    "LastFirst":                       "name",
    "Grade_Level":                     "grade",
}

# ── Generic / unknown source ────────────────────────────────────────────────
_GENERIC_VARIANTS: dict[str, str] = {
    "Record ID":                       "record_id",
    "Record_ID":                       "record_id",
    "Record Number":                   "record_id",
    "Student":                         "student_id",
    "StudentID":                       "student_id",
    "Student Id":                      "student_id",
    "Record Type":                     "record_type",
    "Record_Type":                     "record_type",
    "Kind":                            "record_type",
    "Date":                            "timestamp",
    "Date Time":                       "timestamp",
    "DateTime":                        "timestamp",
    "Timestamp":                       "timestamp",
    "Occurred At":                     "timestamp",
    "Occurred_At":                     "timestamp",
    "Severity":                        "severity",
    "Misdemeanor":                     "misdemeanor_id",
    "Misdemeanor ID":                  "misdemeanor_id",
    "Offense Code":                    "misdemeanor_id",
    "Offense_Code":                    "misdemeanor_id",
    "Category":                        "category",
    "Points":                          "points",
    "Merit Points":                    "points",
    "Merit Tier":                      "merit_tier",
    "Tier":                            "merit_tier",
    "Description":                     "description",
    "Details":                         "description",
    "Location":                        "location",
    "Offense Number":                  "offense_number",
    "Offense #":                       "offense_number",
    "Sanction":                        "sanction",
    "Reported By":                     "reported_by",
    "Reporter":                        "reported_by",
    "Teacher":                         "reported_by",
    "Status":                          "status",
    # students
    "Name":                            "name",
    "Full Name":                       "name",
    "Grade":                           "grade",
    "Boarding Status":                 "boarding_status",
    "Boarding":                        "boarding_status",
    "Shadow Parent":                   "shadow_parent_id",
    "Shadow Parent ID":                "shadow_parent_id",
    # misdemeanors ("Severity Level" is a PowerSchool record severity)
    "Sanctions":                       "sanctions",
    "Active":                          "active",
}

# ---------------------------------------------------------------------------
# Source registry
# ---------------------------------------------------------------------------

_ALL_SOURCES: list[tuple[str, dict[str, str]]] = [
    ("Dashboard",   _DASHBOARD_VARIANTS),
    ("DeansList",   _DEANSLIST_VARIANTS),
    ("PowerSchool", _POWERSCHOOL_VARIANTS),
    ("Generic",     _GENERIC_VARIANTS),
]


def _build_alias_lookup(
    sources: list[tuple[str, dict[str, str]]] = _ALL_SOURCES,
) -> dict[str, str]:
    """
    Merge all source variant dicts into a single flat lookup keyed by the
    lowercase, stripped variant.

    Raises ValueError if one variant maps to different targets in different
    sections, or if a target is not a normalized field.
    """
    lookup: dict[str, str] = {}
    for source_name, variants in sources:
        for raw_variant, normalized_key in variants.items():
            if normalized_key not in NORMALIZED_FIELDS:
                raise ValueError(
                    f"Alias library error in '{source_name}': variant '{raw_variant}' "
                    f"targets unknown field '{normalized_key}'."
                )
            normalized_variant = raw_variant.strip().lower()
            existing = lookup.get(normalized_variant)
            if existing is not None and existing != normalized_key:
                raise ValueError(
                    f"Alias library conflict detected in '{source_name}': "
                    f"variant '{raw_variant}' (normalized: '{normalized_variant}') "
                    f"maps to '{normalized_key}' but was already mapped to '{existing}'. "
                    f"Remove or reconcile the conflicting entry."
                )
            lookup[normalized_variant] = normalized_key
    return lookup


_ALIAS_LOOKUP: dict[str, str] = _build_alias_lookup()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_columns(df: pd.DataFrame, file_label: str) -> dict[str, str]:
    """
    Resolve raw DataFrame headers to normalized field names.

    Returns {raw_header: normalized_key} for every column that matched a
    known variant. When two raw headers resolve to the same field, only the
    first (left-most) is mapped; the other stays unmatched.
    """
    resolved: dict[str, str] = {}
    claimed: set[str] = set()
    for col in df.columns:
        normalized_key = _ALIAS_LOOKUP.get(str(col).strip().lower())
        if normalized_key is None:
            continue
        if normalized_key in claimed:
            logger.warning(
                "[column_mapper] %s: '%s' also maps to '%s'; left unmatched",
                file_label, col, normalized_key,
            )
            continue
        claimed.add(normalized_key)
        resolved[col] = normalized_key
        logger.info("[column_mapper] %s: '%s' → '%s'", file_label, col, normalized_key)
    return resolved


def get_unmatched_columns(df: pd.DataFrame, resolved_map: dict[str, str]) -> list[str]:
    """Raw headers with no alias match. Surfaced to the operator, never dropped."""
    return [col for col in df.columns if col not in resolved_map]
