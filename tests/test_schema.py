from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

import pytest

from backend.domain.models import Scope
from backend.repository.data_repository import DataRepository
from backend.repository.schema import (
    ALLOCATIONS,
    RESOURCES,
    SCHEMA_VERSION,
    WAITLIST,
    DocumentValidationError,
    LegacyKeyAdapter,
    attendance_collection,
    course_collection,
    faculty_attendance_collection,
    semester_course_collection,
    timetable_collection,
    validate_document,
)
from backend.utils.config import get_settings


SCOPE = Scope(department="CSE", year="II", section="a")


def test_collection_paths_use_upper_case_section():
    assert timetable_collection(SCOPE) == "timetable/CSE_II_A/entries"
    assert course_collection(SCOPE) == "courses/CSE_II_A/catalog"
    assert attendance_collection(SCOPE) == "attendance/CSE_II_A/records"
    assert semester_course_collection("CSE", "iv") == "courses/CSE/semesters/IV/catalog"


@pytest.mark.parametrize(
    ("legacy", "canonical"),
    [
        ("hm_beds", RESOURCES),
        ("hm_allotments", ALLOCATIONS),
        ("hm_waitlist", WAITLIST),
        ("courses/CSE/years/II/sections/a/courseDetails", "courses/CSE_II_A/catalog"),
        ("courses/CSE/yearsem/iv/courseDetails", "courses/CSE/semesters/IV/catalog"),
        ("faculty/CSE/members/FAC-01/attendance", faculty_attendance_collection("CSE", "FAC-01")),
        ("attendance/CSE_II_A/records", "attendance/CSE_II_A/records"),
    ],
)
def test_legacy_collections_map_to_canonical_paths(legacy, canonical):
    assert LegacyKeyAdapter().canonical_collection(legacy) == canonical


def test_allocation_fields_are_renamed():
    upgraded = LegacyKeyAdapter().upgrade_document(
        ALLOCATIONS,
        {
            "student_id": "STU-1",
            "bed_id": "R1-B1",
            "room_id": "R1",
            "allotment_reason": "manual",
            "status": "active",
        },
    )

    assert upgraded == {
        "applicant_id": "STU-1",
        "resource_id": "R1-B1",
        "group_id": "R1",
        "reason": "manual",
        "status": "active",
        "schema_version": SCHEMA_VERSION,
    }


def test_canonical_field_wins_over_legacy_alias():
    upgraded = LegacyKeyAdapter().upgrade_document(
        "courses/CSE_II_A/catalog",
        {"course_name": "Algorithms", "title": "Old Title", "studentsBySection": {"A": []}},
    )

    assert upgraded["course_name"] == "Algorithms"
    assert "title" not in upgraded
    assert upgraded["students_by_section"] == {"A": []}


def test_waitlist_preferences_are_renamed():
    upgraded = LegacyKeyAdapter().upgrade_document(
        WAITLIST,
        {"student_id": "STU-1", "preferences": {"room_type": "single", "room_id": ""}},
    )

    assert upgraded["applicant_id"] == "STU-1"
    assert upgraded["preferences"] == {"resource_type": "single", "group_id": None}


def test_current_documents_are_left_alone():
    body = {"applicant_id": "STU-1", "student_id": "kept", "schema_version": SCHEMA_VERSION}

    assert LegacyKeyAdapter().upgrade_document(WAITLIST, body) == body


def test_timetable_day_names_become_indexes():
    upgraded = LegacyKeyAdapter().upgrade_document(
        timetable_collection(SCOPE),
        {"day": "Tue", "courseId": "CS201", "facultyId": "FAC-01", "endTime": "10:40"},
    )

    assert upgraded["weekday"] == 1
    assert upgraded["course_id"] == "CS201"
    assert upgraded["faculty_id"] == "FAC-01"
    assert upgraded["end_time"] == "10:40"


@pytest.mark.parametrize(
    ("collection", "body"),
    [
        (RESOURCES, {"parent_group_id": "R1", "status": "haunted"}),
        (RESOURCES, {"status": "vacant"}),
        (ALLOCATIONS, {"applicant_id": "a", "resource_id": "b", "status": "pending"}),
        (WAITLIST, {"applicant_id": "a", "fulfilled": "yes"}),
        ("audit_log", {"entity": "allocation", "action": "vacate", "timestamp": "t"}),
        ("attendance/CSE_II_A/records", {"date": "2024-05-13", "course_id": "CS201", "status_by_student": {"s": "late"}}),
    ],
)
def test_invalid_documents_are_rejected(collection, body):
    with pytest.raises(DocumentValidationError):
        validate_document(collection, body)


def test_unknown_collections_are_not_validated():
    validate_document("faculty/CSE/members", {"anything": True})


def test_rows_written_by_legacy_clients_are_upgraded_on_read(tmp_path):
    settings = replace(get_settings(), database_path=tmp_path / "legacy_rows.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    with sqlite3.connect(settings.database_path) as conn:
        conn.execute(
            """
            INSERT INTO Documents (collection, id, body, version, created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?);
            """,
            (
                WAITLIST,
                "w-legacy",
                json.dumps({"student_id": "STU-7", "preferences": {"room_type": "double"}}),
                "2024-01-01T00:00:00+00:00",
                "2024-01-01T00:00:00+00:00",
            ),
        )
        conn.commit()

    entries = repository.list_waitlist()

    assert len(entries) == 1
    assert entries[0].applicant_id == "STU-7"
    assert entries[0].preferences.resource_type == "double"
    assert entries[0].fulfilled is False


@pytest.mark.parametrize("legacy_rank", [0, "", "0", None])
def test_legacy_zero_or_blank_rank_becomes_missing(legacy_rank):
    upgraded = LegacyKeyAdapter().upgrade_document(
        WAITLIST, {"student_id": "STU-1", "priority_rank": legacy_rank}
    )

    assert upgraded["priority_rank"] is None


def test_legacy_positive_rank_is_kept():
    upgraded = LegacyKeyAdapter().upgrade_document(WAITLIST, {"student_id": "STU-1", "priority_rank": 3})

    assert upgraded["priority_rank"] == 3


@pytest.mark.parametrize("weekday", [6, -1, "Sunday", "someday"])
def test_timetable_rejects_unmappable_weekdays(weekday):
    with pytest.raises(DocumentValidationError):
        validate_document(timetable_collection(SCOPE), {"weekday": weekday, "course_id": "CS201"})


@pytest.mark.parametrize("weekday", [0, 5, "Monday", "sat", None])
def test_timetable_accepts_mappable_weekdays(weekday):
    validate_document(timetable_collection(SCOPE), {"weekday": weekday, "course_id": "CS201"})


def test_scope_normalizes_year_and_section():
    assert Scope(department="CSE", year=" ii ", section="b").container_key == "CSE_II_B"
