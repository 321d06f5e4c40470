"""Canonical document schema and the legacy key adapter used at the storage boundary."""

from __future__ import annotations

import re
from typing import Any, Mapping

from backend.domain.constraints import ValidationError
from backend.domain.models import (
    ALLOCATION_STATUSES,
    ATTENDANCE_STATUSES,
    RESOURCE_STATUSES,
    Scope,
)
from backend.domain.week import weekday_index


SCHEMA_VERSION = 2
SCHEMA_VERSION_FIELD = "schema_version"

WAITLIST = "waitlist"
RESOURCE_GROUPS = "resource_groups"
RESOURCES = "resources"
ALLOCATIONS = "allocations"
AUDIT_LOG = "audit_log"

AUDITED_COLLECTIONS = frozenset({WAITLIST, RESOURCES, ALLOCATIONS})

KIND_TIMETABLE = "timetable"
KIND_CATALOG = "catalog"
KIND_ATTENDANCE = "attendance"
KIND_FACULTY_INDEX = "faculty_index"
KIND_STUDENT_INDEX = "student_index"

_KIND_PATTERNS = (
    (KIND_TIMETABLE, re.compile(r"^timetable/[^/]+/entries$")),
    (KIND_CATALOG, re.compile(r"^courses/[^/]+(/semesters/[^/]+)?/catalog$")),
    (KIND_ATTENDANCE, re.compile(r"^attendance/[^/]+/records$")),
    (KIND_FACULTY_INDEX, re.compile(r"^faculty_attendance/[^/]+/[^/]+/records$")),
    (KIND_STUDENT_INDEX, re.compile(r"^students_attendance/[^/]+/records$")),
)


class DocumentValidationError(ValidationError):
    """Raised when a document body violates the canonical schema."""


def timetable_collection(scope: Scope) -> str:
    return f"timetable/{scope.container_key}/entries"


def course_collection(scope: Scope) -> str:
    return f"courses/{scope.container_key}/catalog"


def semester_course_collection(department: str, semester: str) -> str:
    return f"courses/{department}/semesters/{semester.strip().upper()}/catalog"


def attendance_collection(scope: Scope) -> str:
    return f"attendance/{scope.container_key}/records"


def faculty_attendance_collection(department: str, faculty_id: str) -> str:
    return f"faculty_attendance/{department}/{faculty_id}/records"


def student_attendance_collection(student_id: str) -> str:
    return f"students_attendance/{student_id}/records"


def faculty_collection(department: str) -> str:
    return f"faculty/{department}/members"


def collection_kind(collection: str) -> str:
    if collection in {WAITLIST, RESOURCE_GROUPS, RESOURCES, ALLOCATIONS, AUDIT_LOG}:
        return collection
    for kind, pattern in _KIND_PATTERNS:
        if pattern.match(collection):
            return kind
    return "generic"


def _require(body: Mapping[str, Any], collection: str, *fields: str) -> None:
    for field_name in fields:
        value = body.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise DocumentValidationError(f"{collection}.{field_name} is required")


def validate_document(collection: str, body: Mapping[str, Any]) -> None:
    """Check the merged document that is about to be written."""
    kind = collection_kind(collection)
    if kind == RESOURCES:
        _require(body, collection, "parent_group_id", "status")
        if body["status"] not in RESOURCE_STATUSES:
            raise DocumentValidationError(f"invalid resource status {body['status']!r}")
    elif kind == RESOURCE_GROUPS:
        _require(body, collection, "resource_type")
    elif kind == ALLOCATIONS:
        _require(body, collection, "applicant_id", "resource_id", "status")
        if body["status"] not in ALLOCATION_STATUSES:
            raise DocumentValidationError(f"invalid allocation status {body['status']!r}")
    elif kind == WAITLIST:
        _require(body, collection, "applicant_id")
        if not isinstance(body.get("fulfilled", False), bool):
            raise DocumentValidationError("waitlist.fulfilled must be a boolean")
    elif kind == AUDIT_LOG:
        _require(body, collection, "entity", "action", "actor_id", "timestamp")
    elif kind == KIND_TIMETABLE:
        weekday = body.get("weekday")
        if weekday is not None and weekday_index(weekday) is None:
            raise DocumentValidationError(
                f"{collection}.weekday must be 0..5 or a Monday..Saturday name, got {weekday!r}"
            )
    elif kind == KIND_ATTENDANCE:
        _require(body, collection, "date", "course_id")
        statuses = body.get("status_by_student", {})
        if not isinstance(statuses, Mapping):
            raise DocumentValidationError("status_by_student must be a mapping")
        invalid = sorted({str(value) for value in statuses.values()} - ATTENDANCE_STATUSES)
        if invalid:
            raise DocumentValidationError(f"invalid attendance statuses {invalid}")


class LegacyKeyAdapter:
    """Translate legacy collection paths and field names into schema version 2.

    Planning code only ever sees canonical names; this adapter is applied to
    every document read from storage and by the bulk legacy import.
    """

    LEGACY_COLLECTIONS = {
        "hm_waitlist": WAITLIST,
        "hm_rooms": RESOURCE_GROUPS,
        "hm_beds": RESOURCES,
        "hm_allotments": ALLOCATIONS,
        "hm_audit": AUDIT_LOG,
    }

    _LEGACY_PATHS = (
        (
            re.compile(
                r"^courses/(?P<department>[^/]+)/years/(?P<year>[^/]+)"
                r"/sections/(?P<section>[^/]+)/courseDetails$"
            ),
            lambda m: course_collection(
                Scope(m["department"], m["year"], m["section"])
            ),
        ),
        (
            re.compile(r"^courses/(?P<department>[^/]+)/yearsem/(?P<semester>[^/]+)/courseDetails$"),
            lambda m: semester_course_collection(m["department"], m["semester"]),
        ),
        (
            re.compile(r"^faculty/(?P<department>[^/]+)/members/(?P<faculty>[^/]+)/attendance$"),
            lambda m: faculty_attendance_collection(m["department"], m["faculty"]),
        ),
    )

    _FIELD_RENAMES = {
        WAITLIST: {"student_id": "applicant_id"},
        RESOURCE_GROUPS: {"room_type": "resource_type", "name": "label"},
        RESOURCES: {"room_id": "parent_group_id"},
        ALLOCATIONS: {
            "student_id": "applicant_id",
            "bed_id": "resource_id",
            "room_id": "group_id",
            "allotment_reason": "reason",
        },
        AUDIT_LOG: {"user_id": "actor_id"},
        KIND_CATALOG: {
            "courseName": "course_name",
            "title": "course_name",
            "studentsBySection": "students_by_section",
        },
        KIND_TIMETABLE: {
            "day": "weekday",
            "courseId": "course_id",
            "facultyId": "faculty_id",
            "startTime": "start_time",
            "endTime": "end_time",
        },
        KIND_ATTENDANCE: {
            "courseId": "course_id",
            "courseName": "course_name",
            "facultyId": "faculty_id",
            "facultyName": "faculty_name",
            "startTime": "start_time",
            "endTime": "end_time",
            "statusByStudent": "status_by_student",
        },
        KIND_FACULTY_INDEX: {
            "courseId": "course_id",
            "courseName": "course_name",
            "attendanceDocPath": "session_path",
        },
        KIND_STUDENT_INDEX: {
            "courseId": "course_id",
            "courseName": "course_name",
            "facultyId": "faculty_id",
            "attendanceDocPath": "session_path",
        },
    }

    _PREFERENCE_RENAMES = {"room_type": "resource_type", "room_id": "group_id"}

    def canonical_collection(self, collection: str) -> str:
        if collection in self.LEGACY_COLLECTIONS:
            return self.LEGACY_COLLECTIONS[collection]
        for pattern, build in self._LEGACY_PATHS:
            match = pattern.match(collection)
            if match:
                return build(match)
        return collection

    def needs_upgrade(self, body: Mapping[str, Any]) -> bool:
        return int(body.get(SCHEMA_VERSION_FIELD, 1)) < SCHEMA_VERSION

    def upgrade_document(self, collection: str, body: Mapping[str, Any]) -> dict[str, Any]:
        """Return a canonical copy of `body` for the canonical `collection`."""
        upgraded = dict(body)
        if not self.needs_upgrade(upgraded):
            return upgraded

        kind = collection_kind(collection)
        for legacy_name, canonical_name in self._FIELD_RENAMES.get(kind, {}).items():
            if legacy_name not in upgraded:
                continue
            value = upgraded.pop(legacy_name)
            upgraded.setdefault(canonical_name, value)

        if kind == WAITLIST:
            preferences = dict(upgraded.get("preferences") or {})
            for legacy_name, canonical_name in self._PREFERENCE_RENAMES.items():
                if legacy_name in preferences:
                    value = preferences.pop(legacy_name)
                    preferences.setdefault(canonical_name, value or None)
            upgraded["preferences"] = preferences
            # Legacy forms stored 0 for "no rank" and sorted it as 999.
            if upgraded.get("priority_rank") in (0, "", "0", None):
                upgraded["priority_rank"] = None
        if kind == KIND_TIMETABLE and "weekday" in upgraded:
            upgraded["weekday"] = weekday_index(upgraded["weekday"])

        upgraded[SCHEMA_VERSION_FIELD] = SCHEMA_VERSION
        return upgraded

