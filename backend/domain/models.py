"""Domain models for bed allocation and attendance session materialization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional


RESOURCE_STATUS_VACANT = "vacant"
RESOURCE_STATUS_OCCUPIED = "occupied"
RESOURCE_STATUSES = frozenset({"vacant", "occupied", "blocked", "maintenance"})

ALLOCATION_STATUS_ACTIVE = "active"
ALLOCATION_STATUS_VACATED = "vacated"
ALLOCATION_STATUSES = frozenset({ALLOCATION_STATUS_ACTIVE, ALLOCATION_STATUS_VACATED})

ATTENDANCE_PENDING = "pending"
ATTENDANCE_STATUSES = frozenset({"pending", "present", "absent", "excused"})


@dataclass(frozen=True)
class Scope:
    """Academic container a timetable and its sessions belong to."""

    department: str
    year: str
    section: str
    semester: Optional[str] = None

    @property
    def year_key(self) -> str:
        return self.year.strip().upper()

    @property
    def section_key(self) -> str:
        return self.section.strip().upper()

    @property
    def container_key(self) -> str:
        return f"{self.department}_{self.year_key}_{self.section_key}"


@dataclass(frozen=True)
class WaitlistPreferences:
    resource_type: Optional[str] = None
    group_id: Optional[str] = None


@dataclass(frozen=True)
class WaitlistEntry:
    entry_id: str
    applicant_id: str
    roll_no: str = ""
    preferences: WaitlistPreferences = field(default_factory=WaitlistPreferences)
    priority_rank: Optional[int] = None
    applied_on: Optional[str] = None
    fulfilled: bool = False
    version: int = 1


@dataclass(frozen=True)
class ResourceGroup:
    group_id: str
    resource_type: str
    capacity: int = 1
    label: str = ""


@dataclass(frozen=True)
class PoolResource:
    """Resource joined with its group's type, in stable pool order."""

    resource_id: str
    group_id: str
    resource_type: str
    status: str
    version: int = 1


@dataclass(frozen=True)
class AllocationIntent:
    waitlist_entry_id: str
    applicant_id: str
    resource_id: str
    group_id: str
    resource_version: int
    waitlist_version: int


@dataclass(frozen=True)
class MatchResult:
    intents: list[AllocationIntent]
    remaining_waitlist: list[WaitlistEntry]


@dataclass(frozen=True)
class Allocation:
    allocation_id: str
    applicant_id: str
    resource_id: str
    group_id: str
    status: str
    allot_date: str
    reason: str
    waitlist_entry_id: Optional[str] = None
    vacate_date: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class AuditRecord:
    entity: str
    entity_id: str
    action: str
    actor_id: str
    timestamp: str
    notes: str = ""


@dataclass(frozen=True)
class TimetableEntry:
    scope: Scope
    weekday: int
    course_id: str
    faculty_id: str = ""
    periods: tuple[str, ...] = ()
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    room: Optional[str] = None


@dataclass(frozen=True)
class Course:
    course_id: str
    scope: Scope
    course_name: str
    students_by_section: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AttendanceSession:
    scope: Scope
    session_date: date
    course_id: str
    course_name: str
    faculty_id: str
    faculty_name: str
    start_time: Optional[str]
    end_time: Optional[str]
    periods: tuple[str, ...]
    room: Optional[str]
    status_by_student: dict[str, str]
    version: int = 1

    @property
    def session_id(self) -> str:
        return f"{self.session_date.isoformat()}_{self.course_id}"


@dataclass(frozen=True)
class SessionUpsert:
    """Create-or-merge instruction for one attendance session identity."""

    collection: str
    session_id: str
    session: AttendanceSession
    roster: tuple[str, ...]
