"""Projection of the recurring weekly timetable into dated attendance sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from backend.domain.constraints import (
    STATUS_POLICY_RESET,
    MaterializationConfig,
    ValidationError,
    validate_materialization_config,
    validate_scope,
)
from backend.domain.models import (
    ATTENDANCE_PENDING,
    AttendanceSession,
    Scope,
    SessionUpsert,
    TimetableEntry,
)
from backend.domain.week import TEACHING_DAYS, week_dates
from backend.repository.data_repository import BatchOperation, DataRepository, GeneratedId
from backend.repository.schema import (
    attendance_collection,
    faculty_attendance_collection,
    student_attendance_collection,
)
from backend.services.commit_service import AtomicCommitter, audit_operation
from backend.services.roster_service import RosterResolver
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class MaterializationValidationError(ValidationError):
    """Raised when materialization is invoked without a scope or timetable."""


class SessionNotFoundError(Exception):
    """Raised when an attendance session id does not exist in the scope."""


def merge_status_by_student(
    roster: Sequence[str],
    existing: Optional[Mapping[str, str]],
    policy: str,
) -> dict[str, str]:
    """Build the status map written on (re)materialization.

    `reset` marks every roster student pending. `preserve` keeps recorded
    marks, adds new roster students as pending and never drops a non-pending
    mark of a student who left the roster.
    """
    if policy == STATUS_POLICY_RESET or not existing:
        return {student_id: ATTENDANCE_PENDING for student_id in roster}

    merged = {student_id: existing.get(student_id, ATTENDANCE_PENDING) for student_id in roster}
    for student_id, status in existing.items():
        if student_id not in merged and status != ATTENDANCE_PENDING:
            merged[student_id] = status
    return merged


class SessionMaterializer:
    """Pure planner: timetable + roster + week -> one upsert per session identity."""

    def __init__(self, roster_resolver: RosterResolver, config: MaterializationConfig) -> None:
        validate_materialization_config(config)
        self._roster_resolver = roster_resolver
        self._config = config
        self._timezone = ZoneInfo(config.campus_timezone)

    def week(self, now: datetime | date) -> list[date]:
        return week_dates(now, self._timezone)

    def materialize(
        self,
        scope: Scope,
        timetable_entries: Sequence[TimetableEntry],
        now: datetime | date,
        *,
        course_names: Optional[Mapping[str, str]] = None,
        faculty_names: Optional[Mapping[str, str]] = None,
        existing_sessions: Sequence[AttendanceSession] = (),
    ) -> list[SessionUpsert]:
        try:
            validate_scope(scope)
        except ValidationError as exc:
            raise MaterializationValidationError(str(exc)) from exc
        if not timetable_entries:
            raise MaterializationValidationError(
                f"timetable for {scope.container_key} has no entries"
            )

        dates = self.week(now)
        course_names = course_names or {}
        faculty_names = faculty_names or {}
        existing_by_id = {session.session_id: session for session in existing_sessions}

        grouped: dict[str, tuple[date, list[TimetableEntry]]] = {}
        for entry in timetable_entries:
            if not 0 <= entry.weekday < TEACHING_DAYS or not entry.course_id:
                logger.debug(
                    "Skipping timetable entry | course_id=%s | weekday=%s",
                    entry.course_id,
                    entry.weekday,
                )
                continue
            session_date = dates[entry.weekday]
            session_id = f"{session_date.isoformat()}_{entry.course_id}"
            grouped.setdefault(session_id, (session_date, []))[1].append(entry)

        collection = attendance_collection(scope)
        upserts: list[SessionUpsert] = []
        for session_id, (session_date, entries) in grouped.items():
            first = entries[0]
            roster = self._roster_resolver.resolve(first.course_id, scope, scope.section)
            existing = existing_by_id.get(session_id)
            statuses = merge_status_by_student(
                roster,
                existing.status_by_student if existing is not None else None,
                self._config.status_policy,
            )
            start_times = [entry.start_time for entry in entries if entry.start_time]
            end_times = [entry.end_time for entry in entries if entry.end_time]
            session = AttendanceSession(
                scope=scope,
                session_date=session_date,
                course_id=first.course_id,
                course_name=course_names.get(first.course_id, first.course_id),
                faculty_id=first.faculty_id,
                faculty_name=faculty_names.get(first.faculty_id, first.faculty_id),
                start_time=min(start_times) if start_times else None,
                end_time=max(end_times) if end_times else None,
                periods=tuple(dict.fromkeys(p for entry in entries for p in entry.periods)),
                room=next((entry.room for entry in entries if entry.room), None),
                status_by_student=statuses,
                version=existing.version if existing is not None else 0,
            )
            upserts.append(
                SessionUpsert(
                    collection=collection,
                    session_id=session_id,
                    session=session,
                    roster=tuple(roster),
                )
            )
        return upserts


def session_document(session: AttendanceSession) -> dict[str, Any]:
    return {
        "department": session.scope.department,
        "year": session.scope.year_key,
        "section": session.scope.section_key,
        "semester": session.scope.semester,
        "date": session.session_date.isoformat(),
        "course_id": session.course_id,
        "course_name": session.course_name,
        "faculty_id": session.faculty_id,
        "faculty_name": session.faculty_name,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "periods": list(session.periods),
        "room": session.room,
        "status_by_student": dict(session.status_by_student),
    }


def build_session_operations(upserts: Sequence[SessionUpsert]) -> list[BatchOperation]:
    """Session upserts plus the faculty and student index pointers.

    Existing sessions are written with the version read while planning, so a
    mark recorded between planning and commit aborts the batch instead of
    being overwritten.
    """
    operations: list[BatchOperation] = []
    for upsert in upserts:
        session = upsert.session
        session_path = f"{upsert.collection}/{upsert.session_id}"
        operations.append(
            BatchOperation.upsert(
                upsert.collection,
                upsert.session_id,
                session_document(session),
                expected_version=session.version or None,
            )
        )
        pointer = {
            "department": session.scope.department,
            "year": session.scope.year_key,
            "section": session.scope.section_key,
            "date": session.session_date.isoformat(),
            "course_id": session.course_id,
            "course_name": session.course_name,
            "periods": list(session.periods),
            "room": session.room,
            "session_path": session_path,
        }
        if session.faculty_id:
            operations.append(
                BatchOperation.upsert(
                    faculty_attendance_collection(session.scope.department, session.faculty_id),
                    upsert.session_id,
                    pointer,
                )
            )
        for student_id in upsert.roster:
            operations.append(
                BatchOperation.upsert(
                    student_attendance_collection(student_id),
                    upsert.session_id,
                    {
                        **pointer,
                        "faculty_id": session.faculty_id,
                        "status": session.status_by_student.get(student_id, ATTENDANCE_PENDING),
                    },
                )
            )
    return operations


@dataclass(frozen=True)
class MaterializationRunResult:
    scope: Scope
    week: list[date]
    session_ids: list[str] = field(default_factory=list)
    created_session_ids: list[str] = field(default_factory=list)
    generated_ids: list[GeneratedId] = field(default_factory=list)

    @property
    def merged_session_ids(self) -> list[str]:
        created = set(self.created_session_ids)
        return [session_id for session_id in self.session_ids if session_id not in created]


class AttendanceService:
    """Materializes the current week for a scope and manages its sessions."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        committer: Optional[AtomicCommitter] = None,
        roster_resolver: Optional[RosterResolver] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._committer = committer or AtomicCommitter(
            repository=self._repository,
            settings=self._settings,
        )
        self._roster_resolver = roster_resolver or RosterResolver(
            repository=self._repository,
            settings=self._settings,
        )

    def _materializer(self, status_policy: Optional[str] = None) -> SessionMaterializer:
        config = MaterializationConfig(
            status_policy=status_policy or self._settings.materialization_status_policy,
            campus_timezone=self._settings.campus_timezone,
        )
        return SessionMaterializer(self._roster_resolver, config)

    def _now(self) -> datetime:
        return datetime.now(ZoneInfo(self._settings.campus_timezone))

    def plan_current_week(
        self,
        scope: Scope,
        *,
        now: Optional[datetime | date] = None,
        status_policy: Optional[str] = None,
    ) -> list[SessionUpsert]:
        try:
            validate_scope(scope)
        except ValidationError as exc:
            raise MaterializationValidationError(str(exc)) from exc
        entries = self._repository.list_timetable_entries(scope)
        course_names: dict[str, str] = {}
        faculty_names: dict[str, str] = {}
        for entry in entries:
            if entry.course_id and entry.course_id not in course_names:
                course = self._roster_resolver.find_course(entry.course_id, scope)
                course_names[entry.course_id] = course.course_name if course else entry.course_id
            if entry.faculty_id and entry.faculty_id not in faculty_names:
                faculty_names[entry.faculty_id] = (
                    self._repository.get_faculty_name(scope.department, entry.faculty_id)
                    or entry.faculty_id
                )
        return self._materializer(status_policy).materialize(
            scope,
            entries,
            now or self._now(),
            course_names=course_names,
            faculty_names=faculty_names,
            existing_sessions=self._repository.list_attendance_sessions(scope),
        )

    def materialize_current_week(
        self,
        scope: Scope,
        *,
        now: Optional[datetime | date] = None,
        actor_id: Optional[str] = None,
        status_policy: Optional[str] = None,
    ) -> MaterializationRunResult:
        reference = now or self._now()
        materializer = self._materializer(status_policy)
        upserts = self.plan_current_week(scope, now=reference, status_policy=status_policy)
        week = materializer.week(reference)
        if not upserts:
            logger.info("No sessions fall in the current week | scope=%s", scope.container_key)
            return MaterializationRunResult(scope=scope, week=week)

        operations = build_session_operations(upserts)
        operations.append(
            audit_operation(
                entity="attendance",
                entity_id=scope.container_key,
                action="materialize_sessions",
                actor_id=actor_id or self._settings.default_actor_id,
                notes=f"{len(upserts)} sessions for week of {week[0].isoformat()}",
            )
        )
        commit_result = self._committer.commit(operations).raise_for_error()

        session_ids = [upsert.session_id for upsert in upserts]
        created = [upsert.session_id for upsert in upserts if upsert.session.version == 0]
        logger.info(
            "Sessions materialized | scope=%s | sessions=%s | created=%s",
            scope.container_key,
            len(session_ids),
            len(created),
        )
        return MaterializationRunResult(
            scope=scope,
            week=week,
            session_ids=session_ids,
            created_session_ids=created,
            generated_ids=commit_result.generated_ids,
        )

    def list_sessions(self, scope: Scope, session_date: Optional[str] = None) -> list[AttendanceSession]:
        return self._repository.list_attendance_sessions(scope, session_date)

    def remove_session(
        self,
        scope: Scope,
        session_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> None:
        """Delete one session, e.g. after its timetable entry was removed.

        Faculty and student index pointers are left as historical references.
        """
        session = self._repository.get_attendance_session(scope, session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found in {scope.container_key}")
        operations = [
            BatchOperation.delete(
                attendance_collection(scope),
                session_id,
                expected_version=session.version,
            ),
            audit_operation(
                entity="attendance",
                entity_id=f"{scope.container_key}/{session_id}",
                action="remove_session",
                actor_id=actor_id or self._settings.default_actor_id,
            ),
        ]
        self._committer.commit(operations).raise_for_error()
        logger.info("Session removed | scope=%s | session_id=%s", scope.container_key, session_id)
