"""Repository layer responsible for all document storage access."""

from __future__ import annotations

import json
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from backend.domain.constraints import ValidationError
from backend.domain.models import (
    ALLOCATION_STATUS_ACTIVE,
    Allocation,
    AttendanceSession,
    AuditRecord,
    Course,
    PoolResource,
    ResourceGroup,
    Scope,
    TimetableEntry,
    WaitlistEntry,
    WaitlistPreferences,
)
from backend.domain.week import weekday_index
from backend.repository.schema import (
    ALLOCATIONS,
    AUDIT_LOG,
    RESOURCE_GROUPS,
    RESOURCES,
    SCHEMA_VERSION,
    SCHEMA_VERSION_FIELD,
    WAITLIST,
    LegacyKeyAdapter,
    attendance_collection,
    course_collection,
    faculty_collection,
    semester_course_collection,
    timetable_collection,
    validate_document,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_UPSERT = "upsert"
OPERATION_DELETE = "delete"
OPERATION_KINDS = frozenset(
    {OPERATION_CREATE, OPERATION_UPDATE, OPERATION_UPSERT, OPERATION_DELETE}
)

_FIELD_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class StorageError(Exception):
    """Base failure raised by the document store."""


class ConflictError(StorageError):
    """Raised when a batch collides with a concurrent modification."""


class CommitFailure(StorageError):
    """Raised for any other transactional failure; nothing was persisted."""


class DocumentNotFoundError(ValidationError):
    """Raised when an update targets a document that does not exist."""


@dataclass(frozen=True)
class StoredDocument:
    collection: str
    doc_id: str
    data: dict[str, Any]
    version: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class BatchOperation:
    """One write inside a transactional batch.

    `expected_version` and `expected_fields` are checked against the stored
    document inside the transaction; any mismatch aborts the whole batch.
    """

    kind: str
    collection: str
    data: dict[str, Any] = field(default_factory=dict)
    doc_id: Optional[str] = None
    expected_version: Optional[int] = None
    expected_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        collection: str,
        data: Mapping[str, Any],
        doc_id: Optional[str] = None,
    ) -> "BatchOperation":
        return cls(kind=OPERATION_CREATE, collection=collection, data=dict(data), doc_id=doc_id)

    @classmethod
    def update(
        cls,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
        expected_fields: Optional[Mapping[str, Any]] = None,
    ) -> "BatchOperation":
        return cls(
            kind=OPERATION_UPDATE,
            collection=collection,
            data=dict(data),
            doc_id=doc_id,
            expected_version=expected_version,
            expected_fields=dict(expected_fields or {}),
        )

    @classmethod
    def upsert(
        cls,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> "BatchOperation":
        return cls(
            kind=OPERATION_UPSERT,
            collection=collection,
            data=dict(data),
            doc_id=doc_id,
            expected_version=expected_version,
        )

    @classmethod
    def delete(
        cls,
        collection: str,
        doc_id: str,
        *,
        expected_version: Optional[int] = None,
    ) -> "BatchOperation":
        return cls(
            kind=OPERATION_DELETE,
            collection=collection,
            doc_id=doc_id,
            expected_version=expected_version,
        )


@dataclass(frozen=True)
class GeneratedId:
    collection: str
    doc_id: str


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_path(field_path: str) -> str:
    if not _FIELD_PATH_PATTERN.match(field_path):
        raise ValidationError(f"invalid field path {field_path!r}")
    return f"$.{field_path}"


def _parse_priority_rank(entry_id: str, value: Any) -> Optional[int]:
    """Unparseable ranks sort as missing rather than failing the whole read."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(
            "Ignoring unparseable waitlist priority | entry_id=%s | priority_rank=%r",
            entry_id,
            value,
        )
        return None


def _teaching_day(value: Any) -> int:
    index = weekday_index(value)
    return -1 if index is None else index


def _translate_sqlite_error(exc: sqlite3.Error) -> StorageError:
    if isinstance(exc, sqlite3.IntegrityError):
        return ConflictError(f"Document already exists: {exc}")
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return ConflictError(f"Store is busy with a concurrent writer: {exc}")
    return CommitFailure(f"Transaction failed: {exc}")


class DataRepository:
    """Document store over SQLite exposing query / get / transactional_batch.

    Collections are path-like strings (`attendance/CSE_II_A/records`); bodies are
    JSON. Every document carries a version that increments on each write and is
    used for optimistic concurrency checks.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapter: Optional[LegacyKeyAdapter] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adapter = adapter or LegacyKeyAdapter()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self, autocommit: bool = False) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_timeout_seconds,
            isolation_level=None if autocommit else "DEFERRED",
        )
        connection.row_factory = sqlite3.Row
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (collection, id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_documents_collection
                    ON Documents(collection);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def _to_document(self, collection: str, row: sqlite3.Row) -> StoredDocument:
        body = json.loads(row["body"])
        if self._adapter.needs_upgrade(body):
            body = self._adapter.upgrade_document(collection, body)
        return StoredDocument(
            collection=collection,
            doc_id=str(row["id"]),
            data=body,
            version=int(row["version"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        collection = self._adapter.canonical_collection(collection)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, body, version, created_at, updated_at
                FROM Documents
                WHERE collection = ? AND id = ?;
                """,
                (collection, doc_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._to_document(collection, row)

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        ordering: Sequence[tuple[str, str]] = (),
    ) -> list[StoredDocument]:
        """Equality/IN filters and ordering on JSON field paths, insertion order last."""
        collection = self._adapter.canonical_collection(collection)
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field_path, value in (filters or {}).items():
            path = _json_path(field_path)
            if value is None:
                clauses.append("json_extract(body, ?) IS NULL")
                params.append(path)
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                placeholders = ",".join("?" for _ in values)
                clauses.append(f"json_extract(body, ?) IN ({placeholders})")
                params.append(path)
                params.extend(values)
            else:
                clauses.append("json_extract(body, ?) = ?")
                params.extend([path, value])

        order_terms: list[str] = []
        for field_path, direction in ordering:
            normalized = direction.strip().upper()
            if normalized not in {"ASC", "DESC"}:
                raise ValidationError(f"invalid ordering direction {direction!r}")
            order_terms.append(f"json_extract(body, ?) {normalized}")
            params.append(_json_path(field_path))
        order_terms.append("rowid ASC")

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, body, version, created_at, updated_at
                FROM Documents
                WHERE {" AND ".join(clauses)}
                ORDER BY {", ".join(order_terms)};
                """,
                tuple(params),
            )
            return [self._to_document(collection, row) for row in cursor.fetchall()]

    def count_documents(self, collection: str) -> int:
        collection = self._adapter.canonical_collection(collection)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM Documents WHERE collection = ?;",
                (collection,),
            )
            return int(cursor.fetchone()["count"])

    def transactional_batch(self, operations: Sequence[BatchOperation]) -> list[GeneratedId]:
        """Apply all operations in one SQLite transaction or none of them.

        BEGIN IMMEDIATE takes the write lock before the first read so version
        and field checks are read-modify-write safe against other writers.
        """
        connection = self._connect(autocommit=True)
        try:
            connection.execute("BEGIN IMMEDIATE;")
            now = utc_now_iso()
            generated: list[GeneratedId] = []
            for operation in operations:
                created = self._apply_operation(connection, operation, now)
                if created is not None:
                    generated.append(created)
            connection.execute("COMMIT;")
            return generated
        except Exception as exc:
            if connection.in_transaction:
                connection.execute("ROLLBACK;")
            if isinstance(exc, sqlite3.Error):
                raise _translate_sqlite_error(exc) from exc
            raise
        finally:
            connection.close()

    def _load_for_write(
        self,
        connection: sqlite3.Connection,
        collection: str,
        doc_id: str,
    ) -> Optional[StoredDocument]:
        row = connection.execute(
            """
            SELECT id, body, version, created_at, updated_at
            FROM Documents
            WHERE collection = ? AND id = ?;
            """,
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None
        return self._to_document(collection, row)

    @staticmethod
    def _check_expectations(operation: BatchOperation, current: StoredDocument) -> None:
        if (
            operation.expected_version is not None
            and current.version != operation.expected_version
        ):
            raise ConflictError(
                f"{current.collection}/{current.doc_id} changed concurrently "
                f"(expected version {operation.expected_version}, found {current.version})"
            )
        for field_name, expected in operation.expected_fields.items():
            if current.data.get(field_name) != expected:
                raise ConflictError(
                    f"{current.collection}/{current.doc_id}.{field_name} is "
                    f"{current.data.get(field_name)!r}, expected {expected!r}"
                )

    def _apply_operation(
        self,
        connection: sqlite3.Connection,
        operation: BatchOperation,
        now: str,
    ) -> Optional[GeneratedId]:
        if operation.kind not in OPERATION_KINDS:
            raise ValidationError(f"unknown operation kind {operation.kind!r}")
        collection = self._adapter.canonical_collection(operation.collection)

        if operation.kind == OPERATION_CREATE:
            doc_id = operation.doc_id or uuid.uuid4().hex
            body = {**operation.data, SCHEMA_VERSION_FIELD: SCHEMA_VERSION}
            validate_document(collection, body)
            connection.execute(
                """
                INSERT INTO Documents (collection, id, body, version, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?);
                """,
                (collection, doc_id, json.dumps(body), now, now),
            )
            return GeneratedId(collection=collection, doc_id=doc_id)

        if not operation.doc_id:
            raise ValidationError(f"{operation.kind} on {collection} requires a document id")
        current = self._load_for_write(connection, collection, operation.doc_id)

        if operation.kind == OPERATION_DELETE:
            if current is None:
                return None
            self._check_expectations(operation, current)
            connection.execute(
                "DELETE FROM Documents WHERE collection = ? AND id = ?;",
                (collection, operation.doc_id),
            )
            return None

        if current is None:
            if operation.kind == OPERATION_UPDATE:
                raise DocumentNotFoundError(f"{collection}/{operation.doc_id} does not exist")
            if operation.expected_version is not None:
                raise ConflictError(
                    f"{collection}/{operation.doc_id} was removed concurrently "
                    f"(expected version {operation.expected_version})"
                )
            body = {**operation.data, SCHEMA_VERSION_FIELD: SCHEMA_VERSION}
            validate_document(collection, body)
            connection.execute(
                """
                INSERT INTO Documents (collection, id, body, version, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?);
                """,
                (collection, operation.doc_id, json.dumps(body), now, now),
            )
            return None

        self._check_expectations(operation, current)
        merged = {**current.data, **operation.data, SCHEMA_VERSION_FIELD: SCHEMA_VERSION}
        validate_document(collection, merged)
        connection.execute(
            """
            UPDATE Documents
            SET body = ?, version = version + 1, updated_at = ?
            WHERE collection = ? AND id = ?;
            """,
            (json.dumps(merged), now, collection, operation.doc_id),
        )
        return None

    def import_legacy_documents(
        self,
        collection: str,
        documents: Iterable[Mapping[str, Any]],
    ) -> int:
        """Upgrade legacy documents to the canonical schema and upsert them."""
        canonical = self._adapter.canonical_collection(collection)
        operations = []
        for document in documents:
            body = dict(document)
            doc_id = str(body.pop("id", "") or uuid.uuid4().hex)
            body.pop(SCHEMA_VERSION_FIELD, None)
            upgraded = self._adapter.upgrade_document(canonical, body)
            operations.append(BatchOperation.upsert(canonical, doc_id, upgraded))
        if not operations:
            return 0
        self.transactional_batch(operations)
        logger.info(
            "Imported legacy documents | source=%s | target=%s | count=%s",
            collection,
            canonical,
            len(operations),
        )
        return len(operations)

    # Typed projections used by the service layer.

    def list_waitlist(self, include_fulfilled: bool = False) -> list[WaitlistEntry]:
        documents = self.query(WAITLIST)
        entries = [self._to_waitlist_entry(document) for document in documents]
        if include_fulfilled:
            return entries
        return [entry for entry in entries if not entry.fulfilled]

    @staticmethod
    def _to_waitlist_entry(document: StoredDocument) -> WaitlistEntry:
        data = document.data
        preferences = data.get("preferences") or {}
        return WaitlistEntry(
            entry_id=document.doc_id,
            applicant_id=str(data.get("applicant_id", "")),
            roll_no=str(data.get("roll_no") or ""),
            preferences=WaitlistPreferences(
                resource_type=preferences.get("resource_type") or None,
                group_id=preferences.get("group_id") or None,
            ),
            priority_rank=_parse_priority_rank(document.doc_id, data.get("priority_rank")),
            applied_on=data.get("applied_on"),
            fulfilled=bool(data.get("fulfilled", False)),
            version=document.version,
        )

    def list_resource_groups(self) -> dict[str, ResourceGroup]:
        return {
            document.doc_id: ResourceGroup(
                group_id=document.doc_id,
                resource_type=str(document.data["resource_type"]),
                capacity=int(document.data.get("capacity") or 1),
                label=str(document.data.get("label") or document.doc_id),
            )
            for document in self.query(RESOURCE_GROUPS)
        }

    def list_resource_pool(self) -> list[PoolResource]:
        """Return every bed joined with its room type, grouped by room in stable order."""
        groups = self.list_resource_groups()
        pool: list[PoolResource] = []
        for document in self.query(RESOURCES, ordering=(("parent_group_id", "asc"),)):
            group_id = str(document.data.get("parent_group_id", ""))
            group = groups.get(group_id)
            if group is None:
                logger.warning(
                    "Resource references unknown group | resource_id=%s | group_id=%s",
                    document.doc_id,
                    group_id,
                )
                continue
            pool.append(
                PoolResource(
                    resource_id=document.doc_id,
                    group_id=group_id,
                    resource_type=group.resource_type,
                    status=str(document.data.get("status")),
                    version=document.version,
                )
            )
        return pool

    @staticmethod
    def _to_allocation(document: StoredDocument) -> Allocation:
        data = document.data
        return Allocation(
            allocation_id=document.doc_id,
            applicant_id=str(data["applicant_id"]),
            resource_id=str(data["resource_id"]),
            group_id=str(data.get("group_id") or ""),
            status=str(data["status"]),
            allot_date=str(data.get("allot_date") or ""),
            reason=str(data.get("reason") or ""),
            waitlist_entry_id=data.get("waitlist_entry_id"),
            vacate_date=data.get("vacate_date"),
            version=document.version,
        )

    def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        document = self.get(ALLOCATIONS, allocation_id)
        return None if document is None else self._to_allocation(document)

    def list_allocations(self, status: Optional[str] = None) -> list[Allocation]:
        filters = {"status": status} if status else None
        return [self._to_allocation(document) for document in self.query(ALLOCATIONS, filters)]

    def count_active_allocations_for_resource(self, resource_id: str) -> int:
        return len(
            self.query(
                ALLOCATIONS,
                {"resource_id": resource_id, "status": ALLOCATION_STATUS_ACTIVE},
            )
        )

    def list_audit_records(self, entity: Optional[str] = None) -> list[AuditRecord]:
        filters = {"entity": entity} if entity else None
        return [
            AuditRecord(
                entity=str(document.data["entity"]),
                entity_id=str(document.data.get("entity_id") or ""),
                action=str(document.data["action"]),
                actor_id=str(document.data["actor_id"]),
                timestamp=str(document.data["timestamp"]),
                notes=str(document.data.get("notes") or ""),
            )
            for document in self.query(AUDIT_LOG, filters)
        ]

    def get_course(self, scope: Scope, course_id: str) -> Optional[Course]:
        document = self.get(course_collection(scope), course_id)
        return None if document is None else self._to_course(document, scope)

    def get_semester_course(self, scope: Scope, course_id: str) -> Optional[Course]:
        if not scope.semester:
            return None
        document = self.get(semester_course_collection(scope.department, scope.semester), course_id)
        return None if document is None else self._to_course(document, scope)

    @staticmethod
    def _to_course(document: StoredDocument, scope: Scope) -> Course:
        students_by_section = document.data.get("students_by_section")
        return Course(
            course_id=document.doc_id,
            scope=scope,
            course_name=str(document.data.get("course_name") or document.doc_id),
            students_by_section=students_by_section if isinstance(students_by_section, dict) else {},
        )

    def get_faculty_name(self, department: str, faculty_id: str) -> Optional[str]:
        if not faculty_id:
            return None
        document = self.get(faculty_collection(department), faculty_id)
        if document is None:
            return None
        return document.data.get("name") or document.data.get("full_name") or None

    def list_timetable_entries(self, scope: Scope) -> list[TimetableEntry]:
        entries: list[TimetableEntry] = []
        for document in self.query(timetable_collection(scope)):
            data = document.data
            entries.append(
                TimetableEntry(
                    scope=scope,
                    weekday=_teaching_day(data.get("weekday")),
                    course_id=str(data.get("course_id") or ""),
                    faculty_id=str(data.get("faculty_id") or ""),
                    periods=tuple(str(period) for period in data.get("periods") or ()),
                    start_time=data.get("start_time"),
                    end_time=data.get("end_time"),
                    room=data.get("room"),
                )
            )
        return entries

    def list_attendance_sessions(
        self,
        scope: Scope,
        session_date: Optional[str] = None,
    ) -> list[AttendanceSession]:
        filters = {"date": session_date} if session_date else None
        return [
            self._to_session(document, scope)
            for document in self.query(
                attendance_collection(scope),
                filters,
                ordering=(("date", "asc"), ("course_id", "asc")),
            )
        ]

    def get_attendance_session(self, scope: Scope, session_id: str) -> Optional[AttendanceSession]:
        document = self.get(attendance_collection(scope), session_id)
        return None if document is None else self._to_session(document, scope)

    @staticmethod
    def _to_session(document: StoredDocument, scope: Scope) -> AttendanceSession:
        data = document.data
        return AttendanceSession(
            scope=scope,
            session_date=date.fromisoformat(str(data["date"])),
            course_id=str(data["course_id"]),
            course_name=str(data.get("course_name") or data["course_id"]),
            faculty_id=str(data.get("faculty_id") or ""),
            faculty_name=str(data.get("faculty_name") or data.get("faculty_id") or ""),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            periods=tuple(str(period) for period in data.get("periods") or ()),
            room=data.get("room"),
            status_by_student=dict(data.get("status_by_student") or {}),
            version=document.version,
        )

    def seed_demo_data(self) -> int:
        """Seed a small hostel and one timetable only when the store is empty."""
        if self.count_documents(RESOURCE_GROUPS) > 0:
            logger.info("Demo data already present; skipping seed")
            return 0

        now = utc_now_iso()
        operations: list[BatchOperation] = []
        rooms = [
            ("R-101", "single", 1),
            ("R-102", "double", 2),
            ("R-201", "double", 2),
            ("R-202", "triple", 3),
        ]
        for room_id, room_type, capacity in rooms:
            operations.append(
                BatchOperation.create(
                    RESOURCE_GROUPS,
                    {"resource_type": room_type, "capacity": capacity, "label": room_id},
                    doc_id=room_id,
                )
            )
            for bed_number in range(1, capacity + 1):
                operations.append(
                    BatchOperation.create(
                        RESOURCES,
                        {"parent_group_id": room_id, "status": "vacant"},
                        doc_id=f"{room_id}-B{bed_number}",
                    )
                )

        applicants = [
            ("STU-001", "21CS001", "double", 1),
            ("STU-002", "21CS002", "single", 2),
            ("STU-003", "21CS003", "double", 3),
            ("STU-004", "21CS004", None, None),
        ]
        for applicant_id, roll_no, room_type, rank in applicants:
            operations.append(
                BatchOperation.create(
                    WAITLIST,
                    {
                        "applicant_id": applicant_id,
                        "roll_no": roll_no,
                        "preferences": {"resource_type": room_type, "group_id": None},
                        "priority_rank": rank,
                        "applied_on": now,
                        "fulfilled": False,
                    },
                )
            )

        scope = Scope(department="CSE", year="II", section="A")
        operations.append(
            BatchOperation.create(
                course_collection(scope),
                {
                    "course_name": "Data Structures",
                    "students_by_section": {"A": ["STU-001", "STU-002", "STU-003"]},
                },
                doc_id="CS201",
            )
        )
        operations.append(
            BatchOperation.create(
                faculty_collection(scope.department),
                {"name": "Dr. Rao"},
                doc_id="FAC-01",
            )
        )
        for weekday in (0, 2, 4):
            operations.append(
                BatchOperation.create(
                    timetable_collection(scope),
                    {
                        "weekday": weekday,
                        "periods": ["1st"],
                        "start_time": "09:00",
                        "end_time": "09:50",
                        "course_id": "CS201",
                        "faculty_id": "FAC-01",
                        "room": "LH-1",
                    },
                )
            )

        self.transactional_batch(operations)
        logger.info("Demo seed completed with %s documents", len(operations))
        return len(operations)
