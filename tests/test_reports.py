from __future__ import annotations

from dataclasses import replace
from datetime import date

from backend.domain.models import Scope
from backend.repository.data_repository import BatchOperation, DataRepository
from backend.repository.schema import attendance_collection
from backend.services.commit_service import AtomicCommitter
from backend.services.materialization_service import AttendanceService
from backend.services.matching_service import AllocationService
from backend.services.report_service import ReportService
from backend.utils.config import get_settings


SCOPE = Scope(department="CSE", year="II", section="A")


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        admin_token=None,
        campus_timezone="UTC",
        report_recent_allocations_limit=2,
    )


def _build_services(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_data()
    committer = AtomicCommitter(repository=repository, settings=settings)
    return (
        ReportService(repository=repository, settings=settings),
        AllocationService(repository=repository, settings=settings, committer=committer),
        AttendanceService(repository=repository, settings=settings, committer=committer),
        committer,
    )


def test_occupancy_report_before_allocation(tmp_path):
    reports, _, _, _ = _build_services(tmp_path, "occupancy_empty.db")

    report = reports.occupancy_report()

    assert report["total_resources"] == 8
    assert report["occupied_resources"] == 0
    assert report["occupancy_rate"] == 0.0
    assert report["status_counts"]["vacant"] == 8
    assert report["status_counts"]["maintenance"] == 0
    assert report["pending_waitlist"] == 4
    assert report["recent_allocations"] == []


def test_occupancy_report_after_allocation(tmp_path):
    reports, allocations, _, _ = _build_services(tmp_path, "occupancy_full.db")
    allocations.run_auto_allocation()

    report = reports.occupancy_report()

    assert report["occupied_resources"] == 4
    assert report["occupancy_rate"] == 0.5
    assert report["active_allocations"] == 4
    assert report["pending_waitlist"] == 0
    assert len(report["recent_allocations"]) == 2
    by_type = {row["resource_type"]: row for row in report["by_resource_type"]}
    assert by_type["single"] == {
        "resource_type": "single",
        "total": 1,
        "occupied": 1,
        "occupancy_rate": 1.0,
    }
    assert by_type["double"]["occupied"] == 3
    assert by_type["double"]["total"] == 4
    assert by_type["triple"]["occupied"] == 0


def test_occupancy_report_on_empty_store(tmp_path):
    settings = _build_test_settings(tmp_path, "occupancy_none.db")
    repository = DataRepository(settings)
    repository.initialize_database()

    report = ReportService(repository=repository, settings=settings).occupancy_report()

    assert report["total_resources"] == 0
    assert report["occupancy_rate"] == 0.0
    assert report["by_resource_type"] == []


def test_attendance_summary_counts_statuses(tmp_path):
    reports, _, attendance, committer = _build_services(tmp_path, "attendance_summary.db")
    attendance.materialize_current_week(SCOPE, now=date(2024, 5, 15))
    committer.commit(
        [
            BatchOperation.update(
                attendance_collection(SCOPE),
                "2024-05-13_CS201",
                {"status_by_student": {"STU-001": "present", "STU-002": "present", "STU-003": "absent"}},
            )
        ]
    ).raise_for_error()

    summary = reports.attendance_summary(SCOPE)

    assert [row["session_id"] for row in summary] == [
        "2024-05-13_CS201",
        "2024-05-15_CS201",
        "2024-05-17_CS201",
    ]
    assert summary[0]["status_counts"] == {"absent": 1, "excused": 0, "pending": 0, "present": 2}
    assert summary[1]["status_counts"]["pending"] == 3
    assert summary[0]["roster_size"] == 3
    assert summary[0]["course_name"] == "Data Structures"

    only_monday = reports.attendance_summary(SCOPE, "2024-05-13")
    assert len(only_monday) == 1


def test_attendance_summary_without_sessions(tmp_path):
    reports, _, _, _ = _build_services(tmp_path, "attendance_none.db")

    assert reports.attendance_summary(SCOPE) == []
