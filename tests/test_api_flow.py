from __future__ import annotations

from dataclasses import replace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.controllers.allocation_controller import router as allocation_router
from backend.controllers.attendance_controller import router as attendance_router
from backend.controllers.auth_controller import router as auth_router
from backend.repository.data_repository import DataRepository
from backend.services.auth_service import AuthService
from backend.services.commit_service import AtomicCommitter
from backend.services.materialization_service import AttendanceService
from backend.services.matching_service import AllocationService
from backend.services.report_service import ReportService
from backend.services.roster_service import RosterResolver
from backend.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str, admin_token):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        admin_token=admin_token,
        default_actor_id="system",
        campus_timezone="UTC",
        materialization_status_policy="preserve",
    )


def _build_test_app(tmp_path, admin_token) -> tuple[FastAPI, DataRepository]:
    settings = _build_test_settings(tmp_path, "api_flow.db", admin_token)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_data()

    committer = AtomicCommitter(repository=repository, settings=settings)
    roster_resolver = RosterResolver(repository=repository, settings=settings)

    app = FastAPI()
    app.include_router(auth_router)
    app.include_router(allocation_router)
    app.include_router(attendance_router)
    app.state.repository = repository
    app.state.allocation_service = AllocationService(
        repository=repository,
        settings=settings,
        committer=committer,
    )
    app.state.attendance_service = AttendanceService(
        repository=repository,
        settings=settings,
        committer=committer,
        roster_resolver=roster_resolver,
    )
    app.state.report_service = ReportService(repository=repository, settings=settings)
    app.state.auth_service = AuthService(settings=settings)
    return app, repository


def test_allocation_end_to_end_flow(tmp_path):
    admin_token = "secret-admin-token"
    app, repository = _build_test_app(tmp_path, admin_token)
    client = TestClient(app)

    unauth_run = client.post("/allocations/run")
    assert unauth_run.status_code == 401

    bad_login = client.post("/login", json={"admin_token": "wrong-token"})
    assert bad_login.status_code == 401

    login = client.post("/login", json={"admin_token": admin_token, "actor_id": "warden-1"})
    assert login.status_code == 200
    assert login.json()["token_type"] == "bearer"
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}

    bad_bearer = client.post("/allocations/run", headers={"Authorization": "Bearer nope"})
    assert bad_bearer.status_code == 401

    waitlist = client.get("/waitlist")
    assert waitlist.status_code == 200
    assert [entry["applicant_id"] for entry in waitlist.json()] == [
        "STU-001",
        "STU-002",
        "STU-003",
        "STU-004",
    ]

    preview = client.post("/allocations/preview", headers=headers)
    assert preview.status_code == 200
    assert preview.json()["committed"] is False
    assert preview.json()["allocated_count"] == 4
    assert repository.list_allocations() == []

    applied = client.post(
        "/waitlist",
        json={"applicant_id": "STU-010", "resource_type": "triple", "priority_rank": 0},
        headers=headers,
    )
    assert applied.status_code == 201
    assert applied.json()["entry_id"]

    invalid_application = client.post(
        "/waitlist",
        json={"applicant_id": "STU-011", "priority_rank": -3},
        headers=headers,
    )
    assert invalid_application.status_code == 422

    run = client.post("/allocations/run", headers=headers)
    assert run.status_code == 200
    body = run.json()
    assert body["committed"] is True
    assert body["allocated_count"] == 5
    assert body["remaining_count"] == 0
    assert body["intents"][0]["applicant_id"] == "STU-010"
    assert body["intents"][0]["resource_id"] == "R-202-B1"

    active = client.get("/allocations", params={"allocation_status": "active"})
    assert active.status_code == 200
    assert len(active.json()) == 5

    allocation_id = body["allocation_ids"][0]
    vacate = client.post(
        f"/allocations/{allocation_id}/vacate",
        json={"notes": "moved out"},
        headers=headers,
    )
    assert vacate.status_code == 200
    assert vacate.json()["status"] == "vacated"

    vacate_again = client.post(f"/allocations/{allocation_id}/vacate", headers=headers)
    assert vacate_again.status_code == 400

    vacate_missing = client.post("/allocations/missing/vacate", headers=headers)
    assert vacate_missing.status_code == 404

    occupancy = client.get("/reports/occupancy")
    assert occupancy.status_code == 200
    assert occupancy.json()["occupied_resources"] == 4
    assert occupancy.json()["total_resources"] == 8

    audit = repository.list_audit_records("allocation")
    assert {record.actor_id for record in audit} == {"warden-1"}
    assert sorted(record.action for record in audit).count("auto_allot") == 5


def test_attendance_end_to_end_flow(tmp_path):
    admin_token = "secret-admin-token"
    app, repository = _build_test_app(tmp_path, admin_token)
    client = TestClient(app)
    login = client.post("/login", json={"admin_token": admin_token, "actor_id": "coordinator"})
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
    payload = {
        "department": "CSE",
        "year": "II",
        "section": "A",
        "now": "2024-05-15T10:00:00+00:00",
    }

    unauth = client.post("/attendance/materialize", json=payload)
    assert unauth.status_code == 401

    first = client.post("/attendance/materialize", json=payload, headers=headers)
    assert first.status_code == 200
    assert first.json()["container"] == "CSE_II_A"
    assert first.json()["week"][0] == "2024-05-13"
    assert len(first.json()["created_session_ids"]) == 3

    second = client.post("/attendance/materialize", json=payload, headers=headers)
    assert second.status_code == 200
    assert second.json()["created_session_ids"] == []
    assert len(second.json()["merged_session_ids"]) == 3

    bad_policy = client.post(
        "/attendance/materialize",
        json={**payload, "status_policy": "merge"},
        headers=headers,
    )
    assert bad_policy.status_code == 422

    no_timetable = client.post(
        "/attendance/materialize",
        json={**payload, "department": "ECE"},
        headers=headers,
    )
    assert no_timetable.status_code == 400

    sessions = client.get("/attendance/CSE/II/A/sessions")
    assert sessions.status_code == 200
    assert [session["session_id"] for session in sessions.json()] == [
        "2024-05-13_CS201",
        "2024-05-15_CS201",
        "2024-05-17_CS201",
    ]
    assert sessions.json()[0]["faculty_name"] == "Dr. Rao"

    wednesday = client.get("/attendance/CSE/II/A/sessions", params={"session_date": "2024-05-15"})
    assert len(wednesday.json()) == 1

    removed = client.delete("/attendance/CSE/II/A/sessions/2024-05-13_CS201", headers=headers)
    assert removed.status_code == 204
    removed_again = client.delete("/attendance/CSE/II/A/sessions/2024-05-13_CS201", headers=headers)
    assert removed_again.status_code == 404

    report = client.get("/reports/attendance/CSE/II/A")
    assert report.status_code == 200
    assert len(report.json()) == 2
    assert report.json()[0]["status_counts"]["pending"] == 3

    actions = [record.action for record in repository.list_audit_records("attendance")]
    assert actions == ["materialize_sessions", "materialize_sessions", "remove_session"]
    assert {record.actor_id for record in repository.list_audit_records("attendance")} == {"coordinator"}


def test_open_mode_without_admin_token(tmp_path):
    app, repository = _build_test_app(tmp_path, None)
    client = TestClient(app)

    login = client.post("/login", json={"admin_token": "anything"})
    assert login.status_code == 503

    run = client.post("/allocations/run")
    assert run.status_code == 200
    assert run.json()["allocated_count"] == 4
    assert {record.actor_id for record in repository.list_audit_records("allocation")} == {"system"}
