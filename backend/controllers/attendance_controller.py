"""HTTP controller layer for current-week attendance session materialization."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from backend.controllers.dependencies import (
    get_attendance_service,
    get_report_service,
    require_admin,
)
from backend.domain.constraints import STATUS_POLICIES, ValidationError
from backend.domain.models import AttendanceSession, Scope
from backend.repository.data_repository import CommitFailure, ConflictError
from backend.services.materialization_service import AttendanceService, SessionNotFoundError
from backend.services.report_service import ReportService
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["attendance"])


class MaterializeRequest(BaseModel):
    department: str = Field(min_length=1)
    year: str = Field(min_length=1)
    section: str = Field(min_length=1)
    semester: Optional[str] = None
    now: Optional[datetime] = None
    status_policy: Optional[str] = None

    @field_validator("status_policy")
    @classmethod
    def validate_status_policy(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in STATUS_POLICIES:
            raise ValueError(f"status_policy must be one of {sorted(STATUS_POLICIES)}")
        return value


class MaterializeResponse(BaseModel):
    container: str
    week: list[date]
    session_ids: list[str]
    created_session_ids: list[str]
    merged_session_ids: list[str]


class SessionResponse(BaseModel):
    session_id: str
    date: date
    course_id: str
    course_name: str
    faculty_id: str
    faculty_name: str
    start_time: Optional[str]
    end_time: Optional[str]
    periods: list[str]
    room: Optional[str]
    status_by_student: dict[str, str]


def _session_response(session: AttendanceSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        date=session.session_date,
        course_id=session.course_id,
        course_name=session.course_name,
        faculty_id=session.faculty_id,
        faculty_name=session.faculty_name,
        start_time=session.start_time,
        end_time=session.end_time,
        periods=list(session.periods),
        room=session.room,
        status_by_student=session.status_by_student,
    )


@router.post("/attendance/materialize", response_model=MaterializeResponse)
async def materialize_sessions(
    payload: MaterializeRequest,
    service: AttendanceService = Depends(get_attendance_service),
    actor_id: str = Depends(require_admin),
) -> MaterializeResponse:
    """Create or merge this week's sessions for every timetable entry of the scope."""
    scope = Scope(
        department=payload.department,
        year=payload.year,
        section=payload.section,
        semester=payload.semester,
    )
    try:
        result = service.materialize_current_week(
            scope,
            now=payload.now,
            actor_id=actor_id,
            status_policy=payload.status_policy,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CommitFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected materialization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to materialize sessions",
        ) from exc
    return MaterializeResponse(
        container=scope.container_key,
        week=result.week,
        session_ids=result.session_ids,
        created_session_ids=result.created_session_ids,
        merged_session_ids=result.merged_session_ids,
    )


@router.get(
    "/attendance/{department}/{year}/{section}/sessions",
    response_model=list[SessionResponse],
)
async def list_sessions(
    department: str,
    year: str,
    section: str,
    session_date: Optional[date] = None,
    service: AttendanceService = Depends(get_attendance_service),
) -> list[SessionResponse]:
    scope = Scope(department=department, year=year, section=section)
    return [
        _session_response(session)
        for session in service.list_sessions(
            scope,
            session_date.isoformat() if session_date else None,
        )
    ]


@router.delete(
    "/attendance/{department}/{year}/{section}/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_session(
    department: str,
    year: str,
    section: str,
    session_id: str,
    service: AttendanceService = Depends(get_attendance_service),
    actor_id: str = Depends(require_admin),
) -> None:
    scope = Scope(department=department, year=year, section=section)
    try:
        service.remove_session(scope, session_id, actor_id=actor_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CommitFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/reports/attendance/{department}/{year}/{section}")
async def attendance_report(
    department: str,
    year: str,
    section: str,
    session_date: Optional[date] = None,
    service: ReportService = Depends(get_report_service),
) -> list[dict]:
    scope = Scope(department=department, year=year, section=section)
    return service.attendance_summary(
        scope,
        session_date.isoformat() if session_date else None,
    )
