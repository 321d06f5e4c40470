"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

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
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service receives the same repository and committer through its
    constructor and is exposed on app.state for dependency resolution.
    """
    settings = settings or get_settings()

    # --- Repository and the single side-effecting component ---
    repository = DataRepository(settings)
    committer = AtomicCommitter(repository=repository, settings=settings)

    # --- Services (planning + orchestration, no direct SQL) ---
    roster_resolver = RosterResolver(repository=repository, settings=settings)
    allocation_service = AllocationService(
        repository=repository,
        settings=settings,
        committer=committer,
    )
    attendance_service = AttendanceService(
        repository=repository,
        settings=settings,
        committer=committer,
        roster_resolver=roster_resolver,
    )
    report_service = ReportService(repository=repository, settings=settings)
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(auth_router)
    app.include_router(allocation_router)
    app.include_router(attendance_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.committer = committer
    app.state.allocation_service = allocation_service
    app.state.attendance_service = attendance_service
    app.state.report_service = report_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema creation must precede seeding; seeding is skipped when rooms exist.
    """
    repository: DataRepository = app.state.repository
    settings: Settings = app.state.settings

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo hostel and timetable (skipped if rooms exist)")
        repository.seed_demo_data()

    logger.info("Startup complete, system ready")


# Module-level app object for uvicorn
app = create_app()
