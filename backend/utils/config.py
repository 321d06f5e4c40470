"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    sqlite_timeout_seconds: float
    admin_token: str | None
    default_actor_id: str
    campus_timezone: str
    waitlist_missing_priority_rank: int
    allocation_default_reason: str
    materialization_status_policy: str
    report_recent_allocations_limit: int
    seed_demo_data: bool
    server_host: str
    server_port: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests derive variants via `replace`."""
    admin_token = os.getenv("ADMIN_TOKEN")
    return Settings(
        app_name=_env_str("APP_NAME", "Campus Allocation Core"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "campus.db"))
        ),
        sqlite_timeout_seconds=_env_float("SQLITE_TIMEOUT_SECONDS", 5.0),
        admin_token=admin_token.strip() if admin_token and admin_token.strip() else None,
        default_actor_id=_env_str("DEFAULT_ACTOR_ID", "system"),
        campus_timezone=_env_str("CAMPUS_TIMEZONE", "UTC"),
        waitlist_missing_priority_rank=_env_int("WAITLIST_MISSING_PRIORITY_RANK", 999),
        allocation_default_reason=_env_str("ALLOCATION_DEFAULT_REASON", "auto"),
        materialization_status_policy=_env_str("MATERIALIZATION_STATUS_POLICY", "preserve"),
        report_recent_allocations_limit=_env_int("REPORT_RECENT_ALLOCATIONS_LIMIT", 20),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
        server_host=_env_str("SERVER_HOST", "127.0.0.1"),
        server_port=_env_int("SERVER_PORT", 8000),
    )
