"""Admin token authentication that also identifies the audit actor."""

from __future__ import annotations

import secrets
from threading import Lock
from typing import Optional

from backend.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


class AuthService:
    """Exchanges the admin token for bearer tokens bound to an actor id."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: dict[str, str] = {}
        self._lock = Lock()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        return self._settings.admin_token

    def login(self, provided_admin_token: str, actor_id: Optional[str] = None) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_admin_token, expected):
            raise InvalidAdminTokenError("Invalid admin token")
        actor = actor_id or self._settings.default_actor_id
        session_token = secrets.token_urlsafe(32)
        with self._lock:
            # One live token per actor; a new login revokes the previous one.
            stale = [token for token, owner in self._sessions.items() if owner == actor]
            for token in stale:
                del self._sessions[token]
            self._sessions[session_token] = actor
        return session_token

    @property
    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def resolve_actor(self, bearer_token: Optional[str]) -> str:
        """Return the actor recorded in audit entries for this bearer token."""
        if not self.auth_enabled:
            return self._settings.default_actor_id
        if not bearer_token:
            raise InvalidAdminTokenError("No active session. Login first.")
        with self._lock:
            for session_token, actor_id in self._sessions.items():
                if secrets.compare_digest(bearer_token, session_token):
                    return actor_id
        raise InvalidAdminTokenError("Invalid bearer token")
