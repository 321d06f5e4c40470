from __future__ import annotations

from dataclasses import replace

import pytest

from backend.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from backend.utils.config import get_settings


def _build_auth_service(admin_token="secret-token") -> AuthService:
    settings = replace(get_settings(), admin_token=admin_token, default_actor_id="system")
    return AuthService(settings=settings)


def test_login_binds_token_to_actor():
    service = _build_auth_service()

    token = service.login("secret-token", actor_id="warden-1")

    assert service.resolve_actor(token) == "warden-1"


def test_second_login_revokes_the_first_token():
    service = _build_auth_service()
    first = service.login("secret-token", actor_id="warden-1")

    second = service.login("secret-token", actor_id="warden-1")

    assert service.resolve_actor(second) == "warden-1"
    with pytest.raises(InvalidAdminTokenError):
        service.resolve_actor(first)
    assert service.active_session_count == 1


def test_repeated_logins_do_not_accumulate_sessions():
    service = _build_auth_service()

    for _ in range(5):
        service.login("secret-token")
    service.login("secret-token", actor_id="coordinator")

    assert service.active_session_count == 2


def test_different_actors_keep_their_own_tokens():
    service = _build_auth_service()
    warden = service.login("secret-token", actor_id="warden-1")
    coordinator = service.login("secret-token", actor_id="coordinator")

    assert service.resolve_actor(warden) == "warden-1"
    assert service.resolve_actor(coordinator) == "coordinator"


def test_wrong_admin_token_creates_no_session():
    service = _build_auth_service()

    with pytest.raises(InvalidAdminTokenError):
        service.login("wrong-token")
    assert service.active_session_count == 0


def test_open_mode_resolves_default_actor():
    service = _build_auth_service(admin_token=None)

    assert service.resolve_actor(None) == "system"
    with pytest.raises(AdminTokenNotConfiguredError):
        service.login("anything")
