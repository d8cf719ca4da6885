from __future__ import annotations

import os

import pytest

from inbox_web.inbox_store import InMemoryInboxRepository
from inbox_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_PASSWORD": "prod-admin-password-001",
        "ADMIN_SESSION_SECRET": "prod-admin-secret-001",
        "USER_SESSION_SECRET": "prod-user-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "WEBHOOK_SIGNATURE_MODE": "enforce",
        "TWILIO_WEBHOOK_DEV_BYPASS": None,
        "INBOX_STORE_BACKEND": "inmemory",
        "INBOX_APP_NAME": None,
    }


def test_create_app_starts_with_production_secrets() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "TWILIO_AUTH_TOKEN": "twilio-token-001"})
    try:
        app = create_app()
        assert app.title == "Unified Inbox"
        assert app.state.inbox_service is not None
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_twilio_signatures_enforced_without_auth_token() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "TWILIO_AUTH_TOKEN": None})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "TWILIO_AUTH_TOKEN is required" in message
        assert "WEBHOOK_SIGNATURE_MODE=off" in message
    finally:
        _restore_env(previous)


def test_create_app_starts_with_dev_bypass_and_no_auth_token() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "TWILIO_AUTH_TOKEN": None,
            "TWILIO_WEBHOOK_DEV_BYPASS": "true",
        }
    )
    try:
        create_app(repository=InMemoryInboxRepository())
    finally:
        _restore_env(previous)


def test_create_app_warn_mode_logs_instead_of_blocking(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "ADMIN_PASSWORD": None,
            "TWILIO_AUTH_TOKEN": None,
        }
    )
    try:
        with caplog.at_level("WARNING", logger="inbox_web.main"):
            create_app()
        assert any("ADMIN_PASSWORD" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
