from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Unified Inbox"
    api_prefix: str = "/api/v1"
    inbox_store_backend: str = "inmemory"
    database_url: str = ""
    admin_password: str = ""
    admin_session_secret: str = "dev-admin-secret"
    user_session_secret: str = "dev-session-secret"
    user_session_ttl_minutes: int = 720
    runtime_secret_guard_mode: str = "warn"
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"
    # Inbound webhook authenticity.
    webhook_signature_mode: str = "enforce"
    twilio_webhook_dev_bypass: bool = False
    webhook_public_base_url: str = ""
    email_webhook_secret: str = ""
    # Outbound providers. Missing values surface as "provider not configured" at send time.
    channel_sender_type: str = "live"
    provider_timeout_seconds: int = 30
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_whatsapp_number: str = ""
    resend_api_key: str = ""
    resend_from_address: str = "onboarding@resend.dev"
    resend_api_base_url: str = "https://api.resend.com"
    email_subject: str = "Message from Unified Inbox"

    def twilio_signature_required(self) -> bool:
        if self.twilio_webhook_dev_bypass:
            return False
        return self.webhook_signature_mode != "off"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INBOX_APP_NAME", "Unified Inbox"),
        api_prefix=os.getenv("INBOX_API_PREFIX", "/api/v1"),
        inbox_store_backend=os.getenv("INBOX_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        admin_password=os.getenv("ADMIN_PASSWORD", ""),
        admin_session_secret=os.getenv("ADMIN_SESSION_SECRET", "dev-admin-secret"),
        user_session_secret=os.getenv("USER_SESSION_SECRET", "dev-session-secret"),
        user_session_ttl_minutes=_as_int(os.getenv("USER_SESSION_TTL_MINUTES"), 720),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        twilio_webhook_dev_bypass=_as_bool(os.getenv("TWILIO_WEBHOOK_DEV_BYPASS"), False),
        webhook_public_base_url=os.getenv("WEBHOOK_PUBLIC_BASE_URL", ""),
        email_webhook_secret=os.getenv("EMAIL_WEBHOOK_SECRET", ""),
        channel_sender_type=_normalize_mode(
            os.getenv("CHANNEL_SENDER_TYPE"),
            default="live",
            allowed={"live", "stub"},
        ),
        provider_timeout_seconds=_as_int(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 30),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER", ""),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        resend_from_address=os.getenv("RESEND_FROM_ADDRESS", "onboarding@resend.dev"),
        resend_api_base_url=os.getenv("RESEND_API_BASE_URL", "https://api.resend.com"),
        email_subject=os.getenv("EMAIL_SUBJECT", "Message from Unified Inbox"),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_password,
        defaults={"change-me-in-production", "admin", "password", "dev-admin-password"},
    ):
        issues.append("ADMIN_PASSWORD is empty or uses a placeholder value")
    if _is_placeholder(
        settings.admin_session_secret,
        defaults={"dev-admin-secret", "change-me-in-production"},
    ):
        issues.append("ADMIN_SESSION_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.user_session_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("USER_SESSION_SECRET is empty or uses a development placeholder")
    if settings.twilio_signature_required() and not settings.twilio_auth_token.strip():
        issues.append(
            "TWILIO_AUTH_TOKEN is required when WEBHOOK_SIGNATURE_MODE is not off "
            "and TWILIO_WEBHOOK_DEV_BYPASS is false"
        )
    if settings.inbox_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when INBOX_STORE_BACKEND=postgres")
    return tuple(issues)
