from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings

EMAIL_SECRET_HEADER = "X-Webhook-Secret"


@dataclass(frozen=True)
class WebhookVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def public_webhook_url(settings: Settings, *, request_url: str, path: str, query: str = "") -> str:
    """URL Twilio signed: the configured public base when behind a proxy, else the request URL."""
    base = settings.webhook_public_base_url.strip().rstrip("/")
    if not base:
        return request_url
    url = f"{base}{path}"
    return f"{url}?{query}" if query else url


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookVerification:
    if not settings.twilio_signature_required():
        return WebhookVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return WebhookVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)


def verify_email_secret(
    *,
    settings: Settings,
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    configured = settings.email_webhook_secret.strip()
    if not configured:
        return WebhookVerification(verified=True)

    provided = _normalize_header_value(headers, EMAIL_SECRET_HEADER)
    if provided is None:
        return WebhookVerification(verified=False, reason="secret_missing")

    if not hmac.compare_digest(configured.encode("utf-8"), provided.encode("utf-8")):
        return WebhookVerification(verified=False, reason="secret_mismatch")

    return WebhookVerification(verified=True)
