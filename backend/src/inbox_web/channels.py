from __future__ import annotations

import html
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from .config import Settings
from .models import Channel, MessageDirection, MessageStatus

WHATSAPP_PREFIX = "whatsapp:"

_PROVIDER_STATUS_MAP: dict[str, MessageStatus] = {
    "queued": "PENDING",
    "accepted": "PENDING",
    "scheduled": "PENDING",
    "sending": "PENDING",
    "sent": "SENT",
    "delivered": "DELIVERED",
    "received": "DELIVERED",
    "read": "READ",
    "failed": "FAILED",
    "undelivered": "FAILED",
    "canceled": "FAILED",
}


class ChannelError(Exception):
    def __init__(self, channel: Channel, message: str) -> None:
        super().__init__(message)
        self.channel = channel
        self.message = message


class ProviderNotConfiguredError(ChannelError):
    """Raised when a channel's credentials or sender identity are missing."""


class DispatchError(ChannelError):
    """Raised when the provider call itself fails or is rejected."""

    def __init__(self, channel: Channel, message: str, *, error_code: str = "provider_error") -> None:
        super().__init__(channel, message)
        self.error_code = error_code


@dataclass(frozen=True)
class ChannelSendResult:
    external_id: str
    provider_status: str
    status: MessageStatus
    attempted_at: datetime


class ChannelAdapter(Protocol):
    channel: Channel

    def send(self, destination: str, content: str) -> ChannelSendResult: ...


def map_provider_status(raw_status: str | None, *, direction: MessageDirection) -> MessageStatus:
    normalized = (raw_status or "").strip().lower()
    mapped = _PROVIDER_STATUS_MAP.get(normalized)
    if mapped is not None:
        return mapped
    return "SENT" if direction == "OUTBOUND" else "DELIVERED"


def with_whatsapp_prefix(number: str) -> str:
    normalized = number.strip()
    if normalized.startswith(WHATSAPP_PREFIX):
        return normalized
    return f"{WHATSAPP_PREFIX}{normalized}"


def strip_whatsapp_prefix(number: str) -> str:
    normalized = number.strip()
    if normalized.startswith(WHATSAPP_PREFIX):
        return normalized[len(WHATSAPP_PREFIX):].strip()
    return normalized


def mask_contact_target(contact_target: str, channel: Channel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "EMAIL" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"SMS", "WHATSAPP"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"


class _TwilioAdapterBase:
    channel: Channel
    _from_setting_name = "TWILIO_PHONE_NUMBER"

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: int = 30,
        client: Any | None = None,
    ) -> None:
        self._account_sid = account_sid.strip()
        self._auth_token = auth_token.strip()
        self._from_number = from_number.strip()
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _missing_settings(self) -> list[str]:
        missing: list[str] = []
        if not self._account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self._auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self._from_number:
            missing.append(self._from_setting_name)
        return missing

    def _twilio_client(self) -> Any:
        if self._client is None:
            self._client = TwilioClient(
                self._account_sid,
                self._auth_token,
                http_client=TwilioHttpClient(timeout=self._timeout_seconds),
            )
        return self._client

    def _format_numbers(self, destination: str) -> tuple[str, str]:
        return self._from_number, destination.strip()

    def send(self, destination: str, content: str) -> ChannelSendResult:
        missing = self._missing_settings()
        if missing:
            raise ProviderNotConfiguredError(
                self.channel,
                f"{self.channel} provider not configured: missing {', '.join(missing)}",
            )

        from_number, to_number = self._format_numbers(destination)
        attempted_at = datetime.now(timezone.utc)
        try:
            message = self._twilio_client().messages.create(body=content, from_=from_number, to=to_number)
        except TwilioException as exc:
            code = getattr(exc, "code", None)
            raise DispatchError(
                self.channel,
                f"Twilio rejected {self.channel} message to {mask_contact_target(destination, self.channel)}: {exc}",
                error_code=f"twilio_{code}" if code else "twilio_error",
            ) from exc
        except OSError as exc:
            raise DispatchError(
                self.channel,
                f"Twilio request failed: {exc}",
                error_code="connection_error",
            ) from exc

        provider_status = str(message.status or "")
        return ChannelSendResult(
            external_id=str(message.sid),
            provider_status=provider_status,
            status=map_provider_status(provider_status, direction="OUTBOUND"),
            attempted_at=attempted_at,
        )


class TwilioSmsAdapter(_TwilioAdapterBase):
    """Plain SMS; sender and recipient are bare E.164 numbers."""

    channel: Channel = "SMS"


class TwilioWhatsAppAdapter(_TwilioAdapterBase):
    """WhatsApp through Twilio; both numbers carry the ``whatsapp:`` prefix."""

    channel: Channel = "WHATSAPP"
    _from_setting_name = "TWILIO_WHATSAPP_NUMBER"

    def _format_numbers(self, destination: str) -> tuple[str, str]:
        return with_whatsapp_prefix(self._from_number), with_whatsapp_prefix(destination)


class _ResendSendError(Exception):
    """Internal error raised when a Resend HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ResendEmailAdapter:
    """Email delivery through the Resend HTTP API."""

    channel: Channel = "EMAIL"

    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        subject: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: int = 30,
    ) -> None:
        self._api_key = api_key.strip()
        self._from_address = from_address.strip() or "onboarding@resend.dev"
        self._subject = subject
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def send(self, destination: str, content: str) -> ChannelSendResult:
        if not self._api_key:
            raise ProviderNotConfiguredError("EMAIL", "EMAIL provider not configured: missing RESEND_API_KEY")

        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "from": self._from_address,
            "to": [destination.strip()],
            "subject": self._subject,
            "text": content,
            "html": f"<p>{html.escape(content)}</p>",
        }
        try:
            response_data = self._post(request_payload)
        except _ResendSendError as exc:
            raise DispatchError(
                "EMAIL",
                f"{exc.message} (recipient: {mask_contact_target(destination, 'EMAIL')})",
                error_code=exc.error_code,
            ) from exc

        external_id = str(response_data.get("id") or "").strip()
        if not external_id:
            raise DispatchError("EMAIL", "Resend response did not include an email id", error_code="invalid_response")
        return ChannelSendResult(
            external_id=external_id,
            provider_status="sent",
            status="SENT",
            attempted_at=attempted_at,
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send a POST request to the Resend emails endpoint."""
        url = f"{self._base_url}/emails"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "User-Agent": "inbox-web/0.1",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ResendSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ResendSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ResendSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _ResendSendError(
                error_code="invalid_response",
                message=f"Resend response was not valid JSON: {exc}",
            ) from exc


class StubChannelAdapter:
    """Local stand-in that accepts every send; targets containing ``fail`` are rejected."""

    def __init__(self, channel: Channel, *, provider_status: str = "queued") -> None:
        self.channel = channel
        self._provider_status = provider_status
        self.sent: list[tuple[str, str]] = []

    def send(self, destination: str, content: str) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in destination.lower():
            raise DispatchError(self.channel, "Stub sender forced failure for contact target", error_code="stub_delivery_failed")
        self.sent.append((destination, content))
        return ChannelSendResult(
            external_id=f"stub-{self.channel.lower()}-{len(self.sent)}-{int(attempted_at.timestamp())}",
            provider_status=self._provider_status,
            status=map_provider_status(self._provider_status, direction="OUTBOUND"),
            attempted_at=attempted_at,
        )


def create_channel_adapters(settings: Settings) -> Mapping[Channel, ChannelAdapter]:
    if settings.channel_sender_type == "stub":
        return {
            "SMS": StubChannelAdapter("SMS"),
            "WHATSAPP": StubChannelAdapter("WHATSAPP"),
            "EMAIL": StubChannelAdapter("EMAIL", provider_status="sent"),
        }
    return {
        "SMS": TwilioSmsAdapter(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
        "WHATSAPP": TwilioWhatsAppAdapter(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_number,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
        "EMAIL": ResendEmailAdapter(
            api_key=settings.resend_api_key,
            from_address=settings.resend_from_address,
            subject=settings.email_subject,
            base_url=settings.resend_api_base_url,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
    }
