"""Provider webhook payloads parsed into strict per-provider shapes.

Anything that does not match the expected shape is rejected here with
``InboundPayloadError`` so undefined fields never reach the service layer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Any, Mapping

from .channels import WHATSAPP_PREFIX, strip_whatsapp_prefix
from .models import (
    MAX_EMAIL_LENGTH,
    MAX_EXTERNAL_ID_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PHONE_LENGTH,
    Channel,
    normalize_email,
    normalize_phone,
)

_BARE_ADDRESS_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+$")


class InboundPayloadError(ValueError):
    """Raised when a provider payload is missing required fields or has the wrong shape."""


@dataclass(frozen=True)
class InboundMessage:
    channel: Channel
    sender_phone: str | None
    sender_email: str | None
    sender_name: str | None
    body_text: str
    provider_message_id: str | None
    provider_status: str | None


@dataclass(frozen=True)
class TwilioInbound:
    message_sid: str
    sender: str
    recipient: str | None
    body: str
    channel: Channel
    sms_status: str | None

    def to_inbound_message(self) -> InboundMessage:
        return InboundMessage(
            channel=self.channel,
            sender_phone=self.sender,
            sender_email=None,
            sender_name=self.sender,
            body_text=self.body,
            provider_message_id=self.message_sid,
            provider_status=self.sms_status,
        )


@dataclass(frozen=True)
class TwilioStatusCallback:
    message_sid: str
    message_status: str
    channel: Channel
    error_code: str | None


@dataclass(frozen=True)
class EmailInbound:
    sender_email: str
    sender_name: str
    recipient: str | None
    subject: str | None
    body_text: str
    message_id: str | None

    def to_inbound_message(self) -> InboundMessage:
        return InboundMessage(
            channel="EMAIL",
            sender_phone=None,
            sender_email=self.sender_email,
            sender_name=self.sender_name,
            body_text=self.body_text,
            provider_message_id=self.message_id,
            provider_status=None,
        )


def _form_value(form: Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        value = form.get(key)
        if value is None:
            continue
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _channel_for_sender(sender: str) -> Channel:
    return "WHATSAPP" if sender.strip().startswith(WHATSAPP_PREFIX) else "SMS"


def parse_twilio_inbound(form: Mapping[str, str]) -> TwilioInbound:
    message_sid = _form_value(form, "MessageSid", "SmsMessageSid", "SmsSid")
    if message_sid is None:
        raise InboundPayloadError("twilio payload missing MessageSid")
    if len(message_sid) > MAX_EXTERNAL_ID_LENGTH:
        raise InboundPayloadError(f"twilio MessageSid longer than {MAX_EXTERNAL_ID_LENGTH} characters")
    raw_sender = _form_value(form, "From")
    if raw_sender is None:
        raise InboundPayloadError("twilio payload missing From")

    channel = _channel_for_sender(raw_sender)
    sender = normalize_phone(strip_whatsapp_prefix(raw_sender))
    if not sender:
        raise InboundPayloadError("twilio payload has an empty sender number")
    if len(sender) > MAX_PHONE_LENGTH:
        raise InboundPayloadError(f"twilio sender number longer than {MAX_PHONE_LENGTH} characters")
    raw_recipient = _form_value(form, "To")
    recipient = normalize_phone(strip_whatsapp_prefix(raw_recipient)) if raw_recipient else None

    return TwilioInbound(
        message_sid=message_sid,
        sender=sender,
        recipient=recipient,
        body=(form.get("Body") or "").strip(),
        channel=channel,
        sms_status=_form_value(form, "SmsStatus", "MessageStatus"),
    )


def parse_twilio_status(form: Mapping[str, str]) -> TwilioStatusCallback:
    message_sid = _form_value(form, "MessageSid", "SmsSid")
    if message_sid is None:
        raise InboundPayloadError("twilio status callback missing MessageSid")
    message_status = _form_value(form, "MessageStatus", "SmsStatus")
    if message_status is None:
        raise InboundPayloadError("twilio status callback missing MessageStatus")
    # Status callbacks for outbound messages carry our number in From and the contact in To.
    counterpart = _form_value(form, "To") or _form_value(form, "From") or ""
    return TwilioStatusCallback(
        message_sid=message_sid,
        message_status=message_status.lower(),
        channel=_channel_for_sender(counterpart),
        error_code=_form_value(form, "ErrorCode"),
    )


def parse_sender_address(raw_from: str) -> tuple[str, str]:
    """Split ``"Display Name" <addr>`` or a bare address into (email, display name)."""
    display_name, address = parseaddr(raw_from.strip())
    email = normalize_email(address)
    if email is None or not _BARE_ADDRESS_RE.match(email):
        raise InboundPayloadError(f"email sender is not a valid address: {raw_from!r}")
    if len(email) > MAX_EMAIL_LENGTH:
        raise InboundPayloadError(f"email sender longer than {MAX_EMAIL_LENGTH} characters")

    display_name = display_name.strip()[:MAX_NAME_LENGTH].strip()
    return email, display_name or email


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InboundPayloadError(f"email payload field {key!r} must be a string")
    normalized = value.strip()
    return normalized or None


def parse_email_inbound(payload: Any) -> EmailInbound:
    if not isinstance(payload, Mapping):
        raise InboundPayloadError("email payload must be a JSON object")
    raw_from = _optional_str(payload, "from")
    if raw_from is None:
        raise InboundPayloadError("email payload missing from")
    sender_email, sender_name = parse_sender_address(raw_from)

    raw_to = payload.get("to")
    if isinstance(raw_to, list):
        recipient = next((str(item).strip() for item in raw_to if str(item).strip()), None)
    elif raw_to is None or isinstance(raw_to, str):
        recipient = (raw_to or "").strip() or None
    else:
        raise InboundPayloadError("email payload field 'to' must be a string or a list")

    subject = _optional_str(payload, "subject")
    text = _optional_str(payload, "text")
    html_body = _optional_str(payload, "html")
    body_text = text or html_body or subject or ""
    message_id = _optional_str(payload, "message_id") or _optional_str(payload, "email_id")
    if message_id is not None and len(message_id) > MAX_EXTERNAL_ID_LENGTH:
        raise InboundPayloadError(f"email message_id longer than {MAX_EXTERNAL_ID_LENGTH} characters")

    return EmailInbound(
        sender_email=sender_email,
        sender_name=sender_name,
        recipient=recipient,
        subject=subject,
        body_text=body_text,
        message_id=message_id,
    )
