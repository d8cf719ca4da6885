from __future__ import annotations

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from inbox_web.channels import (
    DispatchError,
    ProviderNotConfiguredError,
    ResendEmailAdapter,
    StubChannelAdapter,
    TwilioSmsAdapter,
    TwilioWhatsAppAdapter,
    create_channel_adapters,
    map_provider_status,
    mask_contact_target,
    strip_whatsapp_prefix,
    with_whatsapp_prefix,
)
from inbox_web.config import Settings


def _twilio_client(*, sid: str = "SM123", status: str = "queued") -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid=sid, status=status)
    return client


def _mock_response(body: dict[str, str]) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _resend_adapter(*, api_key: str = "re_test_key") -> ResendEmailAdapter:
    return ResendEmailAdapter(
        api_key=api_key,
        from_address="support@example.com",
        subject="Message from Unified Inbox",
        base_url="https://api.resend.test/",
    )


@pytest.mark.parametrize(
    ("raw", "direction", "expected"),
    [
        ("queued", "OUTBOUND", "PENDING"),
        ("sending", "OUTBOUND", "PENDING"),
        ("sent", "OUTBOUND", "SENT"),
        ("Delivered", "OUTBOUND", "DELIVERED"),
        ("read", "OUTBOUND", "READ"),
        ("undelivered", "OUTBOUND", "FAILED"),
        ("received", "INBOUND", "DELIVERED"),
        ("something-new", "OUTBOUND", "SENT"),
        ("something-new", "INBOUND", "DELIVERED"),
        (None, "INBOUND", "DELIVERED"),
    ],
)
def test_map_provider_status(raw: str | None, direction: str, expected: str) -> None:
    assert map_provider_status(raw, direction=direction) == expected  # type: ignore[arg-type]


def test_whatsapp_prefix_helpers_are_idempotent() -> None:
    assert with_whatsapp_prefix("+15551230000") == "whatsapp:+15551230000"
    assert with_whatsapp_prefix("whatsapp:+15551230000") == "whatsapp:+15551230000"
    assert strip_whatsapp_prefix("whatsapp:+15551230000") == "+15551230000"
    assert strip_whatsapp_prefix("+15551230000") == "+15551230000"


def test_mask_contact_target_hides_identifiers() -> None:
    assert mask_contact_target("+15551230000", "SMS") == "***0000"
    assert mask_contact_target("jane@example.com", "EMAIL") == "j***@example.com"
    assert mask_contact_target("", "SMS") == "***"


def test_twilio_sms_adapter_sends_bare_numbers() -> None:
    client = _twilio_client(sid="SM900", status="queued")
    adapter = TwilioSmsAdapter(account_sid="AC1", auth_token="tok", from_number="+15550001111", client=client)

    result = adapter.send("+15551230000", "Hello")

    client.messages.create.assert_called_once_with(body="Hello", from_="+15550001111", to="+15551230000")
    assert result.external_id == "SM900"
    assert result.provider_status == "queued"
    assert result.status == "PENDING"


def test_twilio_whatsapp_adapter_prefixes_both_numbers() -> None:
    client = _twilio_client(status="sent")
    adapter = TwilioWhatsAppAdapter(account_sid="AC1", auth_token="tok", from_number="+15550002222", client=client)

    result = adapter.send("+15551230000", "Hola")

    client.messages.create.assert_called_once_with(
        body="Hola",
        from_="whatsapp:+15550002222",
        to="whatsapp:+15551230000",
    )
    assert result.status == "SENT"


def test_twilio_whatsapp_adapter_without_sender_number_is_not_configured() -> None:
    client = _twilio_client()
    adapter = TwilioWhatsAppAdapter(account_sid="AC1", auth_token="tok", from_number="", client=client)

    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        adapter.send("+15551230000", "Hola")

    assert "TWILIO_WHATSAPP_NUMBER" in exc_info.value.message
    client.messages.create.assert_not_called()


def test_twilio_adapter_wraps_provider_rejection() -> None:
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="invalid To", code=21211)
    adapter = TwilioSmsAdapter(account_sid="AC1", auth_token="tok", from_number="+15550001111", client=client)

    with pytest.raises(DispatchError) as exc_info:
        adapter.send("+15551230000", "Hello")

    assert exc_info.value.error_code == "twilio_21211"
    assert "+15551230000" not in exc_info.value.message


def test_twilio_adapter_wraps_connection_errors() -> None:
    client = MagicMock()
    client.messages.create.side_effect = ConnectionError("reset by peer")
    adapter = TwilioSmsAdapter(account_sid="AC1", auth_token="tok", from_number="+15550001111", client=client)

    with pytest.raises(DispatchError) as exc_info:
        adapter.send("+15551230000", "Hello")

    assert exc_info.value.error_code == "connection_error"


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_posts_email(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "email-123"})

    result = _resend_adapter().send("jane@example.com", "Hi <Jane>")

    assert result.external_id == "email-123"
    assert result.status == "SENT"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://api.resend.test/emails"
    assert request_arg.get_header("Authorization") == "Bearer re_test_key"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["from"] == "support@example.com"
    assert sent_body["to"] == ["jane@example.com"]
    assert sent_body["text"] == "Hi <Jane>"
    assert sent_body["html"] == "<p>Hi &lt;Jane&gt;</p>"


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_without_api_key_is_not_configured(mock_urlopen: MagicMock) -> None:
    with pytest.raises(ProviderNotConfiguredError):
        _resend_adapter(api_key="").send("jane@example.com", "Hi")
    mock_urlopen.assert_not_called()


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://api.resend.test/emails",
        code=422,
        msg="Unprocessable Entity",
        hdrs=None,  # type: ignore[arg-type]
        fp=None,
    )

    with pytest.raises(DispatchError) as exc_info:
        _resend_adapter().send("jane@example.com", "Hi")

    assert exc_info.value.error_code == "http_422"
    assert "jane@example.com" not in exc_info.value.message


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    with pytest.raises(DispatchError) as exc_info:
        _resend_adapter().send("jane@example.com", "Hi")

    assert exc_info.value.error_code == "connection_error"


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = TimeoutError("timed out")

    with pytest.raises(DispatchError) as exc_info:
        _resend_adapter().send("jane@example.com", "Hi")

    assert exc_info.value.error_code == "timeout"


@patch("inbox_web.channels.urllib.request.urlopen")
def test_resend_adapter_requires_email_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"object": "email"})

    with pytest.raises(DispatchError) as exc_info:
        _resend_adapter().send("jane@example.com", "Hi")

    assert exc_info.value.error_code == "invalid_response"


def test_stub_adapter_records_sends_and_forces_failures() -> None:
    adapter = StubChannelAdapter("SMS")

    result = adapter.send("+15551230000", "Hello")

    assert adapter.sent == [("+15551230000", "Hello")]
    assert result.status == "PENDING"
    with pytest.raises(DispatchError):
        adapter.send("fail-target", "Hello")


def test_create_channel_adapters_selects_stub_or_live() -> None:
    stubs = create_channel_adapters(Settings(channel_sender_type="stub"))
    assert all(isinstance(adapter, StubChannelAdapter) for adapter in stubs.values())

    live = create_channel_adapters(Settings(channel_sender_type="live"))
    assert isinstance(live["SMS"], TwilioSmsAdapter)
    assert isinstance(live["WHATSAPP"], TwilioWhatsAppAdapter)
    assert isinstance(live["EMAIL"], ResendEmailAdapter)
