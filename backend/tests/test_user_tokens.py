from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from inbox_web.user_tokens import (
    ADMIN_SUBJECT,
    UserTokenError,
    create_user_token,
    decode_user_token,
    encode_user_token,
)


def test_user_token_roundtrip_preserves_user_and_expiry() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    payload = create_user_token(user_id="usr_123", ttl_minutes=30, now=now)
    token = encode_user_token(payload, secret="secret-1")

    decoded = decode_user_token(token, secret="secret-1", now=now + timedelta(minutes=5))

    assert decoded.user_id == "usr_123"
    assert decoded.expires_at == now + timedelta(minutes=30)


def test_user_token_rejects_wrong_secret() -> None:
    token = encode_user_token(create_user_token(user_id="usr_123", ttl_minutes=30), secret="secret-1")
    with pytest.raises(UserTokenError, match="signature mismatch"):
        decode_user_token(token, secret="secret-2")


def test_user_token_rejects_expired_token() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    token = encode_user_token(create_user_token(user_id="usr_123", ttl_minutes=1, now=now), secret="s")
    with pytest.raises(UserTokenError, match="expired"):
        decode_user_token(token, secret="s", now=now + timedelta(minutes=2))


def test_user_token_rejects_tampered_payload() -> None:
    token = encode_user_token(create_user_token(user_id="usr_123", ttl_minutes=30), secret="s")
    payload_b64, signature = token.rsplit(".", 1)
    tampered = f"{payload_b64[:-2]}xx.{signature}"
    with pytest.raises(UserTokenError):
        decode_user_token(tampered, secret="s")


@pytest.mark.parametrize("token", ["", "no-dot-here"])
def test_user_token_rejects_malformed_token(token: str) -> None:
    with pytest.raises(UserTokenError, match="invalid token format"):
        decode_user_token(token, secret="s")


def test_create_user_token_validates_inputs() -> None:
    with pytest.raises(UserTokenError):
        create_user_token(user_id="  ", ttl_minutes=10)
    with pytest.raises(UserTokenError):
        create_user_token(user_id="usr_1", ttl_minutes=0)


def test_admin_subject_token_decodes_to_admin_subject() -> None:
    token = encode_user_token(create_user_token(user_id=ADMIN_SUBJECT, ttl_minutes=10), secret="admin")
    assert decode_user_token(token, secret="admin").user_id == ADMIN_SUBJECT
