from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

ADMIN_SUBJECT = "__admin__"


class UserTokenError(ValueError):
    """Raised when a session token is malformed, tampered with or expired."""


@dataclass(frozen=True)
class UserTokenPayload:
    user_id: str
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def create_user_token(
    *,
    user_id: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> UserTokenPayload:
    if not user_id.strip():
        raise UserTokenError("token user_id missing")
    if ttl_minutes < 1:
        raise UserTokenError("token ttl must be at least one minute")
    issued_at = now or datetime.now(timezone.utc)
    return UserTokenPayload(user_id=user_id, expires_at=issued_at + timedelta(minutes=ttl_minutes))


def encode_user_token(payload: UserTokenPayload, *, secret: str) -> str:
    if not secret:
        raise UserTokenError("session token secret is empty")

    payload_json = json.dumps(
        {
            "sub": payload.user_id,
            "exp": int(payload.expires_at.timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{payload_b64}.{signature}"


def decode_user_token(token: str, *, secret: str, now: datetime | None = None) -> UserTokenPayload:
    if not token or "." not in token:
        raise UserTokenError("invalid token format")
    if not secret:
        raise UserTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    if not payload_b64.isascii() or not signature.isascii():
        raise UserTokenError("invalid token format")
    expected = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise UserTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise UserTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise UserTokenError("token payload decoding failed")

    user_id = str(payload_obj.get("sub", "")).strip()
    if not user_id:
        raise UserTokenError("token user_id missing")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise UserTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise UserTokenError("token expired")

    return UserTokenPayload(user_id=user_id, expires_at=expires_at)
