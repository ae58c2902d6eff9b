from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

PASSWORD_HASH_SCHEME = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 390_000
PBKDF2_SALT_BYTES = 16


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(PBKDF2_SALT_BYTES)
    digest = _pbkdf2(password, salt, PBKDF2_ITERATIONS)
    return "$".join(
        (
            PASSWORD_HASH_SCHEME,
            str(PBKDF2_ITERATIONS),
            _b64url_encode(salt),
            _b64url_encode(digest),
        ),
    )


def verify_password(password: str, stored_hash: str) -> bool:
    parts = stored_hash.split("$")
    if len(parts) != 4 or parts[0] != PASSWORD_HASH_SCHEME:
        return False

    try:
        iterations = int(parts[1])
        salt = _b64url_decode(parts[2])
        expected_digest = _b64url_decode(parts[3])
    except (ValueError, TypeError):
        return False

    return hmac.compare_digest(_pbkdf2(password, salt, iterations), expected_digest)


def create_access_token(
    *,
    claims: dict[str, Any],
    secret_key: str,
    ttl_minutes: int,
) -> tuple[str, int]:
    issued_at = datetime.now(UTC)
    expires_at = issued_at + timedelta(minutes=ttl_minutes)
    payload = {
        **claims,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    payload_segment = _b64url_encode(
        json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"),
    )
    token = f"{payload_segment}.{_b64url_encode(_sign(payload_segment, secret_key))}"
    return token, max(int((expires_at - issued_at).total_seconds()), 0)


def decode_access_token(token: str, secret_key: str) -> dict[str, Any] | None:
    payload_segment, separator, signature_segment = token.partition(".")
    if not separator:
        return None

    try:
        provided_signature = _b64url_decode(signature_segment)
    except (ValueError, TypeError):
        return None
    if not hmac.compare_digest(_sign(payload_segment, secret_key), provided_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None

    expiration = payload.get("exp")
    if not isinstance(expiration, int) or expiration < int(datetime.now(UTC).timestamp()):
        return None
    return payload


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def _sign(payload_segment: str, secret_key: str) -> bytes:
    return hmac.new(
        secret_key.encode("utf-8"),
        payload_segment.encode("utf-8"),
        hashlib.sha256,
    ).digest()


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding_size = (-len(value)) % 4
    return base64.urlsafe_b64decode(f"{value}{'=' * padding_size}".encode("ascii"))
