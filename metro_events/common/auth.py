"""Bearer-token check for scheduler-triggered endpoints."""

from __future__ import annotations

import hashlib
import hmac

from metro_events.common.errors import AuthorizationError

_SCHEME = "bearer"


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def extract_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != _SCHEME or not token.strip():
        return None
    return token.strip()


def verify_bearer_token(header_value: str | None, secret: str | None) -> bool:
    """Constant-time comparison over fixed-length digests.

    Hashing first means a token of the wrong length takes the same path as
    one of the right length. An unset secret rejects everything.
    """
    token = extract_bearer_token(header_value)
    expected = _digest(secret or "")
    supplied = _digest(token or "")
    matched = hmac.compare_digest(supplied, expected)
    return bool(secret) and token is not None and matched


def require_bearer_token(header_value: str | None, secret: str | None) -> None:
    if not verify_bearer_token(header_value, secret):
        raise AuthorizationError("Unauthorized")
