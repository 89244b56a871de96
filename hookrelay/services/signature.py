"""Webhook signing — HMAC-SHA256 over the exact bytes sent to the receiver."""

import hashlib
import hmac
import secrets
import time
from typing import Optional, Union

from hookrelay.config import get_settings

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
# HMAC of "{timestamp}." + body
TIMESTAMPED_SIGNATURE_HEADER = "X-Webhook-Signature-Timestamped"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Id"
ATTEMPT_HEADER = "X-Webhook-Attempt"

# 48 random bytes -> 64 url-safe characters
SECRET_BYTES = 48


def _to_bytes(value: Union[bytes, str]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def generate_secret() -> str:
    return secrets.token_urlsafe(SECRET_BYTES)


def sign(payload: Union[bytes, str], secret: Union[bytes, str]) -> str:
    """Generate hex HMAC-SHA256 signature for a webhook body."""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def verify(payload: Union[bytes, str], secret: Union[bytes, str], signature: Optional[str]) -> bool:
    """Constant-time check of a signature against the body it claims to cover."""
    if not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), _to_bytes(signature))


def is_timestamp_valid(
    timestamp: Union[int, str],
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """Receiver-side replay guard: timestamp must be within ``tolerance`` seconds of now."""
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    if tolerance is None:
        tolerance = get_settings().signature_tolerance_seconds
    now = time.time() if now is None else now
    return abs(now - ts) <= tolerance


def sign_with_timestamp(
    payload: Union[bytes, str],
    secret: Union[bytes, str],
    timestamp: Union[int, str],
) -> str:
    """Signature over ``"{timestamp}." + body``, so the timestamp cannot be swapped."""
    return sign(f"{int(timestamp)}.".encode("ascii") + _to_bytes(payload), secret)


def verify_signature_only(
    payload: Union[bytes, str],
    secret: Union[bytes, str],
    signature: Optional[str],
    timestamp: Union[int, str],
) -> bool:
    """Check a timestamped signature without looking at the clock."""
    if not signature:
        return False
    try:
        expected = sign_with_timestamp(payload, secret, timestamp)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(expected.encode("ascii"), _to_bytes(signature))


def verify_with_timestamp(
    payload: Union[bytes, str],
    secret: Union[bytes, str],
    signature: Optional[str],
    timestamp: Union[int, str],
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """Receiver check: the timestamped signature matches and the timestamp is fresh."""
    return is_timestamp_valid(timestamp, tolerance=tolerance, now=now) and verify_signature_only(
        payload, secret, signature, timestamp
    )
