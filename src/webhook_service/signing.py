"""HMAC-SHA256 request signing.

Scheme: ``hex(HMAC_SHA256(secret, f"{unix_timestamp}.{raw_body}"))``.
The signature is always computed over the exact bytes that are sent.
"""
from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from hashlib import sha256

from webhook_service.core.exceptions import ConfigurationError

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
IDEMPOTENCY_HEADER = "X-Webhook-Idempotency-Key"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class SignedRequest:
    timestamp: str
    signature: str
    body: bytes

    def headers(self) -> dict[str, str]:
        return {SIGNATURE_HEADER: self.signature, TIMESTAMP_HEADER: self.timestamp}


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def compute_signature(secret: str | None, timestamp: str, body: bytes | str) -> str:
    if not secret:
        raise ConfigurationError("refusing to sign with an empty webhook secret")
    message = timestamp.encode("ascii") + b"." + _as_bytes(body)
    return hmac.new(secret.encode("utf-8"), message, sha256).hexdigest()


def sign(secret: str | None, body: bytes | str, *, now: float | None = None) -> SignedRequest:
    """Sign ``body`` with the current unix time (seconds)."""
    timestamp = str(int(time.time() if now is None else now))
    raw = _as_bytes(body)
    return SignedRequest(timestamp=timestamp, signature=compute_signature(secret, timestamp, raw), body=raw)


def verify_signature(
    secret: str | None,
    timestamp: str,
    body: bytes | str,
    signature: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Receiver-side check: valid HMAC and timestamp within ``tolerance_seconds``."""
    if not secret:
        return False
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)
