"""
Inbound webhook signature schemes.

Each provider signs its pushes with HMAC-SHA256, but the framing differs:

- slack:        ``v0=`` + hex digest of ``v0:{timestamp}:{body}``
- hmac_hex:     hex digest of the raw body (Jira, Google Drive, generic sinks)
- hmac_base64:  base64 digest of the raw body (Salesforce)
- stripe:       header ``t=<ts>,v1=<hex>``, digest of ``{t}.{body}``

Every verifier returns False on malformed input or a missing secret and
never raises. Digests are compared with ``hmac.compare_digest``.
"""
from __future__ import annotations
from enum import Enum
import base64
import hashlib
import hmac
import time


class SignatureScheme(str, Enum):
    SLACK = "slack"
    HMAC_HEX = "hmac_hex"
    HMAC_BASE64 = "hmac_base64"
    STRIPE = "stripe"


def _as_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _digest(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def _equal(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def sign_hex(payload: str | bytes, secret: str) -> str:
    return _digest(secret, _as_bytes(payload)).hex()


def sign_base64(payload: str | bytes, secret: str) -> str:
    return base64.b64encode(_digest(secret, _as_bytes(payload))).decode("ascii")


def sign_slack(payload: str | bytes, secret: str, timestamp: str | int) -> str:
    base = b"v0:" + str(timestamp).encode("ascii") + b":" + _as_bytes(payload)
    return "v0=" + _digest(secret, base).hex()


def sign_stripe(payload: str | bytes, secret: str, timestamp: str | int) -> str:
    """Full ``Stripe-Signature`` header value for a payload."""
    base = str(timestamp).encode("ascii") + b"." + _as_bytes(payload)
    return f"t={timestamp},v1={_digest(secret, base).hex()}"


def parse_stripe_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=..,v1=..,v1=..`` into the timestamp and its v1 signatures."""
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def _within_tolerance(timestamp: str, tolerance: int | None, now: float | None) -> bool:
    if tolerance is None:
        return True
    current = time.time() if now is None else now
    return abs(current - int(timestamp)) <= tolerance


def verify_signature(
    scheme: SignatureScheme | str,
    payload: str | bytes,
    signature: str | None,
    secret: str | None,
    timestamp: str | None = None,
    tolerance: int | None = None,
    now: float | None = None,
) -> bool:
    """Check ``signature`` against ``payload`` under the given scheme.

    ``timestamp`` is only consulted by the slack scheme (the Stripe header
    carries its own). When ``tolerance`` is set, signatures whose timestamp
    is further than that many seconds from ``now`` are rejected.
    """
    if not secret or not signature:
        return False
    try:
        scheme = SignatureScheme(scheme)
        if scheme == SignatureScheme.HMAC_HEX:
            return _equal(sign_hex(payload, secret), signature.strip())

        if scheme == SignatureScheme.HMAC_BASE64:
            return _equal(sign_base64(payload, secret), signature.strip())

        if scheme == SignatureScheme.SLACK:
            if not timestamp or not signature.startswith("v0="):
                return False
            if not _within_tolerance(timestamp, tolerance, now):
                return False
            return _equal(sign_slack(payload, secret, timestamp), signature.strip())

        if scheme == SignatureScheme.STRIPE:
            ts, candidates = parse_stripe_header(signature)
            if ts is None or not candidates:
                return False
            if not _within_tolerance(ts, tolerance, now):
                return False
            base = ts.encode("ascii") + b"." + _as_bytes(payload)
            expected = _digest(secret, base).hex()
            # Evaluate every candidate so timing does not reveal which matched
            matches = [_equal(expected, c) for c in candidates]
            return any(matches)
    except (ValueError, TypeError, UnicodeError):
        return False
    return False
