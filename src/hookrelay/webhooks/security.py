"""Webhook signature verification.

Inbound events are signed with HMAC over ``"<timestamp>." + raw_body``, where
the raw body is the exact byte sequence received on the wire. Sources differ
only in where they put the timestamp and MAC and how the MAC is encoded,
which is captured by ``SignatureScheme``.

Verification is pure: it never raises on malformed input and never logs the
shared secret or the MAC.
"""

import base64
import hashlib
import hmac
import time
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

# Default header names
SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"

# Replay window (5 minutes)
DEFAULT_MAX_CLOCK_SKEW_SECONDS = 300

_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


@dataclass(frozen=True)
class SignatureScheme:
    """Where a source puts its signature material and how it is encoded.

    Attributes:
        signature_header: Header carrying the MAC.
        timestamp_header: Header carrying the Unix timestamp. Ignored for
            combined schemes.
        encoding: ``hex`` or ``base64``.
        prefix: Literal prefix on the MAC value, e.g. ``sha256=``.
        combined: MAC header has the form ``t=<ts>,v1=<mac>[,v1=<mac>...]``.
        algorithm: Digest used for the HMAC.
    """

    signature_header: str = SIGNATURE_HEADER
    timestamp_header: str = TIMESTAMP_HEADER
    encoding: str = "hex"
    prefix: str = ""
    combined: bool = False
    algorithm: str = "sha256"


DEFAULT_SCHEME = SignatureScheme()
PREFIXED_SCHEME = SignatureScheme(prefix="sha256=")
BASE64_SCHEME = SignatureScheme(encoding="base64")
COMBINED_SCHEME = SignatureScheme(signature_header="Webhook-Signature", combined=True)

SCHEMES: dict[str, SignatureScheme] = {
    "default": DEFAULT_SCHEME,
    "prefixed": PREFIXED_SCHEME,
    "base64": BASE64_SCHEME,
    "combined": COMBINED_SCHEME,
}


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying one inbound request."""

    valid: bool
    reason: str | None = None
    timestamp: int | None = None

    @classmethod
    def ok(cls, timestamp: int) -> "VerificationResult":
        return cls(valid=True, timestamp=timestamp)

    @classmethod
    def fail(cls, reason: str, timestamp: int | None = None) -> "VerificationResult":
        return cls(valid=False, reason=reason, timestamp=timestamp)


def compute_signature(
    raw_payload: bytes,
    secret: str,
    timestamp: int,
    *,
    scheme: SignatureScheme = DEFAULT_SCHEME,
) -> str:
    """Compute the encoded MAC for a payload.

    Args:
        raw_payload: Exact request body bytes.
        secret: Shared secret.
        timestamp: Unix timestamp included in the signed content.
        scheme: Encoding and digest to use.

    Returns:
        Encoded MAC without any prefix.
    """
    signed = str(timestamp).encode("ascii") + b"." + raw_payload
    digest = hmac.new(
        secret.encode("utf-8"),
        signed,
        _ALGORITHMS[scheme.algorithm],
    ).digest()

    if scheme.encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def sign_headers(
    raw_payload: bytes,
    secret: str,
    *,
    timestamp: int | None = None,
    scheme: SignatureScheme = DEFAULT_SCHEME,
) -> dict[str, str]:
    """Create HTTP headers that ``verify`` will accept.

    Used for outbound signed deliveries and by tests.

    Args:
        raw_payload: Exact body bytes that will be sent.
        secret: Shared secret.
        timestamp: Optional Unix timestamp (defaults to now).
        scheme: Header layout to produce.

    Returns:
        Dictionary of headers to include in the request.
    """
    if timestamp is None:
        timestamp = int(time.time())

    mac = compute_signature(raw_payload, secret, timestamp, scheme=scheme)

    if scheme.combined:
        return {scheme.signature_header: f"t={timestamp},v1={scheme.prefix}{mac}"}

    return {
        scheme.signature_header: f"{scheme.prefix}{mac}",
        scheme.timestamp_header: str(timestamp),
    }


def _lookup(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _extract(
    headers: Mapping[str, str], scheme: SignatureScheme
) -> tuple[str | None, list[str]]:
    """Pull the raw timestamp and candidate MACs out of the headers."""
    signature = _lookup(headers, scheme.signature_header)
    if signature is None:
        return None, []

    if scheme.combined:
        timestamp: str | None = None
        macs: list[str] = []
        for part in signature.split(","):
            name, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if name == "t":
                timestamp = value
            elif name == "v1":
                macs.append(value)
        return timestamp, macs

    return _lookup(headers, scheme.timestamp_header), [signature]


def verify(
    raw_payload: bytes,
    headers: Mapping[str, str],
    shared_secret: str,
    max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS,
    *,
    scheme: SignatureScheme = DEFAULT_SCHEME,
    now: float | None = None,
) -> VerificationResult:
    """Verify the authenticity and freshness of an inbound event.

    Checks that the timestamp is present, numeric and within the replay
    window, then recomputes the MAC and compares it in constant time.

    Args:
        raw_payload: Exact request body bytes.
        headers: Request headers (matched case-insensitively).
        shared_secret: Secret shared with the sender.
        max_clock_skew_seconds: Replay window in either direction.
        scheme: Header layout and encoding for this source.
        now: Current Unix time override (defaults to ``time.time()``).

    Returns:
        VerificationResult; ``valid`` is False with a reason on any failure.
    """
    try:
        raw_timestamp, candidates = _extract(headers, scheme)
    except (AttributeError, TypeError, ValueError):
        return _reject("malformed_headers")

    if not candidates:
        return _reject("missing_signature")
    if raw_timestamp is None or raw_timestamp.strip() == "":
        return _reject("missing_timestamp")

    try:
        timestamp = int(raw_timestamp.strip())
    except ValueError:
        return _reject("malformed_timestamp")

    current = time.time() if now is None else now
    if abs(current - timestamp) > max_clock_skew_seconds:
        return _reject("timestamp_outside_tolerance", timestamp)

    try:
        expected = (
            scheme.prefix + compute_signature(raw_payload, shared_secret, timestamp, scheme=scheme)
        ).encode("ascii")
        matched = any(
            hmac.compare_digest(candidate.strip().encode("utf-8"), expected)
            for candidate in candidates
        )
    except (TypeError, ValueError, UnicodeError):
        return _reject("malformed_signature", timestamp)

    if not matched:
        return _reject("signature_mismatch", timestamp)

    logger.debug("webhook_signature_verified", timestamp=timestamp)
    return VerificationResult.ok(timestamp)


def _reject(reason: str, timestamp: int | None = None) -> VerificationResult:
    logger.warning("webhook_signature_rejected", reason=reason, timestamp=timestamp)
    return VerificationResult.fail(reason, timestamp)
