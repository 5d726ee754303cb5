"""Webhook signature computation and verification.

Header format: ``t=<unix seconds>,v1=<hex digest>`` where the digest is
HMAC-SHA256 over ``"<t>.<raw body>"`` keyed with the shared secret. Several
``v1`` entries may be present while a secret is being rotated.
"""

import hashlib
import hmac
from typing import Optional


class SignatureVerificationError(Exception):
    """Raised when a signature header is missing, malformed, expired or wrong."""

    pass


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """Compute the hex HMAC-SHA256 digest for a payload."""
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a complete signature header value."""
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and candidate digests.

    Raises:
        SignatureVerificationError: If the header has no timestamp or digest
    """
    timestamp: Optional[int] = None
    digests: list[str] = []

    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise SignatureVerificationError("Signature timestamp is not an integer") from e
        elif key == "v1":
            digests.append(value)

    if timestamp is None or not digests:
        raise SignatureVerificationError("Signature header is missing t or v1")
    return timestamp, digests


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    now_seconds: int,
    tolerance_seconds: int,
) -> None:
    """Verify a signed payload.

    Args:
        payload: Raw request body
        header: Signature header value
        secret: Shared secret
        now_seconds: Current Unix time in seconds
        tolerance_seconds: Maximum allowed age of the signed timestamp (0 disables)

    Raises:
        SignatureVerificationError: On any mismatch
    """
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("Signature header is missing")

    timestamp, digests = parse_signature_header(header)

    if tolerance_seconds and abs(now_seconds - timestamp) > tolerance_seconds:
        raise SignatureVerificationError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in digests):
        raise SignatureVerificationError("Signature mismatch")
