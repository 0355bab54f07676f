"""
WAHA Webhook Utilities

HMAC signature helpers for WAHA webhook deliveries.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a raw body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def validate_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
) -> bool:
    """
    Validate a WAHA webhook signature.

    Args:
        payload: Raw request body bytes
        signature_header: Hex HMAC-SHA256 digest, optionally prefixed with "sha256="
        secret: Session HMAC secret

    Returns:
        True if signature is valid
    """
    if not signature_header:
        logger.warning("Missing signature header")
        return False

    if not secret:
        logger.warning("No secret to validate signature against")
        return False

    expected = signature_header.strip()
    if expected.startswith(SIGNATURE_PREFIX):
        expected = expected[len(SIGNATURE_PREFIX):]

    computed = compute_signature(payload, secret)

    return hmac.compare_digest(computed, expected.lower())
