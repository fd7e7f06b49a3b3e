"""
Utility functions shared by the API, the webhook and the external clients.
"""

import hmac
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

SIGNATURE_PREFIX = "sha256="


def canonical_phone(raw: Optional[str]) -> str:
    """
    Canonical form of a phone number: digits only.

    "+221 77-123 45 67" -> "221771234567". Idempotent.
    """
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def utc_now_iso() -> str:
    """Server time as an ISO-8601 UTC string with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_today_prefix() -> str:
    """Date part of utc_now_iso(), used for "today" counters."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def epoch_to_iso(value) -> Optional[str]:
    """Convert a WhatsApp epoch-seconds timestamp (string or int) to ISO-8601 UTC."""
    if value is None or value == "":
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable epoch timestamp: {value!r}")
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header sent by Meta.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex HMAC-SHA256>"
        secret: WhatsApp app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        logger.info("HMAC signature verification: missing signature or secret")
        return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
