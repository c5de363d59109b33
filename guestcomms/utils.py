"""
Utility functions shared by the scheduling pipeline and the webhook API.

Provider payloads (reservations, listings, threads) arrive as loosely typed
dicts whose field names vary between API versions and webhook shapes, so
lookups go through ``read_string``/``read_number`` with a prioritized list of
candidate paths. Dotted paths walk nested objects.
"""

import hmac
import hashlib
import logging
import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature over {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def resolve_path(source: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings, returning None on a miss."""
    current: Any = source
    for segment in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


def read_string(source: Optional[Mapping[str, Any]], *paths: str) -> Optional[str]:
    """
    Return the first non-blank string (or number, stringified) found at any
    of the given paths.
    """
    if not source:
        return None

    for path in paths:
        value = resolve_path(source, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return str(int(value)) if value.is_integer() else str(value)

    return None


def read_number(source: Optional[Mapping[str, Any]], *paths: str) -> Optional[float]:
    """
    Return the first finite numeric value (or numeric string) found at any path.

    "nan" and "inf" parse as floats but are skipped like any other non-number.
    """
    if not source:
        return None

    for path in paths:
        value = resolve_path(source, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                continue
        else:
            continue
        if math.isfinite(number):
            return number

    return None


def read_record(source: Optional[Mapping[str, Any]], key: str) -> Optional[dict]:
    """Return the nested object stored under ``key`` if it is a mapping."""
    if not source:
        return None
    value = source.get(key)
    if isinstance(value, Mapping):
        return dict(value)
    return None
