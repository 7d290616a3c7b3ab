"""
Small shared helpers: identifiers, hashing and UTC timestamps.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from datetime import datetime, timezone
from typing import Any


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(_CROCKFORD32[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(*, timestamp_ms: int | None = None) -> str:
    """
    Generate a ULID (26 chars, Crockford base32).

    ULID = 48-bit millisecond timestamp + 80-bit randomness.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    if not (0 <= timestamp_ms < (1 << 48)):
        raise ValueError("timestamp_ms out of range for ULID")

    randomness = int.from_bytes(os.urandom(10), "big")
    value = (timestamp_ms << 80) | randomness
    return _encode_crockford_base32(value, 26)


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace for stable hashing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: bytes | str | dict[str, Any]) -> str:
    """Return ``sha256:<hex>`` of raw bytes, a string, or a dict (canonical JSON)."""
    if isinstance(data, dict):
        data = canonical_json(data)
    if isinstance(data, str):
        data = data.encode("utf-8")
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 string (``Z`` suffix allowed) or datetime into aware UTC.

    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
