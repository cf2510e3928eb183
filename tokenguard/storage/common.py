"""Row and timestamp helpers shared between the memory and postgres stores."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse a timestamp from a datetime, ISO string or None."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return ensure_utc(datetime.fromisoformat(stripped))
    raise TypeError(f"unsupported timestamp value: {type(raw).__name__}")


def serialize_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def after_ms(start: datetime, duration_ms: int) -> datetime:
    return start + timedelta(milliseconds=duration_ms)


def remaining_ms(expires_at: datetime, now: datetime) -> int:
    """Milliseconds until ``expires_at``; zero or negative once it has passed."""
    delta = ensure_utc(expires_at) - ensure_utc(now)
    return int(delta.total_seconds() * 1000)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.

    Args:
        row: Row data (dict-like or object)
        key: Key/attribute name
        default: Default value if not found

    Returns:
        Extracted value or default
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(row, key, default)


def generate_uuid() -> str:
    """Generate a new UUID string.

    Returns:
        String representation of a new UUID4
    """
    return str(uuid.uuid4())
