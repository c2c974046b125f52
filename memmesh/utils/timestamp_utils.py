"""
Timestamp utilities for consistent UTC time handling across the mesh.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert a unix timestamp in seconds to a UTC datetime.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Timezone-aware datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Union[str, int, float, datetime, None], default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse an ISO string, unix seconds or datetime into a UTC datetime.

    Returns ``default`` for empty or unparseable input.
    """
    if value is None or value == '':
        return default
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return to_datetime(value)
    try:
        if value.isdigit():
            return to_datetime(int(value))
        return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except (AttributeError, ValueError):
        return default
