"""
Timestamp utilities for consistent time handling across the system.

All datetimes handled by the engine are timezone-aware UTC. SQLite drops tzinfo on the way back,
so values read from storage go through ensure_utc.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to an aware UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Union[None, str, int, float, datetime]) -> Optional[datetime]:
    """Parse an ISO-8601 string, unix timestamp or datetime into an aware UTC datetime.

    Unparsable values return None; temporal hints from the extraction collaborator are best effort.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return to_datetime(value)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def days_between(earlier: Optional[datetime], later: Optional[datetime] = None) -> float:
    """Fractional days from earlier to later (now by default); 0 when earlier is unknown."""
    if earlier is None:
        return 0.0
    later = ensure_utc(later) or utc_now()
    return (later - ensure_utc(earlier)).total_seconds() / 86400.0


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None
