"""
Timestamp helpers.

All timestamps written by the migration engine use one fixed UTC offset
(JST, +09:00, unless configured otherwise) and RFC 3339 / ISO-8601 format.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

JST = timezone(timedelta(hours=9), "JST")


def now_in(tz: Optional[timezone] = None) -> datetime:
    """Current time in the given fixed timezone (JST by default)."""
    return datetime.now(tz or JST)


def now_iso(tz: Optional[timezone] = None) -> str:
    """
    Current time as an ISO-8601 string with offset.

    Example:
        >>> now_iso().endswith("+09:00")
        True
    """
    return now_in(tz).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None for empty or invalid values."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
