"""Timestamp utilities for recipesync.

All persisted timestamps are ISO-8601 strings in UTC with an explicit
offset, so that string comparison and datetime comparison agree.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Get the current time as an ISO-8601 UTC string."""
    return to_iso(utc_now())


def to_iso(value: Union[datetime, str]) -> str:
    """Convert a datetime (or ISO string) to a normalized ISO-8601 UTC string.

    Naive datetimes are assumed to already be in UTC.
    """
    return parse_timestamp(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[datetime, str, int, float]) -> datetime:
    """Parse an ISO string, datetime or epoch milliseconds into a UTC datetime.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        # Remote payloads may carry milliseconds since the epoch
        dt = EPOCH + timedelta(milliseconds=value)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[str]) -> str:
    """Format a stored timestamp in the local timezone for display.

    Returns:
        "YYYY-MM-DD HH:MM:SS" in local time, or empty string if value is None
    """
    if not value:
        return ""
    return parse_timestamp(value).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def to_epoch_ms(value: Union[datetime, str, None]) -> int:
    """Convert a timestamp to whole milliseconds since the epoch (0 for None)."""
    if not value:
        return 0
    return (parse_timestamp(value) - EPOCH) // timedelta(milliseconds=1)
