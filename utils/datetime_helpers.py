"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: All models use timezone-naive UTC datetimes (DateTime(timezone=False)).
Anything arriving timezone-aware (chain indexers, API payloads) must pass through
ensure_naive_datetime before it is compared with or written to a column.
"""

from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_DAY = 86400


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    Returns:
        Current UTC time without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_between(start: datetime, end: datetime) -> float:
    """Fractional number of days from start to end (negative if end is earlier)"""
    delta = ensure_naive_datetime(end) - ensure_naive_datetime(start)
    return delta.total_seconds() / SECONDS_PER_DAY
