"""
Time Utilities

Binance reports times as milliseconds since epoch, signed requests must send
milliseconds, and snapshot freshness is measured in milliseconds. Everything
stored in the schemas is a timezone-aware UTC datetime; these helpers move
between the two representations.
"""

from datetime import datetime, timezone
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_utc_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a timestamp (seconds or milliseconds) to UTC datetime.

    Values above 1e12 are treated as milliseconds, anything else as seconds.

    Raises:
        ValueError: If timestamp is negative or out of range

    Examples:
        >>> to_utc_datetime(1704110400000)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
        >>> to_utc_datetime(1704110400)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp > 1e12:
        timestamp = timestamp / 1000.0

    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")


def datetime_to_millis(dt: datetime) -> int:
    """
    Convert a datetime to integer milliseconds since epoch.

    Naive datetimes are assumed to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def current_utc_millis() -> int:
    """Current time in milliseconds since epoch (Binance `timestamp` parameter)."""
    return datetime_to_millis(datetime.now(timezone.utc))


def current_utc_datetime() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def age_ms(dt: datetime, now: Optional[datetime] = None) -> float:
    """
    Milliseconds elapsed between ``dt`` and ``now`` (defaults to the current time).

    Never negative: a timestamp slightly in the future (clock skew between
    venue and host) counts as age zero.
    """
    now = now or current_utc_datetime()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (now - dt).total_seconds() * 1000.0)
