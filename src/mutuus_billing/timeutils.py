"""
Date helpers for billing periods

All timestamps are stored as naive UTC datetimes.
"""
import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a provider unix timestamp to naive UTC"""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_key(value: datetime) -> str:
    """Format as YYYY-MM"""
    return f"{value.year:04d}-{value.month:02d}"


def previous_month_key(now: datetime) -> str:
    """YYYY-MM of the calendar month before ``now``"""
    return month_key(add_months(now.replace(day=1), -1))


def month_bounds(key: str) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) range of a YYYY-MM period

    Raises:
        ValueError: if the key is not a valid YYYY-MM string
    """
    try:
        start = datetime.strptime(key, "%Y-%m")
    except ValueError:
        raise ValueError(f"Invalid month key: {key!r} (expected YYYY-MM)")
    return start, add_months(start, 1)
