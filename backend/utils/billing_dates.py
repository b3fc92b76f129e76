"""Calendar helpers for billing periods and monthly usage cycles (UTC)."""
import calendar
import math
from datetime import datetime, timezone
from typing import Optional


def parse_iso(value) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def add_months(dt: datetime, months: int = 1) -> datetime:
    """Same day-of-month `months` later, clamped to the last day of the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def first_of_next_month(dt: datetime) -> datetime:
    """00:00 UTC on the first day of the month after `dt`."""
    dt = dt.astimezone(timezone.utc)
    if dt.month == 12:
        return datetime(dt.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(dt.year, dt.month + 1, 1, tzinfo=timezone.utc)


def days_remaining(until: Optional[datetime], now: datetime) -> int:
    """Whole days left until `until`, rounded up; 0 when already passed."""
    if until is None or until <= now:
        return 0
    return math.ceil((until - now).total_seconds() / 86400)
