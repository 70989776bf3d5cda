"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the store's timezone-less DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def period_key(day: date) -> str:
    """Billing period for a date, formatted YYYY-MM"""
    return f"{day.year:04d}-{day.month:02d}"


def due_date_for(day: date, due_day: int) -> date:
    """Due date within the month of `day`, clamped to the month's length"""
    last_day = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=min(max(1, due_day), last_day))
