"""UTC time helpers shared by the billing services."""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Callable, Tuple

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC range of a calendar month."""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    return start, add_months(start, 1)


def previous_month(now: datetime) -> Tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


def parse_period(period: str) -> Tuple[int, int]:
    """Parse a ``YYYY-MM`` billing period."""
    try:
        year_text, month_text = period.split("-")
        year, month = int(year_text), int(month_text)
    except ValueError as e:
        raise ValueError(f"Invalid period format {period!r}, expected YYYY-MM") from e
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid period format {period!r}, expected YYYY-MM")
    return year, month
