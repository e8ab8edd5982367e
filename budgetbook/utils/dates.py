from __future__ import annotations

import calendar
from datetime import date


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def clamp_day(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def add_months(base: date, delta: int, anchor_day: int | None = None) -> date:
    """Move ``delta`` calendar months, keeping ``anchor_day`` when the month has it.

    Without an anchor the day of ``base`` is used. Short months clamp to their
    last day, so Jan 31 -> Feb 29 -> Mar 31 with ``anchor_day=31``.
    """
    year, month = shift_month(base.year, base.month, delta)
    return clamp_day(year, month, anchor_day or base.day)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def inclusive_days(start: date, end: date) -> int:
    return (end - start).days + 1


def months_between(start: date, end: date) -> int:
    """Whole calendar months from ``start`` to ``end`` (never negative)."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return max(0, months)


