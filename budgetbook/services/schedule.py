"""Due-date stepping and state machine shared by recurring templates and bills."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from budgetbook.errors import InvalidStateTransition, ValidationFailed
from budgetbook.models import Frequency, ScheduleStatus
from budgetbook.utils.dates import add_months
from budgetbook.utils.money import to_money


_DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BI_WEEKLY: 14,
}

_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.SEMI_ANNUAL: 6,
    Frequency.ANNUAL: 12,
}

# Multiplier turning one occurrence into an average month
_MONTHLY_FACTORS = {
    Frequency.DAILY: Decimal("30.44"),
    Frequency.WEEKLY: Decimal("4.33"),
    Frequency.BI_WEEKLY: Decimal("2.17"),
    Frequency.MONTHLY: Decimal("1"),
    Frequency.QUARTERLY: Decimal("1") / Decimal("3"),
    Frequency.SEMI_ANNUAL: Decimal("1") / Decimal("6"),
    Frequency.ANNUAL: Decimal("1") / Decimal("12"),
}

_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED, ScheduleStatus.COMPLETED}),
    ScheduleStatus.PAUSED: frozenset({ScheduleStatus.ACTIVE}),
    ScheduleStatus.CANCELLED: frozenset(),
    ScheduleStatus.COMPLETED: frozenset(),
}


def is_month_based(frequency: Frequency) -> bool:
    return Frequency(frequency) in _MONTH_STEPS


def advance(
    current: date,
    frequency: Frequency,
    *,
    interval: Optional[int] = None,
    anchor_day: Optional[int] = None,
) -> date:
    """Step one frequency unit forward from ``current``.

    Month based steps keep ``anchor_day`` when the target month has it and
    clamp to the month end otherwise, so a schedule anchored on the 31st
    goes Jan 31, Feb 29, Mar 31 instead of drifting to the 29th.
    """
    frequency = Frequency(frequency)
    if frequency in _DAY_STEPS:
        return current + timedelta(days=_DAY_STEPS[frequency])
    if frequency in _MONTH_STEPS:
        return add_months(current, _MONTH_STEPS[frequency], anchor_day or current.day)
    if not interval or interval < 1:
        raise ValidationFailed.single("frequency_interval", "custom frequency needs an interval of at least one day")
    return current + timedelta(days=interval)


def first_due_date(
    start: date,
    frequency: Frequency,
    *,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> date:
    """First occurrence on or after ``start`` honouring a fixed weekday or day of month."""
    frequency = Frequency(frequency)
    if day_of_week is not None and frequency in (Frequency.WEEKLY, Frequency.BI_WEEKLY):
        return start + timedelta(days=(day_of_week - start.weekday()) % 7)
    if day_of_month is not None and frequency in _MONTH_STEPS:
        candidate = add_months(start, 0, day_of_month)
        if candidate < start:
            candidate = add_months(start, 1, day_of_month)
        return candidate
    return start


def advance_past(
    current: date,
    frequency: Frequency,
    today: date,
    *,
    interval: Optional[int] = None,
    anchor_day: Optional[int] = None,
) -> tuple[date, int]:
    """Step until the due date is on or after ``today``; returns the date and the steps taken."""
    steps = 0
    while current < today:
        current = advance(current, frequency, interval=interval, anchor_day=anchor_day)
        steps += 1
    return current, steps


def monthly_equivalent(amount: Decimal, frequency: Frequency, interval: Optional[int] = None) -> Decimal:
    frequency = Frequency(frequency)
    if frequency == Frequency.CUSTOM:
        if not interval:
            return to_money(0)
        return to_money(to_money(amount) * Decimal("30.44") / interval)
    return to_money(to_money(amount) * _MONTHLY_FACTORS[frequency])


def transition(entity: str, current: ScheduleStatus, target: ScheduleStatus) -> ScheduleStatus:
    current = ScheduleStatus(current)
    if target not in _TRANSITIONS[current]:
        raise InvalidStateTransition(entity, current, target)
    return target
