from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from budgetbook.errors import InvalidStateTransition, ValidationFailed
from budgetbook.models import AllocationStatus, Frequency, ScheduleStatus
from budgetbook.services import schedule
from budgetbook.services.budget_service import category_status
from budgetbook.utils.dates import add_months, months_between
from budgetbook.utils.money import percentage, to_money, within_tolerance


def test_to_money_avoids_float_artifacts():
    assert to_money(0.1 + 0.2) == Decimal("0.30")
    assert to_money("12.345") == Decimal("12.35")
    assert to_money(None) == Decimal("0.00")


def test_percentage_of_zero_is_zero():
    assert percentage(50, 200) == Decimal("25.00")
    assert percentage(10, 0) == Decimal("0.00")


def test_within_tolerance_allows_one_cent():
    assert within_tolerance("100.00", "100.01")
    assert not within_tolerance("100.00", "100.02")


def test_add_months_clamps_and_keeps_anchor():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2024, 2, 29), 1, anchor_day=31) == date(2024, 3, 31)
    assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)


def test_months_between_counts_whole_months():
    assert months_between(date(2024, 1, 31), date(2024, 3, 30)) == 1
    assert months_between(date(2024, 1, 1), date(2024, 7, 1)) == 6
    assert months_between(date(2024, 5, 1), date(2024, 1, 1)) == 0


def test_monthly_schedule_from_month_end_never_skips_a_month():
    current = date(2024, 1, 31)
    seen = [current]
    for _ in range(12):
        current = schedule.advance(current, Frequency.MONTHLY, anchor_day=31)
        seen.append(current)

    months = [(d.year, d.month) for d in seen]
    assert months == sorted(set(months))
    assert len(months) == 13
    assert seen[1:4] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]


@pytest.mark.parametrize(
    "frequency, expected",
    [
        (Frequency.DAILY, date(2024, 3, 11)),
        (Frequency.WEEKLY, date(2024, 3, 17)),
        (Frequency.BI_WEEKLY, date(2024, 3, 24)),
        (Frequency.QUARTERLY, date(2024, 6, 10)),
        (Frequency.SEMI_ANNUAL, date(2024, 9, 10)),
        (Frequency.ANNUAL, date(2025, 3, 10)),
    ],
)
def test_advance_steps_one_unit(frequency, expected):
    assert schedule.advance(date(2024, 3, 10), frequency) == expected


def test_custom_frequency_needs_interval():
    assert schedule.advance(date(2024, 3, 10), Frequency.CUSTOM, interval=10) == date(2024, 3, 20)
    with pytest.raises(ValidationFailed):
        schedule.advance(date(2024, 3, 10), Frequency.CUSTOM)


def test_first_due_date_honours_weekday_and_day_of_month():
    # 2024-03-10 is a Sunday
    assert schedule.first_due_date(date(2024, 3, 10), Frequency.WEEKLY, day_of_week=0) == date(2024, 3, 11)
    assert schedule.first_due_date(date(2024, 3, 20), Frequency.MONTHLY, day_of_month=5) == date(2024, 4, 5)
    assert schedule.first_due_date(date(2024, 3, 2), Frequency.MONTHLY, day_of_month=5) == date(2024, 3, 5)


def test_advance_past_counts_skipped_occurrences():
    next_due, steps = schedule.advance_past(date(2024, 1, 15), Frequency.MONTHLY, date(2024, 4, 1))
    assert next_due == date(2024, 4, 15)
    assert steps == 3


def test_monthly_equivalent():
    assert schedule.monthly_equivalent(Decimal("100"), Frequency.WEEKLY) == Decimal("433.00")
    assert schedule.monthly_equivalent(Decimal("1200"), Frequency.ANNUAL) == Decimal("100.00")
    assert schedule.monthly_equivalent(Decimal("100"), Frequency.CUSTOM, 10) == Decimal("304.40")


def test_schedule_state_machine():
    assert schedule.transition("Bill", ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED) == ScheduleStatus.PAUSED
    assert schedule.transition("Bill", ScheduleStatus.PAUSED, ScheduleStatus.ACTIVE) == ScheduleStatus.ACTIVE
    with pytest.raises(InvalidStateTransition):
        schedule.transition("Bill", ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED)
    with pytest.raises(InvalidStateTransition):
        schedule.transition("Bill", ScheduleStatus.COMPLETED, ScheduleStatus.ACTIVE)


def test_category_status_bands():
    assert category_status(Decimal("105"), 80) == AllocationStatus.OVERSPENT
    assert category_status(Decimal("100"), 80) == AllocationStatus.OVERSPENT
    assert category_status(Decimal("85"), 80) == AllocationStatus.WARNING
    assert category_status(Decimal("60"), 80) == AllocationStatus.GOOD
    assert category_status(Decimal("10"), 80) == AllocationStatus.EXCELLENT
