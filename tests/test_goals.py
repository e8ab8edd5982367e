from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.errors import ConsistencyError, InvalidStateTransition, ValidationFailed
from budgetbook.services import GoalService
from budgetbook.services.goal_service import SAVINGS_CATEGORY_NAME


START = date(2024, 1, 1)


@pytest.fixture()
def make_goal(db_session, user_id):
    def _make(**overrides):
        payload = {"name": "Emergency fund", "target_amount": "1000", "start_date": START, **overrides}
        return GoalService(db_session).create(user_id, payload)

    return _make


def test_reaching_target_completes_and_tracks_excess(db_session, user_id, make_goal):
    goal = make_goal(current_amount="900")
    assert goal.reached_milestones == [25, 50, 75]
    assert goal.status == models.GoalStatus.ACTIVE

    GoalService(db_session).add_amount(user_id, goal.id, "150", now=datetime(2024, 6, 1, 12, 0))

    assert goal.current_amount == Decimal("1050.00")
    assert goal.status == models.GoalStatus.COMPLETED
    assert goal.completed_at == datetime(2024, 6, 1, 12, 0)
    assert goal.excess_amount == Decimal("50.00")
    assert goal.progress_percentage == Decimal("100.00")
    assert goal.remaining_amount == Decimal("0.00")
    assert goal.reached_milestones == [25, 50, 75, 100]


def test_goal_created_at_target_is_already_complete(make_goal):
    goal = make_goal(current_amount="1000")

    assert goal.status == models.GoalStatus.COMPLETED
    assert goal.excess_amount == Decimal("0.00")


def test_paused_goal_refuses_money(db_session, user_id, make_goal):
    svc = GoalService(db_session)
    goal = make_goal()

    svc.pause(user_id, goal.id)
    with pytest.raises(ConsistencyError):
        svc.add_amount(user_id, goal.id, "10")

    svc.resume(user_id, goal.id)
    svc.add_amount(user_id, goal.id, "10")
    assert goal.current_amount == Decimal("10.00")
    with pytest.raises(InvalidStateTransition):
        svc.resume(user_id, goal.id)


def test_amount_must_be_positive(db_session, user_id, make_goal):
    goal = make_goal()

    with pytest.raises(ValidationFailed):
        GoalService(db_session).add_amount(user_id, goal.id, "0")


def test_target_date_must_follow_start(make_goal):
    with pytest.raises(ValidationFailed):
        make_goal(target_date=START)


def test_contribution_between_accounts_books_transfer(db_session, user_id, make_account, make_goal):
    checking = make_account("Checking", balance="1000")
    savings = make_account("Rainy day", type_="savings", balance="0")
    goal = make_goal(account_id=savings.id, funding_account_id=checking.id)

    GoalService(db_session).contribute(user_id, goal.id, "200", today=date(2024, 2, 1))

    assert checking.balance == Decimal("800.00")
    assert savings.balance == Decimal("200.00")
    assert goal.current_amount == Decimal("200.00")
    legs = db_session.query(models.Transaction).order_by(models.Transaction.id).all()
    assert [leg.type for leg in legs] == [models.TxnType.TRANSFER, models.TxnType.TRANSFER]
    assert legs[0].description == "Contribution to Emergency fund"


def test_contribution_from_funding_account_books_savings_expense(db_session, user_id, make_account, make_goal):
    checking = make_account("Checking", balance="1000")
    goal = make_goal()

    GoalService(db_session).contribute(
        user_id, goal.id, "75", from_account_id=checking.id, today=date(2024, 2, 1)
    )

    assert checking.balance == Decimal("925.00")
    expense = db_session.query(models.Transaction).one()
    assert expense.type == models.TxnType.EXPENSE
    assert expense.category.name == SAVINGS_CATEGORY_NAME
    assert goal.current_amount == Decimal("75.00")


def test_contribution_cannot_use_goal_account_as_source(db_session, user_id, make_account, make_goal):
    savings = make_account("Rainy day", type_="savings", balance="500")
    goal = make_goal(account_id=savings.id)

    with pytest.raises(ValidationFailed):
        GoalService(db_session).contribute(user_id, goal.id, "10", from_account_id=savings.id)
    assert goal.current_amount == Decimal("0.00")


def test_raising_target_reopens_completed_goal(db_session, user_id, make_goal):
    svc = GoalService(db_session)
    goal = make_goal(current_amount="1000")

    svc.update_target_amount(user_id, goal.id, "1500")

    assert goal.status == models.GoalStatus.ACTIVE
    assert goal.completed_at is None
    assert goal.remaining_amount == Decimal("500.00")


def test_required_contributions(db_session, user_id, make_goal):
    goal = make_goal(target_amount="1200", target_date=date(2025, 1, 1))

    plan = GoalService(db_session).required_contributions(user_id, goal.id, today=START)

    assert plan.months_left == 12
    assert plan.weeks_left == 52
    assert plan.required_monthly == Decimal("100.00")
    assert plan.required_weekly == Decimal("23.08")
    assert plan.on_track is True


def test_open_ended_goal_has_no_schedule(db_session, user_id, make_goal):
    plan = GoalService(db_session).required_contributions(user_id, make_goal().id, today=START)

    assert plan.required_monthly is None
    assert plan.remaining_amount == Decimal("1000.00")


def test_auto_contribution_batch(db_session, user_id, make_account, make_goal):
    checking = make_account("Checking", balance="1000")
    goal = make_goal(
        funding_account_id=checking.id,
        auto_contribute=True,
        auto_contribute_amount="100",
        auto_contribute_frequency="monthly",
        next_contribution_date=date(2024, 2, 1),
    )
    make_goal(
        name="Holiday",
        auto_contribute=True,
        auto_contribute_amount="50",
        auto_contribute_frequency="monthly",
        next_contribution_date=date(2024, 3, 1),
    )

    result = GoalService(db_session).process_all_auto_contributions(today=date(2024, 2, 1))

    assert result.processed == 1
    assert result.failed == 0
    assert goal.current_amount == Decimal("100.00")
    assert goal.next_contribution_date == date(2024, 3, 1)
    assert checking.balance == Decimal("900.00")


def test_auto_contribution_requires_schedule(make_goal):
    with pytest.raises(ValidationFailed):
        make_goal(auto_contribute=True, auto_contribute_amount="100")


def test_summary_and_reset(db_session, user_id, make_goal):
    svc = GoalService(db_session)
    saving = make_goal(current_amount="250")
    done = make_goal(name="Laptop", target_amount="500", current_amount="500")

    summary = svc.summary(user_id, today=date(2024, 6, 1))
    assert summary.active_count == 1
    assert summary.total_target == Decimal("1000.00")
    assert summary.total_current == Decimal("250.00")
    assert summary.total_remaining == Decimal("750.00")
    assert summary.average_progress == Decimal("25.00")
    assert summary.completed_count == 1

    svc.reset(user_id, done.id)
    assert done.status == models.GoalStatus.ACTIVE
    assert done.current_amount == Decimal("0.00")
    assert done.reached_milestones == []
    assert saving.reached_milestones == [25]


def test_update_target_date(db_session, user_id, make_goal):
    svc = GoalService(db_session)
    goal = make_goal(target_date=date(2024, 12, 31))

    svc.update_target_date(user_id, goal.id, date(2025, 6, 30))
    assert goal.target_date == date(2025, 6, 30)

    with pytest.raises(ValidationFailed):
        svc.update_target_date(user_id, goal.id, date(2023, 12, 31))
    assert goal.target_date == date(2025, 6, 30)


def test_enabling_auto_contribution_starts_on_given_day(db_session, user_id, make_goal):
    goal = make_goal()

    GoalService(db_session).update(
        user_id,
        goal.id,
        {"auto_contribute": True, "auto_contribute_amount": "25", "auto_contribute_frequency": "weekly"},
        today=date(2024, 4, 2),
    )

    assert goal.next_contribution_date == date(2024, 4, 2)
