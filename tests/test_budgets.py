from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.errors import ConsistencyError, InvalidStateTransition, ValidationFailed
from budgetbook.services import BudgetService, TransactionService


MARCH = {"start_date": date(2024, 3, 1), "end_date": date(2024, 3, 31)}


@pytest.fixture()
def food(system_category):
    return system_category("Food & Dining")


@pytest.fixture()
def transport(system_category):
    return system_category("Transportation")


@pytest.fixture()
def account(make_account):
    return make_account(balance="2000")


@pytest.fixture()
def spend(db_session, user_id, account):
    def _spend(category, amount, on=date(2024, 3, 10), **extra):
        return TransactionService(db_session).create(
            user_id,
            {
                "account_id": account.id,
                "type": "expense",
                "amount": amount,
                "category_id": category.id,
                "transaction_date": on,
                **extra,
            },
        )

    return _spend


def _budget(db_session, user_id, allocations, planned="500", **extra):
    payload = {**MARCH, "planned_expenses": planned, "allocations": allocations, **extra}
    return BudgetService(db_session).create(user_id, payload)


def _assert_derived(row):
    assert row.remaining_amount == row.allocated_amount - row.spent_amount
    if row.allocated_amount:
        expected = (row.spent_amount / row.allocated_amount * 100).quantize(Decimal("0.01"))
    else:
        expected = Decimal("0.00")
    assert row.usage_percentage == expected


def test_overspent_allocation(db_session, user_id, food, spend):
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}])

    for amount in ("50", "60", "100"):
        spend(food, amount)

    allocation = budget.categories[0]
    assert allocation.spent_amount == Decimal("210.00")
    assert allocation.usage_percentage == Decimal("105.00")
    assert allocation.remaining_amount == Decimal("-10.00")
    assert BudgetService(db_session).allocation_status(allocation) == models.AllocationStatus.OVERSPENT
    _assert_derived(allocation)


def test_spending_outside_window_or_pending_is_ignored(db_session, user_id, food, spend):
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}])

    spend(food, "40", on=date(2024, 4, 1))
    spend(food, "30", is_pending=True)
    txn = spend(food, "20")

    allocation = budget.categories[0]
    assert allocation.spent_amount == Decimal("20.00")

    TransactionService(db_session).delete(user_id, txn.id)
    assert allocation.spent_amount == Decimal("0.00")
    _assert_derived(allocation)


def test_moving_a_transaction_between_categories(db_session, user_id, food, transport, spend):
    budget = _budget(
        db_session,
        user_id,
        [{"category_id": food.id, "allocated_amount": "200"}, {"category_id": transport.id, "allocated_amount": "100"}],
    )
    txn = spend(food, "80")

    TransactionService(db_session).update(user_id, txn.id, {"category_id": transport.id})

    spent = {row.category_id: row.spent_amount for row in budget.categories}
    assert spent == {food.id: Decimal("0.00"), transport.id: Decimal("80.00")}


def test_create_counts_existing_spending(db_session, user_id, food, spend):
    spend(food, "45")

    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}])

    assert budget.categories[0].spent_amount == Decimal("45.00")
    assert budget.actual_expenses == Decimal("45.00")


def test_allocations_cannot_exceed_planned_expenses(db_session, user_id, food, transport):
    with pytest.raises(ConsistencyError):
        _budget(
            db_session,
            user_id,
            [
                {"category_id": food.id, "allocated_amount": "400"},
                {"category_id": transport.id, "allocated_amount": "200"},
            ],
        )
    assert db_session.query(models.Budget).count() == 0


def test_allocation_needs_expense_category(db_session, user_id, system_category):
    with pytest.raises(ValidationFailed):
        _budget(db_session, user_id, [{"category_id": system_category("Salary").id, "allocated_amount": "10"}])


def test_active_budgets_may_not_overlap(db_session, user_id):
    _budget(db_session, user_id, [])

    with pytest.raises(ConsistencyError):
        BudgetService(db_session).create(
            user_id, {"start_date": date(2024, 3, 15), "end_date": date(2024, 4, 14), "planned_expenses": "10"}
        )

    paused = BudgetService(db_session).create(
        user_id,
        {"start_date": date(2024, 3, 15), "end_date": date(2024, 4, 14), "planned_expenses": "10", "status": "paused"},
    )
    assert paused.status == models.BudgetStatus.PAUSED
    with pytest.raises(ConsistencyError):
        BudgetService(db_session).resume(user_id, paused.id)


def test_end_must_follow_start(db_session, user_id):
    with pytest.raises(ValidationFailed):
        BudgetService(db_session).create(user_id, {"start_date": date(2024, 3, 1), "end_date": date(2024, 3, 1)})


def test_add_and_remove_allocation(db_session, user_id, food, transport, spend):
    svc = BudgetService(db_session)
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}])
    spend(transport, "15")

    row = svc.add_allocation(user_id, budget.id, {"category_id": transport.id, "allocated_amount": "100"})
    assert row.spent_amount == Decimal("15.00")

    with pytest.raises(ConsistencyError):
        svc.add_allocation(user_id, budget.id, {"category_id": transport.id, "allocated_amount": "10"})

    svc.remove_allocation(user_id, row.id)
    assert [r.category_id for r in budget.categories] == [food.id]


def test_adjust_allocation_records_note(db_session, user_id, food, transport):
    svc = BudgetService(db_session)
    budget = _budget(
        db_session,
        user_id,
        [{"category_id": food.id, "allocated_amount": "200"}, {"category_id": transport.id, "allocated_amount": "100"}],
    )
    food_row = budget.categories[0]

    svc.adjust_allocation(user_id, food_row.id, "260", "dinner guests", now=datetime(2024, 3, 5, 9, 30))

    assert food_row.allocated_amount == Decimal("260.00")
    assert food_row.notes == "[2024-03-05 09:30] Adjusted from $200.00 to $260.00: dinner guests"
    assert budget.planned_expenses == Decimal("360.00")
    _assert_derived(food_row)


def test_transfer_unused_between_allocations(db_session, user_id, food, transport, spend):
    svc = BudgetService(db_session)
    budget = _budget(
        db_session,
        user_id,
        [{"category_id": food.id, "allocated_amount": "200"}, {"category_id": transport.id, "allocated_amount": "100"}],
    )
    spend(food, "50")
    food_row, transport_row = budget.categories

    with pytest.raises(ValidationFailed):
        svc.transfer_unused_to(user_id, food_row.id, transport_row.id, "151")

    source = svc.transfer_unused_to(user_id, food_row.id, transport_row.id, "100")

    assert source.id == food_row.id
    assert food_row.allocated_amount == Decimal("100.00")
    assert food_row.remaining_amount == Decimal("50.00")
    assert transport_row.allocated_amount == Decimal("200.00")
    assert budget.total_allocated == Decimal("300.00")

    with pytest.raises(ValidationFailed):
        svc.transfer_unused_to(user_id, food_row.id, food_row.id)


def test_recalculate_spent_amount_repairs_drift(db_session, user_id, food, spend):
    svc = BudgetService(db_session)
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}])
    spend(food, "70")
    allocation = budget.categories[0]
    allocation.spent_amount = Decimal("999.00")
    db_session.commit()

    svc.recalculate_spent_amount(user_id, allocation.id)

    assert allocation.spent_amount == Decimal("70.00")
    assert allocation.usage_percentage == Decimal("35.00")


def test_next_period_rolls_over_unused(db_session, user_id, food, transport, spend):
    svc = BudgetService(db_session)
    budget = _budget(
        db_session,
        user_id,
        [{"category_id": food.id, "allocated_amount": "200"}, {"category_id": transport.id, "allocated_amount": "100"}],
        period_type="monthly",
        rollover_unused=True,
        deduct_overspent=True,
    )
    spend(food, "50")
    spend(transport, "130")

    following = svc.create_next_period_budget(user_id, budget.id)

    assert (following.start_date, following.end_date) == (date(2024, 4, 1), date(2024, 4, 30))
    allocated = {row.category_id: row.allocated_amount for row in following.categories}
    assert allocated == {food.id: Decimal("350.00"), transport.id: Decimal("70.00")}
    previous = {row.category_id: row.previous_period_spent for row in following.categories}
    assert previous == {food.id: Decimal("50.00"), transport.id: Decimal("130.00")}
    assert following.planned_expenses == Decimal("500.00")
    assert following.name == "April 2024 Budget"


def test_status_transitions(db_session, user_id):
    svc = BudgetService(db_session)
    budget = _budget(db_session, user_id, [])

    svc.pause(user_id, budget.id)
    svc.resume(user_id, budget.id)
    svc.complete(user_id, budget.id)

    assert budget.status == models.BudgetStatus.COMPLETED
    with pytest.raises(InvalidStateTransition):
        svc.resume(user_id, budget.id)
    with pytest.raises(ConsistencyError):
        svc.update(user_id, budget.id, {"name": "Renamed"})


def test_performance_projection(db_session, user_id, food, spend):
    svc = BudgetService(db_session)
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "200", "alert_threshold": 50}])
    spend(food, "100", on=date(2024, 3, 5))

    report = svc.performance(user_id, budget.id, today=date(2024, 3, 10))

    assert report.days_total == 31
    assert report.days_elapsed == 10
    assert report.days_remaining == 21
    assert report.time_progress == Decimal("32.26")
    assert report.total_spent == Decimal("100.00")
    assert report.projected_spending == Decimal("310.00")
    assert report.projected_overspend == Decimal("110.00")
    assert report.daily_allowance_remaining == Decimal("4.76")
    assert report.on_pace is False
    assert report.allocations[0].status == models.AllocationStatus.WARNING

    alerts = svc.alerts(user_id, budget.id)
    assert [a.category_id for a in alerts] == [food.id]


def test_recalculate_actuals_and_variances(db_session, user_id, account, food, spend, system_category):
    svc = BudgetService(db_session)
    budget = _budget(
        db_session, user_id, [{"category_id": food.id, "allocated_amount": "200"}], planned_income="3000"
    )
    spend(food, "50")
    TransactionService(db_session).create(
        user_id,
        {
            "account_id": account.id,
            "type": "income",
            "amount": "2800",
            "category_id": system_category("Salary").id,
            "transaction_date": date(2024, 3, 1),
        },
    )

    svc.recalculate_actuals(user_id, budget.id, now=datetime(2024, 3, 20, 8, 0))

    assert budget.actual_income == Decimal("2800.00")
    assert budget.actual_expenses == Decimal("50.00")
    assert budget.income_variance == Decimal("-200.00")
    assert budget.expense_variance == Decimal("-450.00")
    assert budget.progress_percentage == Decimal("10.00")
    assert budget.is_over_threshold is False
    assert budget.last_calculated_at == datetime(2024, 3, 20, 8, 0)
    allocation = budget.categories[0]
    assert allocation.variance == Decimal("150.00")
    assert allocation.amount_until_alert == Decimal("110.00")


def test_usage_on_tiny_allocation_is_stored(db_session, user_id, food, spend):
    budget = _budget(db_session, user_id, [{"category_id": food.id, "allocated_amount": "0.01"}])
    spend(food, "200000")

    db_session.expire_all()
    allocation = budget.categories[0]
    assert allocation.usage_percentage == Decimal("2000000000.00")
    assert allocation.is_overspent is True


def test_usage_percentage_is_capped():
    row = models.BudgetCategory(allocated_amount=Decimal("0.01"), spent_amount=Decimal("9999999999999.99"))

    row.recompute_derived()

    assert row.usage_percentage == models.MAX_USAGE_PERCENTAGE
