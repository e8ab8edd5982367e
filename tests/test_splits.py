from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.errors import ConsistencyError, ValidationFailed
from budgetbook.services import AccountService, BudgetService, TransactionService


@pytest.fixture()
def setup(db_session, user_id, make_account, system_category):
    account = make_account(balance="1000")
    groceries = system_category("Groceries")
    restaurants = system_category("Restaurants")
    budget = BudgetService(db_session).create(
        user_id,
        {
            "start_date": date(2024, 3, 1),
            "end_date": date(2024, 3, 31),
            "planned_expenses": "500",
            "allocations": [
                {"category_id": groceries.id, "allocated_amount": "200"},
                {"category_id": restaurants.id, "allocated_amount": "100"},
            ],
        },
    )
    txn = TransactionService(db_session).create(
        user_id,
        {
            "account_id": account.id,
            "type": "expense",
            "amount": "100",
            "category_id": groceries.id,
            "transaction_date": date(2024, 3, 10),
        },
    )
    return account, groceries, restaurants, budget, txn


def _spent(budget, category):
    return next(row.spent_amount for row in budget.categories if row.category_id == category.id)


def test_split_moves_budget_effect_to_parts_only(db_session, user_id, setup):
    account, groceries, restaurants, budget, txn = setup
    assert _spent(budget, groceries) == Decimal("100.00")

    TransactionService(db_session).split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "40"}],
    )

    assert txn.is_split is True
    assert len(txn.children) == 2
    assert account.balance == Decimal("900.00")
    assert _spent(budget, groceries) == Decimal("60.00")
    assert _spent(budget, restaurants) == Decimal("40.00")
    assert AccountService(db_session).recalculate_balance(user_id, account.id).corrected is False


def test_split_parts_must_add_up_within_a_cent(db_session, user_id, setup):
    _, groceries, restaurants, _, txn = setup
    svc = TransactionService(db_session)

    with pytest.raises(ValidationFailed) as exc_info:
        svc.split_into_categories(
            user_id,
            txn.id,
            [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "39.98"}],
        )
    assert "parts" in exc_info.value.errors
    assert txn.is_split is False

    svc.split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "39.99"}],
    )
    assert txn.is_split is True


def test_split_needs_two_parts_of_matching_type(db_session, user_id, setup, system_category):
    _, groceries, _, _, txn = setup
    svc = TransactionService(db_session)

    with pytest.raises(ValidationFailed):
        svc.split_into_categories(user_id, txn.id, [{"category_id": groceries.id, "amount": "100"}])
    with pytest.raises(ValidationFailed):
        svc.split_into_categories(
            user_id,
            txn.id,
            [{"category_id": groceries.id, "amount": "50"}, {"category_id": system_category("Salary").id, "amount": "50"}],
        )


def test_split_part_cannot_be_deleted_alone(db_session, user_id, setup):
    _, groceries, restaurants, _, txn = setup
    svc = TransactionService(db_session)
    svc.split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "40"}],
    )

    with pytest.raises(ConsistencyError):
        svc.delete(user_id, txn.children[0].id)


def test_split_parent_amount_is_locked(db_session, user_id, setup):
    _, groceries, restaurants, _, txn = setup
    svc = TransactionService(db_session)
    svc.split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "40"}],
    )

    with pytest.raises(ValidationFailed):
        svc.update(user_id, txn.id, {"amount": "120"})
    with pytest.raises(ValidationFailed):
        svc.update(user_id, txn.children[0].id, {"amount": "70"})


def test_deleting_split_parent_removes_parts_and_restores_totals(db_session, user_id, setup):
    account, groceries, restaurants, budget, txn = setup
    svc = TransactionService(db_session)
    svc.split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "40"}],
    )

    svc.delete(user_id, txn.id)

    assert db_session.query(models.Transaction).count() == 0
    assert account.balance == Decimal("1000.00")
    assert _spent(budget, groceries) == Decimal("0.00")
    assert _spent(budget, restaurants) == Decimal("0.00")


def test_unsplit_gives_budget_effect_back_to_parent(db_session, user_id, setup):
    account, groceries, restaurants, budget, txn = setup
    svc = TransactionService(db_session)
    svc.split_into_categories(
        user_id,
        txn.id,
        [{"category_id": groceries.id, "amount": "60"}, {"category_id": restaurants.id, "amount": "40"}],
    )

    svc.unsplit(user_id, txn.id)

    assert txn.is_split is False
    assert txn.children == []
    assert account.balance == Decimal("900.00")
    assert _spent(budget, groceries) == Decimal("100.00")
    assert _spent(budget, restaurants) == Decimal("0.00")
