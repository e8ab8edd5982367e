from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.core.database import atomic
from budgetbook.errors import AccessDenied, NotFoundError, ValidationFailed
from budgetbook.services import AccountService, TransactionService


def _expense(account, category, amount, **extra):
    return {
        "account_id": account.id,
        "type": "expense",
        "amount": amount,
        "category_id": category.id,
        "transaction_date": date(2024, 3, 5),
        **extra,
    }


def test_create_update_delete_keeps_balance_exact(db_session, user_id, make_account, system_category):
    account = make_account(balance="1000")
    groceries = system_category("Groceries")
    svc = TransactionService(db_session)

    txn = svc.create(user_id, _expense(account, groceries, "150"))
    assert account.balance == Decimal("850.00")

    svc.update(user_id, txn.id, {"amount": "200"})
    assert account.balance == Decimal("800.00")

    svc.delete(user_id, txn.id)
    assert account.balance == Decimal("1000.00")
    assert db_session.get(models.Transaction, txn.id) is None


def test_income_raises_balance(db_session, user_id, make_account, system_category):
    account = make_account(balance="100")
    svc = TransactionService(db_session)

    svc.create(
        user_id,
        {
            "account_id": account.id,
            "type": "income",
            "amount": "2500.50",
            "category_id": system_category("Salary").id,
            "transaction_date": date(2024, 3, 1),
        },
    )

    assert account.balance == Decimal("2600.50")


def test_pending_transactions_do_not_move_balance_until_cleared(db_session, user_id, make_account, system_category):
    account = make_account(balance="500")
    svc = TransactionService(db_session)

    txn = svc.create(user_id, _expense(account, system_category("Groceries"), "75", is_pending=True))
    assert account.balance == Decimal("500.00")

    svc.mark_cleared(user_id, txn.id)
    assert account.balance == Decimal("425.00")
    assert txn.is_pending is False


def test_changing_account_moves_the_effect(db_session, user_id, make_account, system_category):
    first = make_account("First", balance="1000")
    second = make_account("Second", balance="1000")
    svc = TransactionService(db_session)

    txn = svc.create(user_id, _expense(first, system_category("Groceries"), "100"))
    svc.update(user_id, txn.id, {"account_id": second.id})

    assert first.balance == Decimal("1000.00")
    assert second.balance == Decimal("900.00")


def test_changing_type_and_amount_together(db_session, user_id, make_account, system_category):
    account = make_account(balance="1000")
    svc = TransactionService(db_session)

    txn = svc.create(user_id, _expense(account, system_category("Groceries"), "100"))
    svc.update(user_id, txn.id, {"type": "income", "category_id": system_category("Salary").id, "amount": "300"})

    assert account.balance == Decimal("1300.00")


def test_category_type_must_match(db_session, user_id, make_account, system_category):
    account = make_account(balance="1000")
    svc = TransactionService(db_session)

    with pytest.raises(ValidationFailed) as exc_info:
        svc.create(user_id, _expense(account, system_category("Salary"), "10"))

    assert "category_id" in exc_info.value.errors
    assert exc_info.value.status_code == 422
    assert account.balance == Decimal("1000.00")
    assert db_session.query(models.Transaction).count() == 0


@pytest.mark.parametrize("amount", ["0", "-5", "1.234"])
def test_invalid_amounts_are_rejected(db_session, user_id, make_account, system_category, amount):
    account = make_account()

    with pytest.raises(ValidationFailed) as exc_info:
        TransactionService(db_session).create(user_id, _expense(account, system_category("Groceries"), amount))

    assert "amount" in exc_info.value.errors


def test_expense_needs_a_category(db_session, user_id, make_account):
    account = make_account()

    with pytest.raises(ValidationFailed) as exc_info:
        TransactionService(db_session).create(
            user_id, {"account_id": account.id, "type": "expense", "amount": "10"}
        )

    assert "category_id" in exc_info.value.errors


def test_other_users_account_is_refused(db_session, user_id, other_user_id, system_category):
    foreign = AccountService(db_session).create(other_user_id, {"name": "Theirs", "type": "checking"})

    with pytest.raises(AccessDenied):
        TransactionService(db_session).create(user_id, _expense(foreign, system_category("Groceries"), "10"))


def test_other_users_transaction_cannot_be_read_or_deleted(db_session, user_id, other_user_id, make_account, system_category):
    txn = TransactionService(db_session).create(user_id, _expense(make_account(), system_category("Groceries"), "10"))
    svc = TransactionService(db_session)

    with pytest.raises(AccessDenied):
        svc.get(other_user_id, txn.id)
    with pytest.raises(AccessDenied):
        svc.delete(other_user_id, txn.id)
    with pytest.raises(NotFoundError):
        svc.get(user_id, 999_999)


def test_archived_account_takes_no_new_entries(db_session, user_id, make_account, system_category):
    account = make_account()
    AccountService(db_session).archive(user_id, account.id)

    with pytest.raises(ValidationFailed):
        TransactionService(db_session).create(user_id, _expense(account, system_category("Groceries"), "10"))


def test_failed_unit_of_work_leaves_nothing_behind(db_session, user_id, make_account, system_category):
    account = make_account(balance="1000")
    svc = TransactionService(db_session)

    with pytest.raises(RuntimeError):
        with atomic(db_session):
            svc.create(user_id, _expense(account, system_category("Groceries"), "400"))
            raise RuntimeError("boom")

    assert account.balance == Decimal("1000.00")
    assert db_session.query(models.Transaction).count() == 0


def test_balance_always_matches_recalculation(db_session, user_id, make_account, system_category):
    checking = make_account("Checking", balance="1000")
    savings = make_account("Savings", type_="savings", balance="250")
    groceries = system_category("Groceries")
    salary = system_category("Salary")
    svc = TransactionService(db_session)
    accounts = AccountService(db_session)

    a = svc.create(user_id, _expense(checking, groceries, "42.10"))
    b = svc.create(
        user_id,
        {"account_id": checking.id, "type": "income", "amount": "900", "category_id": salary.id, "date": date(2024, 3, 6)},
    )
    c = svc.create_transfer(user_id, checking.id, savings.id, "300", transaction_date=date(2024, 3, 7))
    svc.create(user_id, _expense(savings, groceries, "12.34", is_pending=True))
    svc.update(user_id, a.id, {"amount": "58.90", "account_id": savings.id})
    svc.update(user_id, b.id, {"is_pending": True})
    svc.update(user_id, c.id, {"amount": "125"})
    svc.delete(user_id, a.id)

    for account in (checking, savings):
        result = accounts.recalculate_balance(user_id, account.id)
        assert result.corrected is False
        assert result.stored_balance == result.computed_balance == account.balance


def test_duplicate_copies_onto_a_new_date(db_session, user_id, make_account, system_category):
    account = make_account(balance="100")
    svc = TransactionService(db_session)
    original = svc.create(user_id, _expense(account, system_category("Groceries"), "20", description="Milk"))

    copy = svc.duplicate(user_id, original.id, transaction_date=date(2024, 3, 12))

    assert copy.id != original.id
    assert copy.description == "Milk"
    assert copy.transaction_date == date(2024, 3, 12)
    assert account.balance == Decimal("60.00")


def test_list_transactions_filters(db_session, user_id, make_account, system_category):
    account = make_account(balance="100")
    svc = TransactionService(db_session)
    svc.create(user_id, _expense(account, system_category("Groceries"), "1", transaction_date=date(2024, 1, 1)))
    svc.create(user_id, _expense(account, system_category("Groceries"), "2", transaction_date=date(2024, 2, 1)))
    svc.create(
        user_id,
        _expense(account, system_category("Groceries"), "3", transaction_date=date(2024, 2, 2), is_pending=True),
    )

    rows = svc.list_transactions(user_id, start=date(2024, 2, 1), include_pending=False)

    assert [row.amount for row in rows] == [Decimal("2.00")]


def test_tags_are_added_once_and_removed(db_session, user_id, make_account, system_category):
    account = make_account(balance="100")
    svc = TransactionService(db_session)
    txn = svc.create(user_id, _expense(account, system_category("Groceries"), "20", tags=["food", " food ", ""]))
    assert txn.tags == ["food"]

    svc.add_tags(user_id, txn.id, ["weekly", "food", "costco"])
    assert txn.tags == ["food", "weekly", "costco"]

    svc.remove_tags(user_id, txn.id, ["food", "missing"])
    assert txn.tags == ["weekly", "costco"]

    copy = svc.duplicate(user_id, txn.id, transaction_date=date(2024, 3, 12))
    assert copy.tags == ["weekly", "costco"]

    with pytest.raises(ValidationFailed):
        svc.add_tags(user_id, txn.id, [])


def test_transfer_legs_share_tags(db_session, user_id, make_account):
    checking = make_account("Checking", balance="500")
    savings = make_account("Savings", type_="savings")
    svc = TransactionService(db_session)
    out = svc.create_transfer(user_id, checking.id, savings.id, "100", transaction_date=date(2024, 3, 7))
    twin = db_session.get(models.Transaction, out.transfer_transaction_id)

    svc.add_tags(user_id, twin.id, ["rainy-day"])
    assert out.tags == twin.tags == ["rainy-day"]

    svc.update(user_id, out.id, {"tags": ["rainy-day", "monthly"]})
    assert twin.tags == ["rainy-day", "monthly"]
