from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.errors import ValidationFailed
from budgetbook.seed import TRANSFER_CATEGORY_NAME
from budgetbook.services import TransactionService


@pytest.fixture()
def pair(make_account):
    return make_account("Checking", balance="1000"), make_account("Savings", type_="savings", balance="200")


def test_transfer_moves_money_and_links_both_rows(db_session, user_id, pair):
    checking, savings = pair
    svc = TransactionService(db_session)

    out_row = svc.create_transfer(user_id, checking.id, savings.id, "300", "Monthly savings", date(2024, 3, 1))

    assert checking.balance == Decimal("700.00")
    assert savings.balance == Decimal("500.00")
    in_row = db_session.get(models.Transaction, out_row.transfer_transaction_id)
    assert out_row.transfer_direction == models.TransferDirection.OUT
    assert in_row.transfer_direction == models.TransferDirection.IN
    assert in_row.account_id == savings.id
    assert in_row.transfer_account_id == checking.id
    assert in_row.transfer_transaction_id == out_row.id
    assert out_row.category.name == TRANSFER_CATEGORY_NAME


def test_deleting_either_side_restores_both_balances(db_session, user_id, pair):
    checking, savings = pair
    svc = TransactionService(db_session)
    out_row = svc.create_transfer(user_id, checking.id, savings.id, "300")
    in_row_id = out_row.transfer_transaction_id

    svc.delete(user_id, in_row_id)

    assert checking.balance == Decimal("1000.00")
    assert savings.balance == Decimal("200.00")
    assert db_session.query(models.Transaction).count() == 0


def test_transfer_to_same_account_is_rejected(db_session, user_id, pair):
    checking, _ = pair

    with pytest.raises(ValidationFailed):
        TransactionService(db_session).create_transfer(user_id, checking.id, checking.id, "10")

    assert checking.balance == Decimal("1000.00")


def test_editing_the_incoming_side_updates_both_rows(db_session, user_id, pair):
    checking, savings = pair
    svc = TransactionService(db_session)
    out_row = svc.create_transfer(user_id, checking.id, savings.id, "300")

    svc.update(user_id, out_row.transfer_transaction_id, {"amount": "50"})

    assert out_row.amount == Decimal("50.00")
    assert checking.balance == Decimal("950.00")
    assert savings.balance == Decimal("250.00")


def test_retargeting_a_transfer(db_session, user_id, make_account, pair):
    checking, savings = pair
    brokerage = make_account("Brokerage", type_="investment", balance="0")
    svc = TransactionService(db_session)
    out_row = svc.create_transfer(user_id, checking.id, savings.id, "100")

    svc.update(user_id, out_row.id, {"transfer_account_id": brokerage.id})

    assert checking.balance == Decimal("900.00")
    assert savings.balance == Decimal("200.00")
    assert brokerage.balance == Decimal("100.00")


def test_turning_a_transfer_into_an_expense_drops_the_twin(db_session, user_id, pair, system_category):
    checking, savings = pair
    svc = TransactionService(db_session)
    out_row = svc.create_transfer(user_id, checking.id, savings.id, "300")

    svc.update(user_id, out_row.id, {"type": "expense", "category_id": system_category("Shopping").id})

    assert checking.balance == Decimal("700.00")
    assert savings.balance == Decimal("200.00")
    assert db_session.query(models.Transaction).count() == 1
    assert out_row.transfer_account_id is None
    assert out_row.transfer_transaction_id is None


def test_pending_transfer_waits_for_clearing(db_session, user_id, pair):
    checking, savings = pair
    svc = TransactionService(db_session)

    out_row = svc.create_transfer(user_id, checking.id, savings.id, "300", is_pending=True)
    assert checking.balance == Decimal("1000.00")
    assert savings.balance == Decimal("200.00")

    svc.mark_cleared(user_id, out_row.id)
    assert checking.balance == Decimal("700.00")
    assert savings.balance == Decimal("500.00")
