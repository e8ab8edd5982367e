from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from budgetbook import models
from budgetbook.errors import ConsistencyError, InvalidStateTransition, ValidationFailed
from budgetbook.services import AccountService, RecurringTransactionService
from budgetbook.services.recurring_service import has_ended, is_due_for_generation


@pytest.fixture()
def account(make_account):
    return make_account(balance="1000")


@pytest.fixture()
def make_template(db_session, user_id, account, system_category):
    def _make(**overrides):
        payload = {
            "account_id": account.id,
            "type": "income",
            "amount": "3000",
            "description": "Salary",
            "category_id": system_category("Salary").id,
            "frequency": "monthly",
            "start_date": date(2024, 1, 31),
            **overrides,
        }
        return RecurringTransactionService(db_session).create(user_id, payload)

    return _make


def test_generate_books_transaction_and_advances(db_session, user_id, account, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template()
    assert rt.next_due_date == date(2024, 1, 31)

    txn = svc.generate_transaction(user_id, rt.id)

    assert txn.transaction_date == date(2024, 1, 31)
    assert txn.recurring_transaction_id == rt.id
    assert account.balance == Decimal("4000.00")
    assert rt.occurrences_count == 1
    assert rt.total_generated_amount == Decimal("3000.00")
    assert rt.next_due_date == date(2024, 2, 29)

    svc.generate_transaction(user_id, rt.id)
    assert rt.next_due_date == date(2024, 3, 31)


def test_completes_after_max_occurrences(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(max_occurrences=2)

    svc.generate_transaction(user_id, rt.id)
    assert rt.status == models.ScheduleStatus.ACTIVE
    svc.generate_transaction(user_id, rt.id)

    assert rt.status == models.ScheduleStatus.COMPLETED
    assert has_ended(rt)
    with pytest.raises(ConsistencyError):
        svc.generate_transaction(user_id, rt.id)


def test_completes_when_next_due_passes_end_date(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(start_date=date(2024, 1, 15), end_date=date(2024, 2, 20))

    svc.generate_transaction(user_id, rt.id)
    assert rt.status == models.ScheduleStatus.ACTIVE
    svc.generate_transaction(user_id, rt.id)

    assert rt.next_due_date == date(2024, 3, 15)
    assert rt.status == models.ScheduleStatus.COMPLETED


def test_due_window_respects_days_ahead(make_template):
    rt = make_template(start_date=date(2024, 3, 10), generate_days_ahead=3)

    assert not is_due_for_generation(rt, date(2024, 3, 6))
    assert is_due_for_generation(rt, date(2024, 3, 7))


def test_pending_generation_leaves_balance(db_session, user_id, account, make_template):
    rt = make_template(generate_as_pending=True)

    txn = RecurringTransactionService(db_session).generate_transaction(user_id, rt.id)

    assert txn.is_pending is True
    assert account.balance == Decimal("1000.00")


def test_amount_variation_is_bounded(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    fixed = make_template()
    with pytest.raises(ValidationFailed):
        svc.generate_transaction(user_id, fixed.id, amount="3100")

    variable = make_template(
        description="Bonus", allow_amount_variation=True, min_amount="2500", max_amount="3500"
    )
    with pytest.raises(ValidationFailed):
        svc.generate_transaction(user_id, variable.id, amount="4000")
    txn = svc.generate_transaction(user_id, variable.id, amount="3200")
    assert txn.amount == Decimal("3200.00")
    assert variable.total_generated_amount == Decimal("3200.00")


def test_batch_keeps_going_past_a_failure(db_session, user_id, make_account, make_template):
    svc = RecurringTransactionService(db_session)
    doomed_account = make_account("Closed", balance="0")
    ok = make_template(start_date=date(2024, 2, 1))
    doomed = make_template(account_id=doomed_account.id, start_date=date(2024, 2, 1), description="Old job")
    future = make_template(start_date=date(2024, 5, 1), description="Later")
    AccountService(db_session).archive(user_id, doomed_account.id)

    result = svc.process_all_due(today=date(2024, 2, 1))

    assert result.processed == 1
    assert result.failed == 1
    assert result.failed_ids == [doomed.id]
    assert ok.occurrences_count == 1
    assert doomed.occurrences_count == 0
    assert future.occurrences_count == 0
    assert svc.process_auto_generation(future.id, today=date(2024, 2, 1)) is False


def test_resume_skips_missed_occurrences(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(start_date=date(2024, 1, 15))

    svc.pause(user_id, rt.id, "between jobs", today=date(2024, 1, 10))
    assert rt.status == models.ScheduleStatus.PAUSED
    assert rt.notes == "[2024-01-10] Paused: between jobs"

    svc.resume(user_id, rt.id, today=date(2024, 4, 1))
    assert rt.status == models.ScheduleStatus.ACTIVE
    assert rt.next_due_date == date(2024, 4, 15)
    assert rt.occurrences_count == 0


def test_cancelled_is_terminal(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template()

    svc.cancel(user_id, rt.id)

    with pytest.raises(InvalidStateTransition):
        svc.resume(user_id, rt.id)
    with pytest.raises(ConsistencyError):
        svc.skip_next(user_id, rt.id)


def test_skip_next(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template()

    svc.skip_next(user_id, rt.id, "holiday", today=date(2024, 1, 20))

    assert rt.next_due_date == date(2024, 2, 29)
    assert "Skipped next occurrence: holiday" in rt.notes


def test_update_amount_reprices_future_pending(db_session, user_id, account, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(start_date=date(2024, 3, 1), generate_as_pending=True)
    txn = svc.generate_transaction(user_id, rt.id)

    svc.update_amount(user_id, rt.id, "3250", today=date(2024, 2, 15))

    assert rt.amount == Decimal("3250.00")
    assert db_session.get(models.Transaction, txn.id).amount == Decimal("3250.00")
    assert account.balance == Decimal("1000.00")


def test_transfer_template_generates_pair(db_session, user_id, account, make_account):
    savings = make_account("Savings", type_="savings", balance="0")
    svc = RecurringTransactionService(db_session)
    rt = svc.create(
        user_id,
        {
            "account_id": account.id,
            "transfer_account_id": savings.id,
            "type": "transfer",
            "amount": "200",
            "description": "Save",
            "frequency": "weekly",
            "start_date": date(2024, 3, 4),
        },
    )

    svc.generate_transaction(user_id, rt.id)

    assert account.balance == Decimal("800.00")
    assert savings.balance == Decimal("200.00")
    assert rt.next_due_date == date(2024, 3, 11)


def test_delete_keeps_generated_transactions(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template()
    txn = svc.generate_transaction(user_id, rt.id)

    svc.delete(user_id, rt.id)

    kept = db_session.get(models.Transaction, txn.id)
    assert kept is not None
    assert kept.recurring_transaction_id is None


def test_summary_normalises_to_months(db_session, user_id, make_template, system_category):
    make_template(start_date=date(2024, 3, 1))
    make_template(
        type="expense",
        amount="100",
        description="Groceries run",
        category_id=system_category("Groceries").id,
        frequency="weekly",
        start_date=date(2024, 3, 2),
    )

    summary = RecurringTransactionService(db_session).summary(user_id, today=date(2024, 3, 1), days=7)

    assert summary.active_count == 2
    assert summary.monthly_income == Decimal("3000.00")
    assert summary.monthly_expenses == Decimal("433.00")
    assert summary.monthly_net == Decimal("2567.00")
    assert len(summary.upcoming) == 2


def test_explicit_next_due_date_sets_month_anchor(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(start_date=date(2024, 1, 15), next_due_date=date(2024, 2, 1))
    assert rt.day_of_month == 1

    svc.generate_transaction(user_id, rt.id)

    assert rt.next_due_date == date(2024, 3, 1)


def test_update_amount_respects_variation_bounds(db_session, user_id, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(allow_amount_variation=True, min_amount="2500", max_amount="3500")

    with pytest.raises(ValidationFailed):
        svc.update_amount(user_id, rt.id, "4000", today=date(2024, 1, 1))
    assert rt.amount == Decimal("3000.00")

    svc.update_amount(user_id, rt.id, "3400", today=date(2024, 1, 1))
    assert rt.amount == Decimal("3400.00")


def test_future_occurrences_are_booked_as_pending(db_session, user_id, account, make_template):
    svc = RecurringTransactionService(db_session)
    rt = make_template(max_occurrences=3)

    booked = svc.generate_future_transactions(user_id, rt.id, 5)

    assert [txn.transaction_date for txn in booked] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]
    assert all(txn.is_pending for txn in booked)
    assert rt.occurrences_count == 3
    assert rt.status == models.ScheduleStatus.COMPLETED
    assert account.balance == Decimal("1000.00")
    assert svc.generate_future_transactions(user_id, rt.id, 2) == []
