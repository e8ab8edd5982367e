from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, LedgerError, ValidationFailed
from budgetbook.seed import get_system_category
from budgetbook.utils.money import format_money, money_sum, to_money

from . import schedule
from .guards import OwnershipGuard
from .transaction_service import TransactionService, check_category_type


logger = get_logger(__name__)

BILL_CATEGORY_NAME = "Bills & Utilities"
DUE_SOON_DAYS = 7

_NULLABLE_FIELDS = (
    "account_id",
    "category_id",
    "payee",
    "minimum_amount",
    "maximum_amount",
    "end_date",
    "second_reminder_days_before",
    "auto_pay_amount",
    "reference_number",
    "notes",
)


def should_send_first_reminder(bill: models.Bill, today: date) -> bool:
    if not bill.reminder_enabled or bill.status != models.ScheduleStatus.ACTIVE:
        return False
    if bill.first_reminder_sent_for == bill.next_due_date:
        return False
    remind_on = bill.next_due_date - timedelta(days=bill.reminder_days_before)
    return remind_on <= today <= bill.next_due_date


def should_send_second_reminder(bill: models.Bill, today: date) -> bool:
    if not bill.reminder_enabled or bill.status != models.ScheduleStatus.ACTIVE:
        return False
    if bill.second_reminder_days_before is None or bill.second_reminder_sent_for == bill.next_due_date:
        return False
    remind_on = bill.next_due_date - timedelta(days=bill.second_reminder_days_before)
    return remind_on <= today <= bill.next_due_date


def display_amount(bill: models.Bill) -> str:
    if bill.is_fixed_amount:
        return format_money(bill.amount)
    if bill.minimum_amount and bill.maximum_amount:
        return f"{format_money(bill.minimum_amount)} - {format_money(bill.maximum_amount)}"
    return f"~{format_money(bill.estimated_amount)}"


def reminder_message(bill: models.Bill, today: date, *, second: bool = False) -> str:
    prefix = "Final reminder" if second else "Reminder"
    days = bill.days_until_due(today)
    if days == 0:
        when = "is due today!"
    elif days == 1:
        when = "is due tomorrow."
    else:
        when = f"is due in {days} days."
    return f"{prefix}: {bill.name} bill ({display_amount(bill)}) {when}"


def monthly_amount(bill: models.Bill) -> Decimal:
    return schedule.monthly_equivalent(bill.estimated_amount, bill.frequency, bill.frequency_interval)


def _append_note(bill: models.Bill, line: str, today: date) -> None:
    entry = f"[{today:%Y-%m-%d}] {line}"
    bill.notes = f"{bill.notes}\n{entry}" if bill.notes else entry


class BillService:
    """Bills with a due date, payment history, reminders and optional auto pay."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)
        self.transactions = TransactionService(db)

    def get(self, user_id: int, bill_id: int) -> models.Bill:
        return self.guard.bill(user_id, bill_id)

    def list_for_user(self, user_id: int, *, status: Optional[models.ScheduleStatus] = None) -> list[models.Bill]:
        q = self.db.query(models.Bill).filter(models.Bill.user_id == user_id)
        if status is not None:
            q = q.filter(models.Bill.status == status)
        return q.order_by(models.Bill.next_due_date, models.Bill.id).all()

    def create(self, user_id: int, payload: Any) -> models.Bill:
        data = schemas.parse_input(schemas.BillCreate, payload)
        with atomic(self.db):
            self.guard.user(user_id)
            if data.account_id is not None:
                self.guard.account(user_id, data.account_id)
            if data.category_id is not None:
                check_category_type(self.guard.category(user_id, data.category_id), models.TxnType.EXPENSE)
            self._check_range(data.minimum_amount, data.maximum_amount)
            self._ensure_unique_name(user_id, data.name)
            bill = models.Bill(
                user_id=user_id,
                account_id=data.account_id,
                category_id=data.category_id,
                name=data.name,
                payee=data.payee,
                amount=to_money(data.amount),
                is_fixed_amount=data.is_fixed_amount,
                minimum_amount=to_money(data.minimum_amount) if data.minimum_amount is not None else None,
                maximum_amount=to_money(data.maximum_amount) if data.maximum_amount is not None else None,
                frequency=data.frequency,
                frequency_interval=data.frequency_interval,
                due_day=data.due_day or data.next_due_date.day,
                next_due_date=data.next_due_date,
                end_date=data.end_date,
                reminder_enabled=data.reminder_enabled,
                reminder_days_before=data.reminder_days_before,
                second_reminder_days_before=data.second_reminder_days_before,
                auto_pay_enabled=data.auto_pay_enabled,
                auto_pay_amount=to_money(data.auto_pay_amount) if data.auto_pay_amount is not None else None,
                reference_number=data.reference_number,
                notes=data.notes,
            )
            self.db.add(bill)
            self.db.flush()
        logger.info("bill_created", bill_id=bill.id, user_id=user_id, next_due_date=bill.next_due_date.isoformat())
        return bill

    def update(self, user_id: int, bill_id: int, patch: Any) -> models.Bill:
        data = schemas.parse_input(schemas.BillUpdate, patch)
        changes = {
            k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None or k in _NULLABLE_FIELDS
        }
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            if changes.get("account_id") is not None:
                self.guard.account(user_id, changes["account_id"])
            if changes.get("category_id") is not None:
                check_category_type(self.guard.category(user_id, changes["category_id"]), models.TxnType.EXPENSE)
            if "name" in changes and changes["name"] != bill.name:
                self._ensure_unique_name(user_id, changes["name"])
            self._check_range(
                changes.get("minimum_amount", bill.minimum_amount),
                changes.get("maximum_amount", bill.maximum_amount),
            )
            auto_pay = changes.get("auto_pay_enabled", bill.auto_pay_enabled)
            if auto_pay and changes.get("account_id", bill.account_id) is None:
                raise ValidationFailed.single("auto_pay_enabled", "auto pay requires an account")
            first = changes.get("reminder_days_before", bill.reminder_days_before)
            second = changes.get("second_reminder_days_before", bill.second_reminder_days_before)
            if second is not None and second >= first:
                raise ValidationFailed.single("second_reminder_days_before", "second reminder must come after the first one")
            for key, value in changes.items():
                if key in ("minimum_amount", "maximum_amount", "auto_pay_amount") and value is not None:
                    value = to_money(value)
                setattr(bill, key, value)
            self.db.flush()
        return bill

    def delete(self, user_id: int, bill_id: int) -> None:
        """Remove the bill; recorded payments stay and lose the link."""
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            self.db.query(models.Transaction).filter(models.Transaction.bill_id == bill.id).update(
                {models.Transaction.bill_id: None}, synchronize_session=False
            )
            self.db.delete(bill)
        logger.info("bill_deleted", bill_id=bill_id, user_id=user_id)

    # ---- Payments --------------------------------------------------------
    def mark_as_paid(
        self,
        user_id: int,
        bill_id: int,
        amount: Decimal | int | str | None = None,
        paid_date: Optional[date] = None,
    ) -> models.Bill:
        """Record a payment and move the bill to its next due date.

        When the bill is tied to an account the payment is also booked as an
        expense transaction on that account.
        """
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            if bill.status != models.ScheduleStatus.ACTIVE:
                raise ConsistencyError(f"bill {bill.id} is {bill.status.value}")
            value = to_money(amount) if amount is not None else bill.estimated_amount
            if value <= 0:
                raise ValidationFailed.single("amount", "amount must be positive")
            paid_on = paid_date or models.today_local()

            if bill.account_id is not None:
                category_id = bill.category_id
                if category_id is None:
                    category_id = get_system_category(self.db, BILL_CATEGORY_NAME, models.CategoryType.EXPENSE).id
                self.transactions.create(
                    user_id,
                    {
                        "account_id": bill.account_id,
                        "category_id": category_id,
                        "type": models.TxnType.EXPENSE,
                        "amount": value,
                        "description": f"Payment: {bill.name}",
                        "payee": bill.payee,
                        "reference_number": bill.reference_number,
                        "transaction_date": paid_on,
                        "notes": f"Bill payment - {bill.frequency.value.replace('_', ' ')}",
                        "bill_id": bill.id,
                    },
                )

            bill.last_paid_date = paid_on
            bill.last_paid_amount = value
            bill.total_paid = to_money(bill.total_paid) + value
            bill.payment_count += 1
            if not bill.is_fixed_amount:
                bill.average_amount = to_money(bill.total_paid / bill.payment_count)
            bill.missed_payments = 0
            self._advance(bill)
            self.db.flush()
        logger.info("bill_paid", bill_id=bill.id, amount=str(value), next_due_date=bill.next_due_date.isoformat())
        return bill

    def mark_as_missed(self, user_id: int, bill_id: int) -> models.Bill:
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            if bill.status != models.ScheduleStatus.ACTIVE:
                raise ConsistencyError(f"bill {bill.id} is {bill.status.value}")
            bill.missed_payments += 1
            self._advance(bill)
        logger.warning("bill_missed", bill_id=bill.id, missed_payments=bill.missed_payments)
        return bill

    def process_auto_pay(self, bill_id: int, *, today: Optional[date] = None) -> bool:
        """Pay a due auto-pay bill; returns False instead of raising when it cannot."""
        today = today or models.today_local()
        bill = self.db.get(models.Bill, bill_id)
        if bill is None or not self._auto_pay_due(bill, today):
            return False
        amount = to_money(bill.auto_pay_amount) if bill.auto_pay_amount is not None else bill.estimated_amount
        account = bill.account
        if account is None:
            return False
        if account.type != models.AccountType.CREDIT and to_money(account.balance) < amount:
            logger.warning(
                "bill_autopay_insufficient_funds",
                bill_id=bill.id,
                account_id=account.id,
                balance=str(account.balance),
                amount=str(amount),
            )
            return False
        try:
            with atomic(self.db):
                self.mark_as_paid(bill.user_id, bill.id, amount, paid_date=today)
                _append_note(bill, f"Auto-paid: {format_money(amount)}", today)
        except (LedgerError, SQLAlchemyError) as exc:
            logger.warning("bill_autopay_failed", bill_id=bill_id, error=str(exc), error_type=type(exc).__name__)
            return False
        return True

    def process_all_auto_pay(self, *, today: Optional[date] = None) -> schemas.BatchResult:
        today = today or models.today_local()
        bill_ids = [
            row.id
            for row in self.db.query(models.Bill.id)
            .filter(
                models.Bill.status == models.ScheduleStatus.ACTIVE,
                models.Bill.auto_pay_enabled.is_(True),
                models.Bill.next_due_date <= today,
            )
            .order_by(models.Bill.next_due_date, models.Bill.id)
            .all()
        ]
        result = schemas.BatchResult()
        for bill_id in bill_ids:
            if self.process_auto_pay(bill_id, today=today):
                result.processed += 1
            else:
                result.failed += 1
                result.failed_ids.append(bill_id)
        logger.info("bill_autopay_batch_finished", processed=result.processed, failed=result.failed)
        return result

    # ---- Reminders -------------------------------------------------------
    def due_reminders(self, *, today: Optional[date] = None) -> list[schemas.ReminderNotice]:
        """Collect the reminders to send today and mark them as sent.

        Delivery is up to the caller. A bill owing both reminders only gets
        the second one.
        """
        today = today or models.today_local()
        notices: list[schemas.ReminderNotice] = []
        with atomic(self.db):
            bills = (
                self.db.query(models.Bill)
                .filter(
                    models.Bill.status == models.ScheduleStatus.ACTIVE,
                    models.Bill.reminder_enabled.is_(True),
                    models.Bill.next_due_date >= today,
                )
                .order_by(models.Bill.next_due_date, models.Bill.id)
                .all()
            )
            for bill in bills:
                if should_send_second_reminder(bill, today):
                    stage, second = "second", True
                elif should_send_first_reminder(bill, today):
                    stage, second = "first", False
                else:
                    continue
                notices.append(
                    schemas.ReminderNotice(
                        bill_id=bill.id,
                        user_id=bill.user_id,
                        stage=stage,
                        due_date=bill.next_due_date,
                        amount=bill.estimated_amount,
                        message=reminder_message(bill, today, second=second),
                    )
                )
                bill.first_reminder_sent_for = bill.next_due_date
                if second:
                    bill.second_reminder_sent_for = bill.next_due_date
        if notices:
            logger.info("bill_reminders_collected", count=len(notices))
        return notices

    # ---- Lifecycle -------------------------------------------------------
    def pause(self, user_id: int, bill_id: int, reason: Optional[str] = None, *, today: Optional[date] = None) -> models.Bill:
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            bill.status = schedule.transition("Bill", bill.status, models.ScheduleStatus.PAUSED)
            if reason:
                _append_note(bill, f"Paused: {reason}", today or models.today_local())
        return bill

    def resume(self, user_id: int, bill_id: int, *, today: Optional[date] = None) -> models.Bill:
        today = today or models.today_local()
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            bill.status = schedule.transition("Bill", bill.status, models.ScheduleStatus.ACTIVE)
            bill.next_due_date, _ = schedule.advance_past(
                bill.next_due_date,
                bill.frequency,
                today,
                interval=bill.frequency_interval,
                anchor_day=bill.anchor_day,
            )
            if bill.end_date is not None and bill.next_due_date > bill.end_date:
                bill.status = schedule.transition("Bill", bill.status, models.ScheduleStatus.COMPLETED)
        return bill

    def cancel(self, user_id: int, bill_id: int, reason: Optional[str] = None, *, today: Optional[date] = None) -> models.Bill:
        with atomic(self.db):
            bill = self.guard.bill(user_id, bill_id, lock=True)
            bill.status = schedule.transition("Bill", bill.status, models.ScheduleStatus.CANCELLED)
            if reason:
                _append_note(bill, f"Cancelled: {reason}", today or models.today_local())
        logger.info("bill_cancelled", bill_id=bill_id, user_id=user_id)
        return bill

    # ---- Reporting -------------------------------------------------------
    def summary(self, user_id: int, *, today: Optional[date] = None) -> schemas.BillSummary:
        today = today or models.today_local()
        active = self.list_for_user(user_id, status=models.ScheduleStatus.ACTIVE)
        return schemas.BillSummary(
            active_count=len(active),
            monthly_total=money_sum(monthly_amount(bill) for bill in active),
            due_soon=[bill.id for bill in active if 0 <= bill.days_until_due(today) <= DUE_SOON_DAYS],
            overdue=[bill.id for bill in active if bill.is_overdue(today)],
            auto_pay_count=sum(1 for bill in active if bill.auto_pay_enabled),
        )

    # ---- Helpers ---------------------------------------------------------
    @staticmethod
    def _auto_pay_due(bill: models.Bill, today: date) -> bool:
        return (
            bill.auto_pay_enabled
            and bill.status == models.ScheduleStatus.ACTIVE
            and bill.account_id is not None
            and bill.next_due_date <= today
        )

    @staticmethod
    def _advance(bill: models.Bill) -> None:
        bill.next_due_date = schedule.advance(
            bill.next_due_date, bill.frequency, interval=bill.frequency_interval, anchor_day=bill.anchor_day
        )
        if bill.end_date is not None and bill.next_due_date > bill.end_date:
            bill.status = schedule.transition("Bill", bill.status, models.ScheduleStatus.COMPLETED)

    @staticmethod
    def _check_range(minimum: Optional[Decimal], maximum: Optional[Decimal]) -> None:
        if minimum is not None and maximum is not None and to_money(minimum) > to_money(maximum):
            raise ValidationFailed.single("minimum_amount", "minimum_amount must not exceed maximum_amount")

    def _ensure_unique_name(self, user_id: int, name: str) -> None:
        exists = self.db.query(models.Bill.id).filter(models.Bill.user_id == user_id, models.Bill.name == name).first()
        if exists:
            raise ValidationFailed.single("name", f"a bill named {name!r} already exists")
