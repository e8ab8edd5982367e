from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, LedgerError, ValidationFailed
from budgetbook.utils.money import money_sum, to_money

from . import schedule
from .guards import OwnershipGuard
from .transaction_service import TransactionService, check_category_type


logger = get_logger(__name__)

_NULLABLE_FIELDS = ("category_id", "payee", "end_date", "max_occurrences", "min_amount", "max_amount", "notes")


def has_ended(rt: models.RecurringTransaction) -> bool:
    """True once no further occurrence fits the end date or occurrence cap."""
    if rt.max_occurrences is not None and rt.occurrences_count >= rt.max_occurrences:
        return True
    if rt.end_date is not None and rt.next_due_date > rt.end_date:
        return True
    return False


def is_due_for_generation(rt: models.RecurringTransaction, today: date) -> bool:
    if rt.status != models.ScheduleStatus.ACTIVE or not rt.auto_generate:
        return False
    if has_ended(rt):
        return False
    return rt.next_due_date <= today + timedelta(days=rt.generate_days_ahead or 0)


def _append_note(rt: models.RecurringTransaction, label: str, reason: Optional[str], today: date) -> None:
    if not reason:
        return
    line = f"[{today:%Y-%m-%d}] {label}: {reason}"
    rt.notes = f"{rt.notes}\n{line}" if rt.notes else line


class RecurringTransactionService:
    """Templates that produce a transaction on every due date."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)
        self.transactions = TransactionService(db)

    def get(self, user_id: int, recurring_id: int) -> models.RecurringTransaction:
        return self.guard.recurring(user_id, recurring_id)

    def list_for_user(
        self,
        user_id: int,
        *,
        status: Optional[models.ScheduleStatus] = None,
    ) -> list[models.RecurringTransaction]:
        q = self.db.query(models.RecurringTransaction).filter(models.RecurringTransaction.user_id == user_id)
        if status is not None:
            q = q.filter(models.RecurringTransaction.status == status)
        return q.order_by(models.RecurringTransaction.next_due_date, models.RecurringTransaction.id).all()

    def create(self, user_id: int, payload: Any) -> models.RecurringTransaction:
        data = schemas.parse_input(schemas.RecurringCreate, payload)
        with atomic(self.db):
            self.guard.user(user_id)
            self.guard.account(user_id, data.account_id)
            if data.transfer_account_id is not None:
                self.guard.account(user_id, data.transfer_account_id, field="transfer_account_id")
            if data.category_id is not None:
                check_category_type(self.guard.category(user_id, data.category_id), data.type)
            elif data.type != models.TxnType.TRANSFER:
                raise ValidationFailed.single("category_id", "a category is required")
            self._check_bounds(data.amount, data.min_amount, data.max_amount, data.allow_amount_variation)

            next_due = data.next_due_date or schedule.first_due_date(
                data.start_date,
                data.frequency,
                day_of_month=data.day_of_month,
                day_of_week=data.day_of_week,
            )
            day_of_month = data.day_of_month
            if day_of_month is None and schedule.is_month_based(data.frequency):
                day_of_month = next_due.day
            rt = models.RecurringTransaction(
                user_id=user_id,
                account_id=data.account_id,
                category_id=data.category_id,
                transfer_account_id=data.transfer_account_id,
                type=data.type,
                amount=to_money(data.amount),
                description=data.description,
                payee=data.payee,
                frequency=data.frequency,
                frequency_interval=data.frequency_interval,
                day_of_month=day_of_month,
                day_of_week=data.day_of_week,
                start_date=data.start_date,
                end_date=data.end_date,
                next_due_date=next_due,
                max_occurrences=data.max_occurrences,
                auto_generate=data.auto_generate,
                generate_days_ahead=data.generate_days_ahead,
                generate_as_pending=data.generate_as_pending,
                allow_amount_variation=data.allow_amount_variation,
                min_amount=to_money(data.min_amount) if data.min_amount is not None else None,
                max_amount=to_money(data.max_amount) if data.max_amount is not None else None,
                notes=data.notes,
            )
            self.db.add(rt)
            self.db.flush()
        logger.info(
            "recurring_created",
            recurring_id=rt.id,
            user_id=user_id,
            frequency=rt.frequency.value,
            next_due_date=rt.next_due_date.isoformat(),
        )
        return rt

    def update(self, user_id: int, recurring_id: int, patch: Any) -> models.RecurringTransaction:
        data = schemas.parse_input(schemas.RecurringUpdate, patch)
        changes = {
            k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None or k in _NULLABLE_FIELDS
        }
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            if changes.get("category_id") is not None:
                check_category_type(self.guard.category(user_id, changes["category_id"]), rt.type)
            elif "category_id" in changes and rt.type != models.TxnType.TRANSFER:
                raise ValidationFailed.single("category_id", "a category is required")
            if changes.get("end_date") is not None and changes["end_date"] < rt.start_date:
                raise ValidationFailed.single("end_date", "end_date must not be before start_date")
            self._check_bounds(
                rt.amount,
                changes.get("min_amount", rt.min_amount),
                changes.get("max_amount", rt.max_amount),
                changes.get("allow_amount_variation", rt.allow_amount_variation),
            )
            for key, value in changes.items():
                if key in ("min_amount", "max_amount") and value is not None:
                    value = to_money(value)
                setattr(rt, key, value)
            self.db.flush()
        return rt

    def delete(self, user_id: int, recurring_id: int) -> None:
        """Remove the template; transactions it generated stay and lose the link."""
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            self.db.query(models.Transaction).filter(
                models.Transaction.recurring_transaction_id == rt.id
            ).update({models.Transaction.recurring_transaction_id: None}, synchronize_session=False)
            self.db.delete(rt)
        logger.info("recurring_deleted", recurring_id=recurring_id, user_id=user_id)

    # ---- Generation ------------------------------------------------------
    def generate_transaction(
        self,
        user_id: int,
        recurring_id: int,
        *,
        amount: Decimal | int | str | None = None,
        transaction_date: Optional[date] = None,
        now: Optional[datetime] = None,
        pending: Optional[bool] = None,
    ) -> models.Transaction:
        """Record the next occurrence and move the template to its following due date."""
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            if rt.status != models.ScheduleStatus.ACTIVE:
                raise ConsistencyError(f"recurring transaction {rt.id} is {rt.status.value}")
            if has_ended(rt):
                raise ConsistencyError(f"recurring transaction {rt.id} has no occurrences left")
            value = self._generation_amount(rt, amount)
            txn = self.transactions.create(
                user_id,
                {
                    "account_id": rt.account_id,
                    "transfer_account_id": rt.transfer_account_id,
                    "category_id": rt.category_id,
                    "type": rt.type,
                    "amount": value,
                    "description": rt.description,
                    "payee": rt.payee,
                    "transaction_date": transaction_date or rt.next_due_date,
                    "is_pending": rt.generate_as_pending if pending is None else pending,
                    "recurring_transaction_id": rt.id,
                },
            )
            rt.occurrences_count += 1
            rt.total_generated_amount = to_money(rt.total_generated_amount) + value
            rt.last_generated_at = now or models.now_local_naive()
            rt.next_due_date = schedule.advance(
                rt.next_due_date, rt.frequency, interval=rt.frequency_interval, anchor_day=rt.anchor_day
            )
            if has_ended(rt):
                rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.COMPLETED)
            self.db.flush()
        logger.info(
            "recurring_generated",
            recurring_id=rt.id,
            transaction_id=txn.id,
            amount=str(value),
            next_due_date=rt.next_due_date.isoformat(),
            status=rt.status.value,
        )
        return txn

    def generate_future_transactions(
        self,
        user_id: int,
        recurring_id: int,
        count: int,
        *,
        now: Optional[datetime] = None,
    ) -> list[models.Transaction]:
        """Book up to ``count`` upcoming occurrences as pending transactions.

        Each one advances the schedule like a single generation; booking stops
        early once the template runs out of occurrences.
        """
        if count < 1:
            raise ValidationFailed.single("count", "must be at least 1")
        created: list[models.Transaction] = []
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            for _ in range(count):
                if has_ended(rt):
                    break
                created.append(self.generate_transaction(user_id, rt.id, now=now, pending=True))
        logger.info(
            "recurring_future_generated",
            recurring_id=recurring_id,
            requested=count,
            created=len(created),
            next_due_date=rt.next_due_date.isoformat(),
        )
        return created

    def process_auto_generation(self, recurring_id: int, *, today: Optional[date] = None) -> bool:
        """Generate one due occurrence for the scheduler; never raises on a bad template."""
        today = today or models.today_local()
        rt = self.db.get(models.RecurringTransaction, recurring_id)
        if rt is None or not is_due_for_generation(rt, today):
            return False
        try:
            self.generate_transaction(rt.user_id, rt.id)
        except (LedgerError, SQLAlchemyError) as exc:
            logger.warning(
                "recurring_generation_failed",
                recurring_id=recurring_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return True

    def process_all_due(self, *, today: Optional[date] = None) -> schemas.BatchResult:
        today = today or models.today_local()
        candidates = (
            self.db.query(models.RecurringTransaction)
            .filter(
                models.RecurringTransaction.status == models.ScheduleStatus.ACTIVE,
                models.RecurringTransaction.auto_generate.is_(True),
            )
            .order_by(models.RecurringTransaction.next_due_date, models.RecurringTransaction.id)
            .all()
        )
        due_ids = [rt.id for rt in candidates if is_due_for_generation(rt, today)]
        result = schemas.BatchResult()
        for recurring_id in due_ids:
            rt = self.db.get(models.RecurringTransaction, recurring_id)
            if rt is None or not is_due_for_generation(rt, today):
                result.skipped += 1
            elif self.process_auto_generation(recurring_id, today=today):
                result.processed += 1
            else:
                result.failed += 1
                result.failed_ids.append(recurring_id)
        logger.info(
            "recurring_batch_finished",
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    # ---- Lifecycle -------------------------------------------------------
    def pause(
        self,
        user_id: int,
        recurring_id: int,
        reason: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> models.RecurringTransaction:
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.PAUSED)
            _append_note(rt, "Paused", reason, today or models.today_local())
        return rt

    def resume(self, user_id: int, recurring_id: int, *, today: Optional[date] = None) -> models.RecurringTransaction:
        """Reactivate; occurrences that fell due while paused are skipped, not generated."""
        today = today or models.today_local()
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.ACTIVE)
            rt.next_due_date, skipped = schedule.advance_past(
                rt.next_due_date,
                rt.frequency,
                today,
                interval=rt.frequency_interval,
                anchor_day=rt.anchor_day,
            )
            if has_ended(rt):
                rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.COMPLETED)
        if skipped:
            logger.info("recurring_resumed_skipping", recurring_id=recurring_id, skipped=skipped)
        return rt

    def cancel(
        self,
        user_id: int,
        recurring_id: int,
        reason: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> models.RecurringTransaction:
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.CANCELLED)
            _append_note(rt, "Cancelled", reason, today or models.today_local())
        logger.info("recurring_cancelled", recurring_id=recurring_id, user_id=user_id)
        return rt

    def skip_next(
        self,
        user_id: int,
        recurring_id: int,
        reason: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> models.RecurringTransaction:
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            if rt.status != models.ScheduleStatus.ACTIVE:
                raise ConsistencyError(f"recurring transaction {rt.id} is {rt.status.value}")
            rt.next_due_date = schedule.advance(
                rt.next_due_date, rt.frequency, interval=rt.frequency_interval, anchor_day=rt.anchor_day
            )
            _append_note(rt, "Skipped next occurrence", reason, today or models.today_local())
            if has_ended(rt):
                rt.status = schedule.transition("RecurringTransaction", rt.status, models.ScheduleStatus.COMPLETED)
        return rt

    def update_amount(
        self,
        user_id: int,
        recurring_id: int,
        new_amount: Decimal | int | str,
        *,
        update_pending: bool = True,
        today: Optional[date] = None,
    ) -> models.RecurringTransaction:
        """Change the template amount, optionally repricing pending future occurrences."""
        amount = to_money(new_amount)
        if amount <= 0:
            raise ValidationFailed.single("amount", "amount must be positive")
        today = today or models.today_local()
        with atomic(self.db):
            rt = self.guard.recurring(user_id, recurring_id, lock=True)
            self._check_bounds(amount, rt.min_amount, rt.max_amount, rt.allow_amount_variation)
            rt.amount = amount
            updated = 0
            if update_pending:
                pending = (
                    self.db.query(models.Transaction)
                    .filter(
                        models.Transaction.recurring_transaction_id == rt.id,
                        models.Transaction.is_pending.is_(True),
                        models.Transaction.transaction_date > today,
                        models.Transaction.parent_transaction_id.is_(None),
                        models.Transaction.is_split.is_(False),
                    )
                    .all()
                )
                for txn in pending:
                    if txn.transfer_direction == models.TransferDirection.IN:
                        continue
                    self.transactions.update(user_id, txn.id, {"amount": amount})
                    updated += 1
        logger.info("recurring_amount_updated", recurring_id=recurring_id, amount=str(amount), pending_updated=updated)
        return rt

    # ---- Reporting -------------------------------------------------------
    def summary(self, user_id: int, *, today: Optional[date] = None, days: int = 30) -> schemas.ScheduleSummary:
        today = today or models.today_local()
        active = self.list_for_user(user_id, status=models.ScheduleStatus.ACTIVE)
        horizon = today + timedelta(days=days)
        income = money_sum(
            schedule.monthly_equivalent(rt.amount, rt.frequency, rt.frequency_interval)
            for rt in active
            if rt.type == models.TxnType.INCOME
        )
        expenses = money_sum(
            schedule.monthly_equivalent(rt.amount, rt.frequency, rt.frequency_interval)
            for rt in active
            if rt.type == models.TxnType.EXPENSE
        )
        upcoming = [
            (rt.id, rt.next_due_date, to_money(rt.amount))
            for rt in active
            if rt.next_due_date <= horizon and not has_ended(rt)
        ]
        return schemas.ScheduleSummary(
            active_count=len(active),
            monthly_income=income,
            monthly_expenses=expenses,
            upcoming=upcoming,
        )

    # ---- Helpers ---------------------------------------------------------
    @staticmethod
    def _check_bounds(
        amount: Decimal,
        min_amount: Optional[Decimal],
        max_amount: Optional[Decimal],
        allow_variation: bool,
    ) -> None:
        if not allow_variation:
            return
        if min_amount is not None and max_amount is not None and to_money(min_amount) > to_money(max_amount):
            raise ValidationFailed.single("min_amount", "min_amount must not exceed max_amount")
        if min_amount is not None and to_money(amount) < to_money(min_amount):
            raise ValidationFailed.single("amount", "amount is below min_amount")
        if max_amount is not None and to_money(amount) > to_money(max_amount):
            raise ValidationFailed.single("amount", "amount is above max_amount")

    @staticmethod
    def _generation_amount(rt: models.RecurringTransaction, amount: Decimal | int | str | None) -> Decimal:
        if amount is None:
            return to_money(rt.amount)
        value = to_money(amount)
        if value == to_money(rt.amount):
            return value
        if not rt.allow_amount_variation:
            raise ValidationFailed.single("amount", "this template does not allow amount variation")
        if value <= 0:
            raise ValidationFailed.single("amount", "amount must be positive")
        if rt.min_amount is not None and value < to_money(rt.min_amount):
            raise ValidationFailed.single("amount", f"amount is below the minimum of {to_money(rt.min_amount)}")
        if rt.max_amount is not None and value > to_money(rt.max_amount):
            raise ValidationFailed.single("amount", f"amount is above the maximum of {to_money(rt.max_amount)}")
        return value
