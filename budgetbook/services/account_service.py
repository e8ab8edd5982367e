from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.config import settings
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, ValidationFailed
from budgetbook.utils.money import TOLERANCE, ZERO, to_money

from .guards import OwnershipGuard


logger = get_logger(__name__)


class AccountService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)

    def get_all(self, *, user_id: int, include_archived: bool = False) -> list[models.Account]:
        q = self.db.query(models.Account).filter(models.Account.user_id == user_id)
        if not include_archived:
            q = q.filter(models.Account.deleted_at.is_(None))
        return q.order_by(models.Account.id).all()

    def get_by_id(self, user_id: int, account_id: int) -> models.Account:
        return self.guard.account(user_id, account_id, allow_deleted=True)

    def create(self, user_id: int, payload: Any) -> models.Account:
        data = schemas.parse_input(schemas.AccountCreate, payload)
        with atomic(self.db):
            user = self.guard.user(user_id)
            self._ensure_unique_name(user_id, data.name)
            currency = data.currency or (user.profile.base_currency if user.profile else None) or settings.DEFAULT_CURRENCY
            initial = to_money(data.initial_balance)
            row = models.Account(
                user_id=user_id,
                name=data.name,
                type=data.type,
                institution=data.institution,
                balance=initial,
                initial_balance=initial,
                credit_limit=to_money(data.credit_limit) if data.credit_limit is not None else None,
                interest_rate=data.interest_rate,
                currency=currency.upper(),
                is_active=data.is_active,
                include_in_net_worth=data.include_in_net_worth,
                notes=data.notes,
                balance_updated_at=models.now_local_naive(),
            )
            self.db.add(row)
            self.db.flush()
        logger.info("account_created", account_id=row.id, user_id=user_id, type=row.type.value)
        return row

    def update(self, user_id: int, account_id: int, patch: Any) -> models.Account:
        """Edit account details.

        ``balance`` is not editable. Changing ``initial_balance`` shifts the
        balance by the same delta so the balance invariant keeps holding.
        """
        data = schemas.parse_input(schemas.AccountUpdate, patch)
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.db):
            row = self.guard.account(user_id, account_id, lock=True)
            if "name" in changes and changes["name"] != row.name:
                self._ensure_unique_name(user_id, changes["name"])
            if changes.get("credit_limit") is not None and row.type != models.AccountType.CREDIT:
                raise ValidationFailed.single("credit_limit", "only credit accounts carry a credit limit")
            if "initial_balance" in changes:
                new_initial = to_money(changes.pop("initial_balance"))
                delta = new_initial - to_money(row.initial_balance)
                row.initial_balance = new_initial
                row.balance = to_money(row.balance) + delta
                row.balance_updated_at = models.now_local_naive()
            for key, value in changes.items():
                if key in ("is_active", "include_in_net_worth") and value is None:
                    continue
                setattr(row, key, value)
            self.db.flush()
        return row

    def archive(self, user_id: int, account_id: int, *, now: Optional[datetime] = None) -> models.Account:
        """Soft-delete: the row and its history stay, the account stops taking new entries."""
        with atomic(self.db):
            row = self.guard.account(user_id, account_id, lock=True, allow_deleted=True)
            if row.deleted_at is None:
                row.deleted_at = now or models.now_local_naive()
                row.is_active = False
        logger.info("account_archived", account_id=account_id, user_id=user_id)
        return row

    def restore(self, user_id: int, account_id: int) -> models.Account:
        with atomic(self.db):
            row = self.guard.account(user_id, account_id, lock=True, allow_deleted=True)
            row.deleted_at = None
            row.is_active = True
        return row

    def delete(self, user_id: int, account_id: int) -> None:
        """Hard delete, refused while anything still references the account."""
        with atomic(self.db):
            row = self.guard.account(user_id, account_id, lock=True, allow_deleted=True)
            if self._is_referenced(row.id):
                raise ConsistencyError(
                    f"account {account_id} is referenced by transactions or schedules; archive it instead"
                )
            self.db.delete(row)
        logger.info("account_deleted", account_id=account_id, user_id=user_id)

    # ---- Reconciliation --------------------------------------------------
    def compute_balance(self, account: models.Account) -> Decimal:
        """initial + income - expense - transfers out + transfers in, cleared rows only."""
        rows = (
            self.db.query(models.Transaction)
            .filter(
                models.Transaction.account_id == account.id,
                models.Transaction.is_pending.is_(False),
                models.Transaction.parent_transaction_id.is_(None),
            )
            .all()
        )
        total = to_money(account.initial_balance)
        for txn in rows:
            total += txn.signed_amount
        return to_money(total)

    def recalculate_balance(
        self,
        user_id: int,
        account_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> schemas.ReconciliationResult:
        with atomic(self.db):
            account = self.guard.account(user_id, account_id, lock=True, allow_deleted=True)
            self.db.flush()
            stored = to_money(account.balance)
            computed = self.compute_balance(account)
            corrected = abs(stored - computed) > TOLERANCE
            if corrected:
                account.balance = computed
                account.balance_updated_at = now or models.now_local_naive()
        if corrected:
            logger.warning(
                "balance_corrected",
                account_id=account_id,
                stored=str(stored),
                computed=str(computed),
            )
        return schemas.ReconciliationResult(
            account_id=account_id,
            stored_balance=stored,
            computed_balance=computed,
            corrected=corrected,
        )

    def balance_history(
        self, user_id: int, account_id: int, start: date, end: date
    ) -> list[schemas.BalanceSnapshot]:
        """Closing balance for every day from ``start`` to ``end``, cleared rows only."""
        if end < start:
            raise ValidationFailed.single("end", "must not be before start")
        account = self.guard.account(user_id, account_id, allow_deleted=True)
        rows = (
            self.db.query(models.Transaction)
            .filter(
                models.Transaction.account_id == account.id,
                models.Transaction.is_pending.is_(False),
                models.Transaction.parent_transaction_id.is_(None),
                models.Transaction.transaction_date <= end,
            )
            .all()
        )
        running = to_money(account.initial_balance)
        by_day: dict[date, list[models.Transaction]] = defaultdict(list)
        for txn in rows:
            if txn.transaction_date < start:
                running += txn.signed_amount
            else:
                by_day[txn.transaction_date].append(txn)

        history = []
        day = start
        while day <= end:
            booked = by_day.get(day, [])
            running += sum((txn.signed_amount for txn in booked), ZERO)
            history.append(
                schemas.BalanceSnapshot(day=day, balance=to_money(running), transaction_count=len(booked))
            )
            day += timedelta(days=1)
        return history

    def recalculate_all(self, user_id: int) -> list[schemas.ReconciliationResult]:
        return [
            self.recalculate_balance(user_id, account.id)
            for account in self.get_all(user_id=user_id, include_archived=True)
        ]

    # ---- Derived metrics -------------------------------------------------
    def low_balance_threshold(self, user_id: int) -> Decimal:
        profile = self.db.query(models.UserProfile).filter(models.UserProfile.user_id == user_id).first()
        if profile is not None and profile.low_balance_threshold is not None:
            return to_money(profile.low_balance_threshold)
        return to_money(settings.LOW_BALANCE_THRESHOLD)

    def has_low_balance(self, account: models.Account, threshold: Optional[Decimal] = None) -> bool:
        if not account.is_asset or account.type == models.AccountType.CREDIT:
            return False
        limit = to_money(threshold) if threshold is not None else self.low_balance_threshold(account.user_id)
        return to_money(account.balance) < limit

    def net_worth(self, user_id: int) -> Decimal:
        total = ZERO
        for account in self.get_all(user_id=user_id):
            if account.is_active:
                total += account.net_worth_contribution
        return to_money(total)

    # ---- Helpers ---------------------------------------------------------
    def _ensure_unique_name(self, user_id: int, name: str) -> None:
        exists = (
            self.db.query(models.Account.id)
            .filter(models.Account.user_id == user_id, models.Account.name == name)
            .first()
        )
        if exists:
            raise ValidationFailed.single("name", f"an account named {name!r} already exists")

    def _is_referenced(self, account_id: int) -> bool:
        checks = (
            self.db.query(models.Transaction.id).filter(
                or_(
                    models.Transaction.account_id == account_id,
                    models.Transaction.transfer_account_id == account_id,
                )
            ),
            self.db.query(models.RecurringTransaction.id).filter(
                or_(
                    models.RecurringTransaction.account_id == account_id,
                    models.RecurringTransaction.transfer_account_id == account_id,
                )
            ),
            self.db.query(models.Bill.id).filter(models.Bill.account_id == account_id),
            self.db.query(models.Goal.id).filter(
                or_(models.Goal.account_id == account_id, models.Goal.funding_account_id == account_id)
            ),
        )
        return any(q.first() is not None for q in checks)
