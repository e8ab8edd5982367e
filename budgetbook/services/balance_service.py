from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.core.logging import get_logger
from budgetbook.utils.money import to_money


logger = get_logger(__name__)


@dataclass(frozen=True)
class SpendingEffect:
    user_id: int
    category_id: int
    on: date
    amount: Decimal


@dataclass(frozen=True)
class LedgerEffect:
    """Everything one transaction row contributes to stored totals.

    Captured before a change so the exact old effect can be reversed even
    after the row's fields have been overwritten.
    """

    balances: tuple[tuple[int, Decimal], ...] = ()
    spending: Optional[SpendingEffect] = None


def capture_effect(txn: models.Transaction) -> LedgerEffect:
    """Snapshot the balance and budget contribution of ``txn``.

    Pending rows contribute nothing. Split children never move a balance (the
    parent already did); split parents hand their budget effect to the
    children.
    """
    if txn.is_pending:
        return LedgerEffect()
    balances: tuple[tuple[int, Decimal], ...] = ()
    if not txn.is_split_child:
        balances = ((txn.account_id, txn.signed_amount),)
    spending = None
    if txn.type == models.TxnType.EXPENSE and not txn.is_split:
        spending = SpendingEffect(
            user_id=txn.user_id,
            category_id=txn.category_id,
            on=txn.transaction_date,
            amount=to_money(txn.amount),
        )
    return LedgerEffect(balances=balances, spending=spending)


class TransactionBalanceService:
    """Apply and reverse ledger effects on accounts and budget allocations."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def apply(self, effect: LedgerEffect) -> None:
        self._apply(effect, 1)

    def revert(self, effect: LedgerEffect) -> None:
        self._apply(effect, -1)

    def apply_all(self, effects: Iterable[LedgerEffect]) -> None:
        for effect in effects:
            self.apply(effect)

    def revert_all(self, effects: Iterable[LedgerEffect]) -> None:
        for effect in effects:
            self.revert(effect)

    def _apply(self, effect: LedgerEffect, sign: int) -> None:
        for account_id, delta in effect.balances:
            self._apply_delta(account_id, delta * sign)
        if effect.spending is not None:
            self._apply_spending(effect.spending, effect.spending.amount * sign)

    def _apply_delta(self, account_id: int, delta: Decimal) -> None:
        if delta == 0:
            return
        account = (
            self.db.query(models.Account)
            .filter(models.Account.id == account_id)
            .with_for_update()
            .first()
        )
        if not account:
            return
        account.balance = to_money(account.balance) + to_money(delta)
        account.balance_updated_at = models.now_local_naive()

    def _apply_spending(self, spending: SpendingEffect, delta: Decimal) -> None:
        allocation = find_active_allocation(self.db, spending.user_id, spending.category_id, spending.on, lock=True)
        if allocation is None:
            return
        allocation.spent_amount = to_money(allocation.spent_amount) + to_money(delta)
        allocation.recompute_derived()
        allocation.last_calculated_at = models.now_local_naive()
        logger.debug(
            "budget_spending_applied",
            allocation_id=allocation.id,
            category_id=spending.category_id,
            delta=str(delta),
            spent=str(allocation.spent_amount),
        )


def find_active_budget(db: Session, user_id: int, on: date) -> models.Budget | None:
    return (
        db.query(models.Budget)
        .filter(
            models.Budget.user_id == user_id,
            models.Budget.status == models.BudgetStatus.ACTIVE,
            models.Budget.start_date <= on,
            models.Budget.end_date >= on,
        )
        .order_by(models.Budget.start_date, models.Budget.id)
        .first()
    )


def find_active_allocation(
    db: Session,
    user_id: int,
    category_id: int,
    on: date,
    *,
    lock: bool = False,
) -> models.BudgetCategory | None:
    budget = find_active_budget(db, user_id, on)
    if budget is None:
        return None
    q = db.query(models.BudgetCategory).filter(
        models.BudgetCategory.budget_id == budget.id,
        models.BudgetCategory.category_id == category_id,
    )
    if lock:
        q = q.with_for_update()
    return q.first()
