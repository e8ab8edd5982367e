from __future__ import annotations

from typing import TypeVar

from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.errors import AccessDenied, NotFoundError, ValidationFailed


RowT = TypeVar("RowT")


class OwnershipGuard:
    """Load rows on behalf of an actor, refusing anything they do not own.

    Missing rows raise ``NotFoundError``; rows owned by someone else raise
    ``AccessDenied``. ``lock=True`` loads with ``SELECT ... FOR UPDATE``.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _load(self, model: type[RowT], row_id: int, *, lock: bool = False) -> RowT:
        q = self.db.query(model).filter(model.id == row_id)  # type: ignore[attr-defined]
        if lock:
            q = q.with_for_update()
        row = q.first()
        if row is None:
            raise NotFoundError(model.__name__, row_id)
        return row

    def _owned(self, model: type[RowT], actor_id: int, row_id: int, *, lock: bool = False) -> RowT:
        row = self._load(model, row_id, lock=lock)
        if row.user_id != actor_id:  # type: ignore[attr-defined]
            raise AccessDenied(model.__name__, row_id)
        return row

    def user(self, user_id: int) -> models.User:
        return self._load(models.User, user_id)

    def account(
        self,
        actor_id: int,
        account_id: int,
        *,
        lock: bool = False,
        field: str = "account_id",
        allow_deleted: bool = False,
    ) -> models.Account:
        account = self._owned(models.Account, actor_id, account_id, lock=lock)
        if account.is_deleted and not allow_deleted:
            raise ValidationFailed.single(field, f"account {account_id} is archived")
        return account

    def category(self, actor_id: int, category_id: int) -> models.Category:
        category = self._load(models.Category, category_id)
        if not category.is_visible_to(actor_id):
            raise AccessDenied("Category", category_id)
        return category

    def mutable_category(self, actor_id: int, category_id: int) -> models.Category:
        category = self.category(actor_id, category_id)
        if category.is_system:
            raise AccessDenied("Category", category_id, "system categories cannot be changed")
        return category

    def transaction(self, actor_id: int, txn_id: int, *, lock: bool = False) -> models.Transaction:
        return self._owned(models.Transaction, actor_id, txn_id, lock=lock)

    def budget(self, actor_id: int, budget_id: int, *, lock: bool = False) -> models.Budget:
        return self._owned(models.Budget, actor_id, budget_id, lock=lock)

    def allocation(self, actor_id: int, allocation_id: int, *, lock: bool = False) -> models.BudgetCategory:
        allocation = self._load(models.BudgetCategory, allocation_id, lock=lock)
        if allocation.budget.user_id != actor_id:
            raise AccessDenied("BudgetCategory", allocation_id)
        return allocation

    def recurring(self, actor_id: int, recurring_id: int, *, lock: bool = False) -> models.RecurringTransaction:
        return self._owned(models.RecurringTransaction, actor_id, recurring_id, lock=lock)

    def bill(self, actor_id: int, bill_id: int, *, lock: bool = False) -> models.Bill:
        return self._owned(models.Bill, actor_id, bill_id, lock=lock)

    def goal(self, actor_id: int, goal_id: int, *, lock: bool = False) -> models.Goal:
        return self._owned(models.Goal, actor_id, goal_id, lock=lock)
