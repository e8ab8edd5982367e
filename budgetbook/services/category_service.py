from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, ValidationFailed
from budgetbook.seed import ensure_system_categories

from .budget_service import BudgetService
from .guards import OwnershipGuard


logger = get_logger(__name__)


@dataclass
class CategoryNode:
    category: models.Category
    children: list[models.Category] = field(default_factory=list)


class CategoryService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)

    def ensure_system_categories(self) -> list[models.Category]:
        with atomic(self.db):
            rows = ensure_system_categories(self.db)
        return rows

    def visible_to(
        self,
        user_id: int,
        *,
        type_: Optional[models.CategoryType] = None,
        include_inactive: bool = False,
    ) -> list[models.Category]:
        q = self.db.query(models.Category).filter(
            or_(models.Category.user_id.is_(None), models.Category.user_id == user_id)
        )
        if type_ is not None:
            q = q.filter(models.Category.type == type_)
        if not include_inactive:
            q = q.filter(models.Category.is_active.is_(True))
        return q.order_by(models.Category.sort_order, models.Category.name, models.Category.id).all()

    def hierarchy(self, user_id: int, *, type_: Optional[models.CategoryType] = None) -> list[CategoryNode]:
        rows = self.visible_to(user_id, type_=type_)
        nodes = {row.id: CategoryNode(row) for row in rows if row.parent_id is None}
        for row in rows:
            if row.parent_id is not None and row.parent_id in nodes:
                nodes[row.parent_id].children.append(row)
        return list(nodes.values())

    def create(self, user_id: int, payload: Any) -> models.Category:
        data = schemas.parse_input(schemas.CategoryCreate, payload)
        with atomic(self.db):
            self.guard.user(user_id)
            if data.parent_id is not None:
                parent = self.guard.category(user_id, data.parent_id)
                self._check_parent(parent, data.type)
            self._ensure_unique_name(user_id, data.name, data.parent_id)
            row = models.Category(
                user_id=user_id,
                parent_id=data.parent_id,
                name=data.name,
                type=data.type,
                is_budgetable=data.is_budgetable,
                sort_order=data.sort_order,
            )
            self.db.add(row)
            self.db.flush()
        logger.info("category_created", category_id=row.id, user_id=user_id, type=row.type.value)
        return row

    def update(self, user_id: int, category_id: int, patch: Any) -> models.Category:
        data = schemas.parse_input(schemas.CategoryUpdate, patch)
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.db):
            row = self.guard.mutable_category(user_id, category_id)
            new_type = changes.get("type") or row.type
            if new_type != row.type:
                if self._is_referenced(row.id):
                    raise ConsistencyError(
                        f"category {category_id} is in use; its type must keep matching existing entries"
                    )
                if row.children:
                    raise ConsistencyError(f"category {category_id} has subcategories of type {row.type.value}")
            if "parent_id" in changes:
                parent_id = changes["parent_id"]
                if parent_id is not None:
                    if parent_id == row.id:
                        raise ValidationFailed.single("parent_id", "a category cannot be its own parent")
                    if row.children:
                        raise ValidationFailed.single("parent_id", "categories nest at most two levels deep")
                    self._check_parent(self.guard.category(user_id, parent_id), new_type)
            elif row.parent is not None and new_type != row.parent.type:
                raise ValidationFailed.single("type", "a subcategory must have its parent's type")
            if "name" in changes and changes["name"] != row.name:
                self._ensure_unique_name(user_id, changes["name"], changes.get("parent_id", row.parent_id))
            for key, value in changes.items():
                if key in ("type", "name", "is_active", "is_budgetable") and value is None:
                    continue
                setattr(row, key, value)
            self.db.flush()
        return row

    def delete(self, user_id: int, category_id: int, *, reassign_to: Optional[int] = None) -> None:
        """Delete a user category, moving its entries to ``reassign_to`` first.

        Without a target the delete is refused while anything references the
        category. Subcategories are promoted to the top level.
        """
        with atomic(self.db):
            row = self.guard.mutable_category(user_id, category_id)
            if reassign_to is not None:
                if reassign_to == row.id:
                    raise ValidationFailed.single("reassign_to", "cannot reassign a category to itself")
                target = self.guard.category(user_id, reassign_to)
                if target.type != row.type:
                    raise ValidationFailed.single("reassign_to", "target category must have the same type")
                self._reassign(user_id, row, target)
            elif self._is_referenced(row.id):
                raise ConsistencyError(f"category {category_id} is in use; pass reassign_to to move its entries")
            for child in list(row.children):
                child.parent_id = None
            self.db.flush()
            self.db.delete(row)
            self.db.flush()
        logger.info("category_deleted", category_id=category_id, user_id=user_id, reassigned_to=reassign_to)

    # ---- Helpers ---------------------------------------------------------
    @staticmethod
    def _check_parent(parent: models.Category, type_: models.CategoryType) -> None:
        if parent.parent_id is not None:
            raise ValidationFailed.single("parent_id", "categories nest at most two levels deep")
        if parent.type != type_:
            raise ValidationFailed.single("parent_id", "a subcategory must have its parent's type")

    def _ensure_unique_name(self, user_id: int, name: str, parent_id: Optional[int]) -> None:
        q = self.db.query(models.Category.id).filter(
            models.Category.user_id == user_id,
            models.Category.name == name,
        )
        if parent_id is None:
            q = q.filter(models.Category.parent_id.is_(None))
        else:
            q = q.filter(models.Category.parent_id == parent_id)
        if q.first() is not None:
            raise ValidationFailed.single("name", f"a category named {name!r} already exists here")

    def _is_referenced(self, category_id: int) -> bool:
        checks = (
            self.db.query(models.Transaction.id).filter(models.Transaction.category_id == category_id),
            self.db.query(models.BudgetCategory.id).filter(models.BudgetCategory.category_id == category_id),
            self.db.query(models.RecurringTransaction.id).filter(
                models.RecurringTransaction.category_id == category_id
            ),
            self.db.query(models.Bill.id).filter(models.Bill.category_id == category_id),
        )
        return any(q.first() is not None for q in checks)

    def _reassign(self, user_id: int, source: models.Category, target: models.Category) -> None:
        """Point every row using ``source`` at ``target``, merging budget allocations."""
        self.db.query(models.Transaction).filter(
            models.Transaction.user_id == user_id,
            models.Transaction.category_id == source.id,
        ).update({models.Transaction.category_id: target.id}, synchronize_session=False)
        self.db.query(models.RecurringTransaction).filter(
            models.RecurringTransaction.user_id == user_id,
            models.RecurringTransaction.category_id == source.id,
        ).update({models.RecurringTransaction.category_id: target.id}, synchronize_session=False)
        self.db.query(models.Bill).filter(
            models.Bill.user_id == user_id,
            models.Bill.category_id == source.id,
        ).update({models.Bill.category_id: target.id}, synchronize_session=False)
        self.db.expire_all()

        budgets = BudgetService(self.db)
        allocations = (
            self.db.query(models.BudgetCategory)
            .join(models.Budget, models.Budget.id == models.BudgetCategory.budget_id)
            .filter(models.Budget.user_id == user_id, models.BudgetCategory.category_id == source.id)
            .all()
        )
        for allocation in allocations:
            existing = (
                self.db.query(models.BudgetCategory)
                .filter(
                    models.BudgetCategory.budget_id == allocation.budget_id,
                    models.BudgetCategory.category_id == target.id,
                )
                .first()
            )
            if existing is None:
                allocation.category_id = target.id
            else:
                existing.allocated_amount = existing.allocated_amount + allocation.allocated_amount
                self.db.delete(allocation)
            self.db.flush()

        # Moved rows change spending of every target allocation, merged or not
        targets = (
            self.db.query(models.BudgetCategory)
            .join(models.Budget, models.Budget.id == models.BudgetCategory.budget_id)
            .filter(models.Budget.user_id == user_id, models.BudgetCategory.category_id == target.id)
            .all()
        )
        for allocation in targets:
            budgets.resum_allocation(allocation)
