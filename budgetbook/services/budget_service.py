from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.config import settings
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, InvalidStateTransition, ValidationFailed
from budgetbook.utils.dates import add_months, inclusive_days
from budgetbook.utils.money import ZERO, format_money, money_sum, percentage, to_money

from .balance_service import find_active_budget
from .guards import OwnershipGuard


logger = get_logger(__name__)

_BUDGET_TRANSITIONS: dict[models.BudgetStatus, frozenset[models.BudgetStatus]] = {
    models.BudgetStatus.ACTIVE: frozenset({models.BudgetStatus.PAUSED, models.BudgetStatus.COMPLETED}),
    models.BudgetStatus.PAUSED: frozenset({models.BudgetStatus.ACTIVE, models.BudgetStatus.COMPLETED}),
    models.BudgetStatus.COMPLETED: frozenset(),
}


def category_status(usage_percentage: Decimal | int, threshold: int) -> models.AllocationStatus:
    usage = Decimal(usage_percentage)
    if usage >= 100:
        return models.AllocationStatus.OVERSPENT
    if usage >= threshold:
        return models.AllocationStatus.WARNING
    if usage >= 50:
        return models.AllocationStatus.GOOD
    return models.AllocationStatus.EXCELLENT


def default_budget_name(period_type: models.BudgetPeriod, start: date, end: date) -> str:
    if period_type == models.BudgetPeriod.MONTHLY:
        return f"{start:%B %Y} Budget"
    if period_type == models.BudgetPeriod.WEEKLY:
        return f"Week of {start:%b %d, %Y}"
    if period_type == models.BudgetPeriod.YEARLY:
        return f"{start.year} Budget"
    return f"Budget {start:%b %d} - {end:%b %d, %Y}"


def next_period_window(budget: models.Budget) -> tuple[date, date]:
    start = budget.end_date + timedelta(days=1)
    if budget.period_type == models.BudgetPeriod.WEEKLY:
        return start, start + timedelta(days=6)
    if budget.period_type == models.BudgetPeriod.MONTHLY:
        return start, add_months(start, 1) - timedelta(days=1)
    if budget.period_type == models.BudgetPeriod.YEARLY:
        return start, add_months(start, 12) - timedelta(days=1)
    return start, start + (budget.end_date - budget.start_date)


class BudgetService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)

    # ---- Queries ---------------------------------------------------------
    def get(self, user_id: int, budget_id: int) -> models.Budget:
        return self.guard.budget(user_id, budget_id)

    def list_budgets(self, user_id: int, *, status: Optional[models.BudgetStatus] = None) -> list[models.Budget]:
        q = self.db.query(models.Budget).filter(models.Budget.user_id == user_id)
        if status is not None:
            q = q.filter(models.Budget.status == status)
        return q.order_by(models.Budget.start_date.desc(), models.Budget.id).all()

    def active_budget(self, user_id: int, on: Optional[date] = None) -> models.Budget | None:
        return find_active_budget(self.db, user_id, on or models.today_local())

    # ---- Budget lifecycle ------------------------------------------------
    def create(self, user_id: int, payload: Any, *, now: Optional[datetime] = None) -> models.Budget:
        """Create a budget with its allocations.

        Allocations may not add up to more than ``planned_expenses`` and an
        active budget may not overlap another active budget of the same user.
        Spent amounts start from what is already recorded in the window.
        """
        data = schemas.parse_input(schemas.BudgetCreate, payload)
        with atomic(self.db):
            user = self.guard.user(user_id)
            for allocation in data.allocations:
                self._allocation_category(user_id, allocation.category_id)
            total = money_sum(a.allocated_amount for a in data.allocations)
            self._check_allocation_total(total, data.planned_expenses)
            if data.status == models.BudgetStatus.ACTIVE:
                self._check_overlap(user_id, data.start_date, data.end_date)

            currency = data.currency or (user.profile.base_currency if user.profile else None) or settings.DEFAULT_CURRENCY
            budget = models.Budget(
                user_id=user_id,
                name=data.name or default_budget_name(data.period_type, data.start_date, data.end_date),
                period_type=data.period_type,
                start_date=data.start_date,
                end_date=data.end_date,
                planned_income=to_money(data.planned_income),
                planned_expenses=to_money(data.planned_expenses),
                currency=currency.upper(),
                status=data.status,
                alert_threshold=data.alert_threshold or settings.DEFAULT_ALERT_THRESHOLD,
                rollover_unused=data.rollover_unused,
                deduct_overspent=data.deduct_overspent,
                notes=data.notes,
            )
            self.db.add(budget)
            self.db.flush()
            for allocation in data.allocations:
                self._add_allocation_row(budget, allocation, now=now)
            self._recalculate_actuals(budget, now=now)
        logger.info(
            "budget_created",
            budget_id=budget.id,
            user_id=user_id,
            start=budget.start_date.isoformat(),
            end=budget.end_date.isoformat(),
            allocations=len(data.allocations),
        )
        return budget

    def update(self, user_id: int, budget_id: int, patch: Any, *, now: Optional[datetime] = None) -> models.Budget:
        data = schemas.parse_input(schemas.BudgetUpdate, patch)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None or k in ("notes",)}
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            if budget.status == models.BudgetStatus.COMPLETED:
                raise ConsistencyError(f"budget {budget_id} is completed")
            start = changes.get("start_date", budget.start_date)
            end = changes.get("end_date", budget.end_date)
            if end <= start:
                raise ValidationFailed.single("end_date", "end_date must be after start_date")
            window_changed = (start, end) != (budget.start_date, budget.end_date)
            if window_changed and budget.status == models.BudgetStatus.ACTIVE:
                self._check_overlap(user_id, start, end, exclude_id=budget.id)
            if "planned_expenses" in changes:
                self._check_allocation_total(budget.total_allocated, to_money(changes["planned_expenses"]))
            for key, value in changes.items():
                if key in ("planned_income", "planned_expenses"):
                    value = to_money(value)
                setattr(budget, key, value)
            self.db.flush()
            if window_changed:
                self._recalculate_actuals(budget, now=now)
        return budget

    def delete(self, user_id: int, budget_id: int) -> None:
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            self.db.delete(budget)
        logger.info("budget_deleted", budget_id=budget_id, user_id=user_id)

    def pause(self, user_id: int, budget_id: int) -> models.Budget:
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            self._transition(budget, models.BudgetStatus.PAUSED)
        return budget

    def resume(self, user_id: int, budget_id: int, *, now: Optional[datetime] = None) -> models.Budget:
        """Reactivate a paused budget; spent amounts are re-summed since they were frozen."""
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            if budget.status == models.BudgetStatus.PAUSED:
                self._check_overlap(user_id, budget.start_date, budget.end_date, exclude_id=budget.id)
            self._transition(budget, models.BudgetStatus.ACTIVE)
            self._recalculate_actuals(budget, now=now)
        return budget

    def complete(self, user_id: int, budget_id: int, *, now: Optional[datetime] = None) -> models.Budget:
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            self._recalculate_actuals(budget, now=now)
            self._transition(budget, models.BudgetStatus.COMPLETED)
        logger.info(
            "budget_completed",
            budget_id=budget_id,
            actual_expenses=str(budget.actual_expenses),
            planned_expenses=str(budget.planned_expenses),
        )
        return budget

    def create_next_period_budget(
        self,
        user_id: int,
        budget_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> models.Budget:
        """Open the budget for the period right after ``budget_id``.

        Allocations are copied. With ``rollover_unused`` the unspent part of
        each allocation is added on top; with ``deduct_overspent`` an
        overspend is taken off the next allocation (never below zero).
        """
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id)
            self._recalculate_actuals(budget, now=now)
            start, end = next_period_window(budget)
            self._check_overlap(user_id, start, end)

            following = models.Budget(
                user_id=user_id,
                name=default_budget_name(budget.period_type, start, end),
                period_type=budget.period_type,
                start_date=start,
                end_date=end,
                planned_income=to_money(budget.planned_income),
                planned_expenses=to_money(budget.planned_expenses),
                currency=budget.currency,
                status=models.BudgetStatus.ACTIVE,
                alert_threshold=budget.alert_threshold,
                rollover_unused=budget.rollover_unused,
                deduct_overspent=budget.deduct_overspent,
            )
            self.db.add(following)
            self.db.flush()
            for previous in budget.categories:
                amount = to_money(previous.allocated_amount)
                leftover = to_money(previous.allocated_amount) - to_money(previous.spent_amount)
                if budget.rollover_unused and leftover > 0:
                    amount += leftover
                if budget.deduct_overspent and leftover < 0:
                    amount = max(ZERO, amount + leftover)
                row = models.BudgetCategory(
                    category_id=previous.category_id,
                    allocated_amount=amount,
                    previous_period_spent=to_money(previous.spent_amount),
                    alert_threshold=previous.alert_threshold,
                    alert_on_overspend=previous.alert_on_overspend,
                    priority=previous.priority,
                )
                following.categories.append(row)
                self.db.flush()
                self.resum_allocation(row, now=now)
            following.planned_expenses = max(to_money(budget.planned_expenses), following.total_allocated)
            self._recalculate_actuals(following, now=now)
        logger.info("budget_rolled_over", budget_id=budget_id, next_budget_id=following.id)
        return following

    # ---- Allocations -----------------------------------------------------
    def add_allocation(
        self,
        user_id: int,
        budget_id: int,
        payload: Any,
        *,
        now: Optional[datetime] = None,
    ) -> models.BudgetCategory:
        data = schemas.parse_input(schemas.AllocationIn, payload)
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            self._allocation_category(user_id, data.category_id)
            if any(row.category_id == data.category_id for row in budget.categories):
                raise ConsistencyError(f"budget {budget_id} already has an allocation for category {data.category_id}")
            self._check_allocation_total(
                budget.total_allocated + to_money(data.allocated_amount), to_money(budget.planned_expenses)
            )
            row = self._add_allocation_row(budget, data, now=now)
        return row

    def remove_allocation(self, user_id: int, allocation_id: int) -> None:
        with atomic(self.db):
            allocation = self.guard.allocation(user_id, allocation_id, lock=True)
            allocation.budget.categories.remove(allocation)
            self.db.flush()

    def recalculate_spent_amount(
        self,
        user_id: int,
        allocation_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> models.BudgetCategory:
        """Full re-sum of the allocation's spending, for periodic reconciliation."""
        with atomic(self.db):
            allocation = self.guard.allocation(user_id, allocation_id, lock=True)
            before = to_money(allocation.spent_amount)
            self.resum_allocation(allocation, now=now)
        if before != allocation.spent_amount:
            logger.warning(
                "budget_spent_corrected",
                allocation_id=allocation_id,
                stored=str(before),
                computed=str(allocation.spent_amount),
            )
        return allocation

    def recalculate_actuals(self, user_id: int, budget_id: int, *, now: Optional[datetime] = None) -> models.Budget:
        with atomic(self.db):
            budget = self.guard.budget(user_id, budget_id, lock=True)
            self._recalculate_actuals(budget, now=now)
        return budget

    def adjust_allocation(
        self,
        user_id: int,
        allocation_id: int,
        new_amount: Decimal | int | str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> models.BudgetCategory:
        amount = to_money(new_amount)
        if amount < 0:
            raise ValidationFailed.single("new_amount", "allocation cannot be negative")
        with atomic(self.db):
            allocation = self.guard.allocation(user_id, allocation_id, lock=True)
            self._adjust(allocation, amount, reason, now=now)
        return allocation

    def transfer_unused_to(
        self,
        user_id: int,
        source_id: int,
        target_id: int,
        amount: Decimal | int | str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> models.BudgetCategory:
        """Move up to the unspent part of one allocation to another in the same budget.

        Returns the source allocation after the move.
        """
        with atomic(self.db):
            source = self.guard.allocation(user_id, source_id, lock=True)
            target = self.guard.allocation(user_id, target_id, lock=True)
            if source.id == target.id:
                raise ValidationFailed.single("target_id", "source and target are the same allocation")
            if source.budget_id != target.budget_id:
                raise ValidationFailed.single("target_id", "allocations belong to different budgets")
            available = max(ZERO, to_money(source.remaining_amount))
            moved = available if amount is None else to_money(amount)
            if moved <= 0:
                raise ValidationFailed.single("amount", "nothing to transfer")
            if moved > available:
                raise ValidationFailed.single("amount", f"only {format_money(available)} is unused")
            self._adjust(
                source,
                to_money(source.allocated_amount) - moved,
                f"Moved {format_money(moved)} to {target.category.name}",
                now=now,
            )
            self._adjust(
                target,
                to_money(target.allocated_amount) + moved,
                f"Received {format_money(moved)} from {source.category.name}",
                now=now,
            )
        logger.info("budget_allocation_moved", source_id=source_id, target_id=target_id, amount=str(moved))
        return source

    # ---- Reporting -------------------------------------------------------
    def allocation_status(self, allocation: models.BudgetCategory) -> models.AllocationStatus:
        return category_status(allocation.usage_percentage, allocation.effective_alert_threshold)

    def summarize_allocation(self, allocation: models.BudgetCategory) -> schemas.AllocationSummary:
        return schemas.AllocationSummary(
            allocation_id=allocation.id,
            category_id=allocation.category_id,
            category_name=allocation.category.name,
            allocated_amount=to_money(allocation.allocated_amount),
            spent_amount=to_money(allocation.spent_amount),
            remaining_amount=to_money(allocation.remaining_amount),
            usage_percentage=Decimal(allocation.usage_percentage),
            alert_threshold=allocation.effective_alert_threshold,
            status=self.allocation_status(allocation),
            priority=allocation.priority,
        )

    def performance(self, user_id: int, budget_id: int, *, today: Optional[date] = None) -> schemas.BudgetPerformance:
        budget = self.guard.budget(user_id, budget_id)
        today = today or models.today_local()
        days_total = inclusive_days(budget.start_date, budget.end_date)
        days_elapsed = min(days_total, max(0, inclusive_days(budget.start_date, today)))
        days_remaining = days_total - days_elapsed
        allocated = budget.total_allocated
        spent = budget.total_spent

        if days_elapsed > 0:
            projected = to_money(spent / days_elapsed * days_total)
        else:
            projected = spent
        if days_remaining > 0:
            daily_allowance = max(ZERO, to_money((allocated - spent) / days_remaining))
        else:
            daily_allowance = ZERO

        return schemas.BudgetPerformance(
            budget_id=budget.id,
            name=budget.name,
            status=budget.status,
            days_total=days_total,
            days_elapsed=days_elapsed,
            days_remaining=days_remaining,
            time_progress=percentage(days_elapsed, days_total),
            planned_expenses=to_money(budget.planned_expenses),
            total_allocated=allocated,
            total_spent=spent,
            spending_progress=percentage(spent, budget.planned_expenses),
            daily_allowance_remaining=daily_allowance,
            projected_spending=projected,
            projected_overspend=max(ZERO, projected - allocated),
            allocations=[self.summarize_allocation(row) for row in budget.categories],
        )

    def alerts(self, user_id: int, budget_id: int) -> list[schemas.AllocationSummary]:
        """Allocations at or past their alert threshold, most important first."""
        budget = self.guard.budget(user_id, budget_id)
        flagged = []
        for allocation in budget.categories:
            summary = self.summarize_allocation(allocation)
            if summary.status == models.AllocationStatus.WARNING:
                flagged.append(summary)
            elif summary.status == models.AllocationStatus.OVERSPENT and allocation.alert_on_overspend:
                flagged.append(summary)
        return sorted(flagged, key=lambda s: (s.priority, -s.usage_percentage))

    def calculate_previous_period_spending(self, allocation: models.BudgetCategory) -> Decimal:
        budget = allocation.budget
        length = budget.end_date - budget.start_date
        previous_end = budget.start_date - timedelta(days=1)
        previous_start = previous_end - length
        return self._spent_in_window(budget.user_id, allocation.category_id, previous_start, previous_end)

    # ---- Helpers ---------------------------------------------------------
    def resum_allocation(self, allocation: models.BudgetCategory, *, now: Optional[datetime] = None) -> None:
        self.db.flush()
        budget = allocation.budget
        allocation.spent_amount = self._spent_in_window(
            budget.user_id, allocation.category_id, budget.start_date, budget.end_date
        )
        allocation.recompute_derived()
        allocation.last_calculated_at = now or models.now_local_naive()

    def _recalculate_actuals(self, budget: models.Budget, *, now: Optional[datetime] = None) -> None:
        self.db.flush()
        rows = (
            self.db.query(models.Transaction.type, models.Transaction.amount)
            .filter(
                models.Transaction.user_id == budget.user_id,
                models.Transaction.type.in_([models.TxnType.INCOME, models.TxnType.EXPENSE]),
                models.Transaction.is_pending.is_(False),
                models.Transaction.is_split.is_(False),
                models.Transaction.transaction_date >= budget.start_date,
                models.Transaction.transaction_date <= budget.end_date,
            )
            .all()
        )
        budget.actual_income = money_sum(amount for type_, amount in rows if type_ == models.TxnType.INCOME)
        budget.actual_expenses = money_sum(amount for type_, amount in rows if type_ == models.TxnType.EXPENSE)
        for allocation in budget.categories:
            self.resum_allocation(allocation, now=now)
        budget.last_calculated_at = now or models.now_local_naive()

    def _spent_in_window(self, user_id: int, category_id: int, start: date, end: date) -> Decimal:
        rows = (
            self.db.query(models.Transaction.amount)
            .filter(
                models.Transaction.user_id == user_id,
                models.Transaction.category_id == category_id,
                models.Transaction.type == models.TxnType.EXPENSE,
                models.Transaction.is_pending.is_(False),
                models.Transaction.is_split.is_(False),
                models.Transaction.transaction_date >= start,
                models.Transaction.transaction_date <= end,
            )
            .all()
        )
        return money_sum(row.amount for row in rows)

    def _add_allocation_row(
        self,
        budget: models.Budget,
        data: schemas.AllocationIn,
        *,
        now: Optional[datetime] = None,
    ) -> models.BudgetCategory:
        row = models.BudgetCategory(
            category_id=data.category_id,
            allocated_amount=to_money(data.allocated_amount),
            alert_threshold=data.alert_threshold,
            alert_on_overspend=data.alert_on_overspend,
            priority=data.priority,
            notes=data.notes,
        )
        budget.categories.append(row)
        self.db.flush()
        row.previous_period_spent = self.calculate_previous_period_spending(row)
        self.resum_allocation(row, now=now)
        return row

    def _adjust(
        self,
        allocation: models.BudgetCategory,
        new_amount: Decimal,
        reason: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> None:
        old_amount = to_money(allocation.allocated_amount)
        allocation.allocated_amount = to_money(new_amount)
        allocation.recompute_derived()
        stamp = (now or models.now_local_naive()).strftime("%Y-%m-%d %H:%M")
        line = f"[{stamp}] Adjusted from {format_money(old_amount)} to {format_money(new_amount)}"
        if reason:
            line = f"{line}: {reason}"
        allocation.notes = f"{allocation.notes}\n{line}" if allocation.notes else line
        budget = allocation.budget
        budget.planned_expenses = budget.total_allocated
        self.db.flush()

    def _allocation_category(self, user_id: int, category_id: int) -> models.Category:
        category = self.guard.category(user_id, category_id)
        if category.type != models.CategoryType.EXPENSE:
            raise ValidationFailed.single("category_id", f"category {category_id} is not an expense category")
        return category

    @staticmethod
    def _check_allocation_total(total: Decimal, planned_expenses: Decimal) -> None:
        if to_money(total) > to_money(planned_expenses):
            raise ConsistencyError(
                f"allocations total {format_money(total)} exceeds planned expenses {format_money(planned_expenses)}"
            )

    def _check_overlap(self, user_id: int, start: date, end: date, *, exclude_id: Optional[int] = None) -> None:
        """Only active budgets count; paused and completed ones may overlap freely."""
        self.db.flush()
        q = self.db.query(models.Budget).filter(
            models.Budget.user_id == user_id,
            models.Budget.status == models.BudgetStatus.ACTIVE,
            models.Budget.start_date <= end,
            models.Budget.end_date >= start,
        )
        if exclude_id is not None:
            q = q.filter(models.Budget.id != exclude_id)
        clash = q.first()
        if clash is not None:
            raise ConsistencyError(f"overlaps active budget {clash.id} ({clash.name})")

    @staticmethod
    def _transition(budget: models.Budget, target: models.BudgetStatus) -> None:
        current = models.BudgetStatus(budget.status)
        if target not in _BUDGET_TRANSITIONS[current]:
            raise InvalidStateTransition("Budget", current, target)
        budget.status = target
