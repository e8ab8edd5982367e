from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, InvalidStateTransition, LedgerError, ValidationFailed
from budgetbook.seed import get_system_category
from budgetbook.utils.dates import months_between
from budgetbook.utils.money import ZERO, money_sum, percentage, to_money

from . import schedule
from .guards import OwnershipGuard
from .transaction_service import TransactionService


logger = get_logger(__name__)

SAVINGS_CATEGORY_NAME = "Savings"
# Percentage points a goal may trail the straight-line pace and still be on track
ON_TRACK_SLACK = 10

_GOAL_TRANSITIONS: dict[models.GoalStatus, frozenset[models.GoalStatus]] = {
    models.GoalStatus.ACTIVE: frozenset({models.GoalStatus.PAUSED, models.GoalStatus.COMPLETED}),
    models.GoalStatus.PAUSED: frozenset({models.GoalStatus.ACTIVE}),
    models.GoalStatus.COMPLETED: frozenset({models.GoalStatus.ACTIVE}),
}


def is_on_track(goal: models.Goal, today: date) -> bool:
    if goal.status == models.GoalStatus.COMPLETED or goal.target_date is None:
        return True
    total_days = (goal.target_date - goal.start_date).days
    if total_days <= 0:
        return True
    elapsed = max(0, (today - goal.start_date).days)
    expected = min(Decimal("100"), percentage(elapsed, total_days))
    return goal.progress_percentage >= expected - ON_TRACK_SLACK


def is_overdue(goal: models.Goal, today: date) -> bool:
    return goal.status != models.GoalStatus.COMPLETED and goal.target_date is not None and goal.target_date < today


class GoalService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)
        self.transactions = TransactionService(db)

    def get(self, user_id: int, goal_id: int) -> models.Goal:
        return self.guard.goal(user_id, goal_id)

    def list_for_user(self, user_id: int, *, status: Optional[models.GoalStatus] = None) -> list[models.Goal]:
        q = self.db.query(models.Goal).filter(models.Goal.user_id == user_id)
        if status is not None:
            q = q.filter(models.Goal.status == status)
        return q.order_by(models.Goal.target_date, models.Goal.id).all()

    def create(
        self,
        user_id: int,
        payload: Any,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> models.Goal:
        data = schemas.parse_input(schemas.GoalCreate, payload)
        start = data.start_date or today or models.today_local()
        if data.target_date is not None and data.target_date <= start:
            raise ValidationFailed.single("target_date", "target_date must be after start_date")
        with atomic(self.db):
            self.guard.user(user_id)
            if data.account_id is not None:
                self.guard.account(user_id, data.account_id)
            if data.funding_account_id is not None:
                self.guard.account(user_id, data.funding_account_id, field="funding_account_id")
            goal = models.Goal(
                user_id=user_id,
                name=data.name,
                goal_type=data.goal_type,
                priority=data.priority,
                status=models.GoalStatus.ACTIVE,
                excess_amount=ZERO,
                target_amount=to_money(data.target_amount),
                current_amount=to_money(data.current_amount),
                start_date=start,
                target_date=data.target_date,
                account_id=data.account_id,
                funding_account_id=data.funding_account_id,
                milestones=list(data.milestones) if data.milestones is not None else list(models.DEFAULT_MILESTONES),
                reached_milestones=[],
                auto_contribute=data.auto_contribute,
                auto_contribute_amount=(
                    to_money(data.auto_contribute_amount) if data.auto_contribute_amount is not None else None
                ),
                auto_contribute_frequency=data.auto_contribute_frequency,
                next_contribution_date=(data.next_contribution_date or start) if data.auto_contribute else None,
                notes=data.notes,
            )
            self._settle(goal, now=now)
            self.db.add(goal)
            self.db.flush()
        logger.info("goal_created", goal_id=goal.id, user_id=user_id, target=str(goal.target_amount))
        return goal

    def update(self, user_id: int, goal_id: int, patch: Any, *, today: Optional[date] = None) -> models.Goal:
        data = schemas.parse_input(schemas.GoalUpdate, patch)
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            if changes.get("account_id") is not None:
                self.guard.account(user_id, changes["account_id"])
            if changes.get("funding_account_id") is not None:
                self.guard.account(user_id, changes["funding_account_id"], field="funding_account_id")
            auto = changes.get("auto_contribute", goal.auto_contribute)
            frequency = changes.get("auto_contribute_frequency", goal.auto_contribute_frequency)
            if auto:
                if changes.get("auto_contribute_amount", goal.auto_contribute_amount) is None or frequency is None:
                    raise ValidationFailed.single("auto_contribute", "auto contributions need an amount and a frequency")
                if frequency == models.Frequency.CUSTOM:
                    raise ValidationFailed.single(
                        "auto_contribute_frequency", "auto contributions do not support custom frequency"
                    )
            for key, value in changes.items():
                if key in ("name", "goal_type", "priority", "auto_contribute") and value is None:
                    continue
                setattr(goal, key, value)
            if goal.auto_contribute and goal.next_contribution_date is None:
                goal.next_contribution_date = today or models.today_local()
            self.db.flush()
        return goal

    def delete(self, user_id: int, goal_id: int) -> None:
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            self.db.delete(goal)
        logger.info("goal_deleted", goal_id=goal_id, user_id=user_id)

    # ---- Progress --------------------------------------------------------
    def add_amount(
        self,
        user_id: int,
        goal_id: int,
        amount: Decimal | int | str,
        *,
        source: str = "manual",
        now: Optional[datetime] = None,
    ) -> models.Goal:
        """Add to the saved amount, recording milestones and completing the goal at its target.

        Money above the target is tracked in ``excess_amount``.
        """
        value = to_money(amount)
        if value <= 0:
            raise ValidationFailed.single("amount", "amount must be positive")
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            if goal.status == models.GoalStatus.PAUSED:
                raise ConsistencyError(f"goal {goal.id} is paused")
            goal.current_amount = to_money(goal.current_amount) + value
            self._settle(goal, now=now)
            self.db.flush()
        logger.info(
            "goal_contribution",
            goal_id=goal.id,
            amount=str(value),
            source=source,
            current=str(goal.current_amount),
            status=goal.status.value,
        )
        return goal

    def contribute(
        self,
        user_id: int,
        goal_id: int,
        amount: Decimal | int | str,
        *,
        from_account_id: Optional[int] = None,
        source: str = "manual",
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> models.Goal:
        """Move money towards a goal.

        With a funding account and a goal account the money is booked as a
        transfer between them. With only a funding account it is booked as a
        savings expense. Without either only the goal progress changes.
        """
        value = to_money(amount)
        if value <= 0:
            raise ValidationFailed.single("amount", "amount must be positive")
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            if goal.status == models.GoalStatus.PAUSED:
                raise ConsistencyError(f"goal {goal.id} is paused")
            funding_id = from_account_id or goal.funding_account_id
            on = today or models.today_local()
            if funding_id is not None and goal.account_id is not None:
                if funding_id == goal.account_id:
                    raise ValidationFailed.single("from_account_id", "cannot fund a goal from its own account")
                self.transactions.create_transfer(
                    user_id,
                    funding_id,
                    goal.account_id,
                    value,
                    f"Contribution to {goal.name}",
                    on,
                )
            elif funding_id is not None:
                category = get_system_category(self.db, SAVINGS_CATEGORY_NAME, models.CategoryType.EXPENSE)
                self.transactions.create(
                    user_id,
                    {
                        "account_id": funding_id,
                        "category_id": category.id,
                        "type": models.TxnType.EXPENSE,
                        "amount": value,
                        "description": f"Contribution to {goal.name}",
                        "transaction_date": on,
                    },
                )
            self.add_amount(user_id, goal.id, value, source=source, now=now)
        return goal

    def update_target_amount(
        self,
        user_id: int,
        goal_id: int,
        new_amount: Decimal | int | str,
        *,
        now: Optional[datetime] = None,
    ) -> models.Goal:
        """Change the target; a completed goal reopens when the new target is out of reach."""
        value = to_money(new_amount)
        if value <= 0:
            raise ValidationFailed.single("target_amount", "target must be positive")
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            goal.target_amount = value
            if goal.status == models.GoalStatus.COMPLETED and to_money(goal.current_amount) < value:
                goal.status = self._transition(goal, models.GoalStatus.ACTIVE)
                goal.completed_at = None
                goal.excess_amount = ZERO
            self._settle(goal, now=now)
            self.db.flush()
        return goal

    def update_target_date(self, user_id: int, goal_id: int, new_date: Optional[date]) -> models.Goal:
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            if new_date is not None and new_date <= goal.start_date:
                raise ValidationFailed.single("target_date", "target_date must be after start_date")
            goal.target_date = new_date
        return goal

    def pause(self, user_id: int, goal_id: int) -> models.Goal:
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            goal.status = self._transition(goal, models.GoalStatus.PAUSED)
        return goal

    def resume(self, user_id: int, goal_id: int) -> models.Goal:
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            if goal.status != models.GoalStatus.PAUSED:
                raise InvalidStateTransition("Goal", goal.status, models.GoalStatus.ACTIVE)
            goal.status = self._transition(goal, models.GoalStatus.ACTIVE)
        return goal

    def reset(self, user_id: int, goal_id: int) -> models.Goal:
        """Start over from zero. Booked transactions are left alone."""
        with atomic(self.db):
            goal = self.guard.goal(user_id, goal_id, lock=True)
            goal.current_amount = ZERO
            goal.status = models.GoalStatus.ACTIVE
            goal.completed_at = None
            goal.excess_amount = ZERO
            goal.reached_milestones = []
        logger.info("goal_reset", goal_id=goal_id, user_id=user_id)
        return goal

    # ---- Planning --------------------------------------------------------
    def required_contributions(
        self,
        user_id: int,
        goal_id: int,
        *,
        today: Optional[date] = None,
    ) -> schemas.ContributionPlan:
        goal = self.guard.goal(user_id, goal_id)
        today = today or models.today_local()
        remaining = goal.remaining_amount
        if goal.target_date is None:
            return schemas.ContributionPlan(
                goal_id=goal.id,
                remaining_amount=remaining,
                months_left=None,
                weeks_left=None,
                required_monthly=None,
                required_weekly=None,
                on_track=True,
            )
        months_left = max(1, months_between(today, goal.target_date))
        weeks_left = max(1, (goal.target_date - today).days // 7)
        return schemas.ContributionPlan(
            goal_id=goal.id,
            remaining_amount=remaining,
            months_left=months_left,
            weeks_left=weeks_left,
            required_monthly=to_money(remaining / months_left),
            required_weekly=to_money(remaining / weeks_left),
            on_track=is_on_track(goal, today),
        )

    def summary(self, user_id: int, *, today: Optional[date] = None) -> schemas.GoalSummary:
        today = today or models.today_local()
        goals = self.list_for_user(user_id)
        active = [goal for goal in goals if goal.status == models.GoalStatus.ACTIVE]
        if active:
            average = to_money(sum((goal.progress_percentage for goal in active), ZERO) / len(active))
        else:
            average = ZERO
        return schemas.GoalSummary(
            active_count=len(active),
            total_target=money_sum(goal.target_amount for goal in active),
            total_current=money_sum(goal.current_amount for goal in active),
            total_remaining=money_sum(goal.remaining_amount for goal in active),
            average_progress=average,
            on_track_count=sum(1 for goal in active if is_on_track(goal, today)),
            overdue_count=sum(1 for goal in active if is_overdue(goal, today)),
            completed_count=sum(1 for goal in goals if goal.status == models.GoalStatus.COMPLETED),
        )

    # ---- Scheduled contributions ------------------------------------------
    def process_auto_contribution(self, goal_id: int, *, today: Optional[date] = None) -> bool:
        today = today or models.today_local()
        goal = self.db.get(models.Goal, goal_id)
        if goal is None or not self._contribution_due(goal, today):
            return False
        try:
            with atomic(self.db):
                self.contribute(
                    goal.user_id,
                    goal.id,
                    goal.auto_contribute_amount,
                    source="auto",
                    today=today,
                )
                goal.next_contribution_date = schedule.advance(
                    goal.next_contribution_date,
                    goal.auto_contribute_frequency,
                    anchor_day=goal.next_contribution_date.day,
                )
        except (LedgerError, SQLAlchemyError) as exc:
            logger.warning("goal_auto_contribution_failed", goal_id=goal_id, error=str(exc), error_type=type(exc).__name__)
            return False
        return True

    def process_all_auto_contributions(self, *, today: Optional[date] = None) -> schemas.BatchResult:
        today = today or models.today_local()
        goal_ids = [
            row.id
            for row in self.db.query(models.Goal.id)
            .filter(
                models.Goal.auto_contribute.is_(True),
                models.Goal.status == models.GoalStatus.ACTIVE,
                models.Goal.next_contribution_date <= today,
            )
            .order_by(models.Goal.id)
            .all()
        ]
        result = schemas.BatchResult()
        for goal_id in goal_ids:
            if self.process_auto_contribution(goal_id, today=today):
                result.processed += 1
            else:
                result.failed += 1
                result.failed_ids.append(goal_id)
        logger.info("goal_contribution_batch_finished", processed=result.processed, failed=result.failed)
        return result

    # ---- Helpers ---------------------------------------------------------
    @staticmethod
    def _contribution_due(goal: models.Goal, today: date) -> bool:
        return (
            goal.auto_contribute
            and goal.auto_contribute_amount is not None
            and goal.auto_contribute_frequency is not None
            and goal.status == models.GoalStatus.ACTIVE
            and goal.next_contribution_date is not None
            and goal.next_contribution_date <= today
        )

    def _settle(self, goal: models.Goal, *, now: Optional[datetime] = None) -> None:
        """Record newly reached milestones and complete the goal once the target is met."""
        progress = goal.progress_percentage
        reached = list(goal.reached_milestones or [])
        for milestone in sorted(goal.milestones or []):
            if progress >= milestone and milestone not in reached:
                reached.append(milestone)
                logger.info("goal_milestone_reached", goal_id=goal.id, milestone=milestone)
        goal.reached_milestones = reached

        current = to_money(goal.current_amount)
        target = to_money(goal.target_amount)
        if current >= target:
            if goal.status != models.GoalStatus.COMPLETED:
                goal.status = models.GoalStatus.COMPLETED
                goal.completed_at = now or models.now_local_naive()
                logger.info("goal_completed", goal_id=goal.id, current=str(current), target=str(target))
            goal.excess_amount = current - target
        else:
            goal.excess_amount = ZERO

    @staticmethod
    def _transition(goal: models.Goal, target: models.GoalStatus) -> models.GoalStatus:
        current = models.GoalStatus(goal.status)
        if target not in _GOAL_TRANSITIONS[current]:
            raise InvalidStateTransition("Goal", current, target)
        return target
