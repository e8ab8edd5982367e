from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ValidationFailed
from budgetbook.utils.dates import month_bounds
from budgetbook.utils.money import money_sum, to_money

from .account_service import AccountService
from .balance_service import find_active_budget
from .guards import OwnershipGuard


logger = get_logger(__name__)


class UserService:
    """Users, their profile and the per-user financial overview."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)
        self.accounts = AccountService(db)

    def create_user(self, payload: Any) -> models.User:
        data = schemas.parse_input(schemas.UserCreate, payload)
        with atomic(self.db):
            email = data.email.lower()
            if self.db.query(models.User.id).filter(models.User.email == email).first():
                raise ValidationFailed.single("email", "a user with this email already exists")
            user = models.User(email=email, is_active=True)
            self.db.add(user)
            self.db.flush()
            self.db.add(
                models.UserProfile(
                    user_id=user.id,
                    display_name=data.display_name,
                    base_currency=data.base_currency.upper() if data.base_currency else None,
                    timezone=data.timezone,
                    low_balance_threshold=(
                        to_money(data.low_balance_threshold) if data.low_balance_threshold is not None else None
                    ),
                )
            )
            self.db.flush()
        logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: int) -> models.User:
        return self.guard.user(user_id)

    def net_worth(self, user_id: int) -> Decimal:
        return self.accounts.net_worth(user_id)

    def monthly_income(self, user_id: int, *, on: Optional[date] = None) -> Decimal:
        return self._month_total(user_id, models.TxnType.INCOME, on or models.today_local())

    def monthly_expenses(self, user_id: int, *, on: Optional[date] = None) -> Decimal:
        return self._month_total(user_id, models.TxnType.EXPENSE, on or models.today_local())

    def active_budget(self, user_id: int, *, on: Optional[date] = None) -> models.Budget | None:
        return find_active_budget(self.db, user_id, on or models.today_local())

    def is_within_budget(self, user_id: int, *, on: Optional[date] = None) -> bool:
        """No active budget counts as within budget."""
        budget = self.active_budget(user_id, on=on)
        if budget is None:
            return True
        return not any(allocation.is_overspent for allocation in budget.categories)

    def low_balance_accounts(self, user_id: int) -> list[models.Account]:
        threshold = self.accounts.low_balance_threshold(user_id)
        return [
            account
            for account in self.accounts.get_all(user_id=user_id)
            if account.is_active and self.accounts.has_low_balance(account, threshold)
        ]

    def financial_summary(self, user_id: int, *, on: Optional[date] = None) -> schemas.UserSummary:
        self.guard.user(user_id)
        on = on or models.today_local()
        budget = self.active_budget(user_id, on=on)
        return schemas.UserSummary(
            user_id=user_id,
            net_worth=self.net_worth(user_id),
            monthly_income=self.monthly_income(user_id, on=on),
            monthly_expenses=self.monthly_expenses(user_id, on=on),
            within_budget=self.is_within_budget(user_id, on=on),
            active_budget_id=budget.id if budget is not None else None,
            low_balance_accounts=[schemas.AccountOut.model_validate(a) for a in self.low_balance_accounts(user_id)],
        )

    def _month_total(self, user_id: int, type_: models.TxnType, on: date) -> Decimal:
        # Split parents are counted once through their own amount; parts are skipped
        start, end = month_bounds(on.year, on.month)
        rows = (
            self.db.query(models.Transaction.amount)
            .filter(
                models.Transaction.user_id == user_id,
                models.Transaction.type == type_,
                models.Transaction.is_pending.is_(False),
                models.Transaction.parent_transaction_id.is_(None),
                models.Transaction.transaction_date >= start,
                models.Transaction.transaction_date <= end,
            )
            .all()
        )
        return money_sum(row.amount for row in rows)
