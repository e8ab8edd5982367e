from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Union
from zoneinfo import ZoneInfo

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
    Boolean,
    JSON,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.ext.mutable import MutableList

from .core.config import settings
from .core.database import Base
from .utils.money import ZERO, percentage, to_money


LOCAL_ZONE = ZoneInfo(settings.TIMEZONE)


def now_local_naive() -> datetime:
    """Return naive datetime normalized to configured local timezone."""
    return datetime.now(LOCAL_ZONE).replace(tzinfo=None)


def today_local() -> date:
    return now_local_naive().date()


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    # Persist enum values (lower-case) rather than member names
    return SAEnum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


Money = Numeric(15, 2)
# Largest value a Money column holds; usage on tiny allocations is capped here
MAX_USAGE_PERCENTAGE = Decimal("9999999999999.99")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, onupdate=now_local_naive, nullable=False)


class User(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    profile: Mapped["UserProfile"] = relationship(back_populates="user", uselist=False)
    accounts: Mapped[list["Account"]] = relationship("Account", back_populates="user")


class UserProfile(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100))
    base_currency: Mapped[str | None] = mapped_column(String(3))
    timezone: Mapped[str | None] = mapped_column(String(64))
    low_balance_threshold: Mapped[Decimal | None] = mapped_column(Money)

    user: Mapped[User] = relationship(back_populates="profile")


# ---------------------------------------------------------------------------
# Accounts


class AccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    INVESTMENT = "investment"
    LOAN = "loan"
    CASH = "cash"

    @property
    def is_asset(self) -> bool:
        return self in ASSET_ACCOUNT_TYPES

    @property
    def is_liability(self) -> bool:
        return self in LIABILITY_ACCOUNT_TYPES


ASSET_ACCOUNT_TYPES = frozenset(
    {AccountType.CHECKING, AccountType.SAVINGS, AccountType.INVESTMENT, AccountType.CASH}
)
LIABILITY_ACCOUNT_TYPES = frozenset({AccountType.CREDIT, AccountType.LOAN})


class Account(Base, TimestampMixin):
    """A store of money owned by one user.

    ``balance`` moves only through transaction side effects, an explicit
    reconciliation, or a change of ``initial_balance``.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(_enum(AccountType, "account_type"), nullable=False)
    institution: Mapped[str | None] = mapped_column(String(120))
    balance: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    initial_balance: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    credit_limit: Mapped[Decimal | None] = mapped_column(Money)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(7, 4))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_in_net_worth: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    balance_updated_at: Mapped[datetime | None] = mapped_column(DateTime)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    notes: Mapped[str | None] = mapped_column(Text)

    user: Mapped["User"] = relationship("User", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_name"),
        CheckConstraint("type = 'credit' OR credit_limit IS NULL", name="ck_account_credit_limit_only_credit"),
    )

    @property
    def is_asset(self) -> bool:
        return AccountType(self.type).is_asset

    @property
    def is_liability(self) -> bool:
        return AccountType(self.type).is_liability

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_overdrawn(self) -> bool:
        return self.is_asset and to_money(self.balance) < ZERO

    @property
    def is_over_limit(self) -> bool:
        if self.type != AccountType.CREDIT or not self.credit_limit:
            return False
        return to_money(self.balance) > to_money(self.credit_limit)

    @property
    def available_credit(self) -> Decimal | None:
        if self.type != AccountType.CREDIT or self.credit_limit is None:
            return None
        return max(ZERO, to_money(self.credit_limit) - to_money(self.balance))

    @property
    def credit_utilization(self) -> Decimal | None:
        if self.type != AccountType.CREDIT or not self.credit_limit:
            return None
        return percentage(self.balance, self.credit_limit)

    @property
    def net_worth_contribution(self) -> Decimal:
        if not self.include_in_net_worth:
            return ZERO
        balance = to_money(self.balance)
        if self.is_liability:
            return -balance
        return balance


# ---------------------------------------------------------------------------
# Categories


class CategoryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class Owned:
    user_id: int


@dataclass(frozen=True)
class Shared:
    """System-wide category visible to every user."""


CategoryOwner = Union[Owned, Shared]


class Category(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL user_id marks a shared system category; read it through ``owner``
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user.id"))
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("category.id", ondelete="SET NULL"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(_enum(CategoryType, "category_type"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_budgetable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int | None] = mapped_column(Integer)

    parent: Mapped["Category | None"] = relationship(
        "Category",
        remote_side="Category.id",
        back_populates="children",
    )
    children: Mapped[list["Category"]] = relationship("Category", back_populates="parent")

    __table_args__ = (
        CheckConstraint("parent_id IS NULL OR parent_id != id", name="ck_category_parent_not_self"),
        Index("ix_category_user_type", "user_id", "type"),
    )

    @property
    def owner(self) -> CategoryOwner:
        if self.user_id is None:
            return Shared()
        return Owned(self.user_id)

    @property
    def is_system(self) -> bool:
        return isinstance(self.owner, Shared)

    def is_visible_to(self, user_id: int) -> bool:
        owner = self.owner
        if isinstance(owner, Shared):
            return True
        return owner.user_id == user_id

    @property
    def depth(self) -> int:
        return 1 if self.parent_id is None else 2

    @property
    def full_name(self) -> str:
        if self.parent is not None:
            return f"{self.parent.name} > {self.name}"
        return self.name


# ---------------------------------------------------------------------------
# Transactions


class TxnType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransferDirection(str, Enum):
    OUT = "out"
    IN = "in"


class Transaction(Base, TimestampMixin):
    """One money movement on one account.

    A transfer is stored as two rows, an ``out`` row on the source account and
    an ``in`` row on the destination, pointing at each other through
    ``transfer_transaction_id``. Each row only ever moves its own account.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("category.id"), nullable=False)
    transfer_account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id"))
    transfer_direction: Mapped[TransferDirection | None] = mapped_column(
        _enum(TransferDirection, "transfer_direction")
    )
    transfer_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transaction.id", ondelete="SET NULL"),
    )
    type: Mapped[TxnType] = mapped_column(_enum(TxnType, "txn_type"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    payee: Mapped[str | None] = mapped_column(String(120))
    notes: Mapped[str | None] = mapped_column(Text)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parent_transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transaction.id", ondelete="CASCADE"))
    is_split: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurringtransaction.id", ondelete="SET NULL")
    )
    bill_id: Mapped[int | None] = mapped_column(ForeignKey("bill.id", ondelete="SET NULL"))
    reference_number: Mapped[str | None] = mapped_column(String(64))
    tags: Mapped[list[str]] = mapped_column(MutableList.as_mutable(JSON), default=list, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    transfer_account: Mapped["Account | None"] = relationship("Account", foreign_keys=[transfer_account_id])
    category: Mapped["Category"] = relationship("Category")
    parent: Mapped["Transaction | None"] = relationship(
        "Transaction",
        remote_side="Transaction.id",
        back_populates="children",
        foreign_keys=[parent_transaction_id],
    )
    children: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="parent",
        foreign_keys=[parent_transaction_id],
        cascade="all, delete-orphan",
        order_by="Transaction.id",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_txn_amount_positive"),
        CheckConstraint(
            "(type = 'transfer' AND transfer_account_id IS NOT NULL AND transfer_direction IS NOT NULL)"
            " OR (type != 'transfer' AND transfer_account_id IS NULL AND transfer_direction IS NULL)",
            name="ck_txn_transfer_rules",
        ),
        CheckConstraint(
            "transfer_account_id IS NULL OR transfer_account_id != account_id",
            name="ck_txn_transfer_not_same_account",
        ),
        CheckConstraint("transfer_transaction_id IS NULL OR transfer_transaction_id != id", name="ck_txn_not_link_self"),
        CheckConstraint("parent_transaction_id IS NULL OR parent_transaction_id != id", name="ck_txn_not_parent_self"),
        Index("ix_txn_user_date", "user_id", "transaction_date"),
        Index("ix_txn_account_id", "account_id"),
        Index("ix_txn_category_id", "category_id"),
    )

    @property
    def is_split_child(self) -> bool:
        return self.parent_transaction_id is not None

    @property
    def signed_amount(self) -> Decimal:
        """Contribution of this row to its own account, ignoring pending state."""
        amount = to_money(self.amount)
        if self.type == TxnType.INCOME:
            return amount
        if self.type == TxnType.EXPENSE:
            return -amount
        if self.transfer_direction == TransferDirection.IN:
            return amount
        return -amount


# ---------------------------------------------------------------------------
# Budgets


class BudgetPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class BudgetStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class AllocationStatus(str, Enum):
    OVERSPENT = "overspent"
    WARNING = "warning"
    GOOD = "good"
    EXCELLENT = "excellent"


class Budget(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    period_type: Mapped[BudgetPeriod] = mapped_column(_enum(BudgetPeriod, "budget_period"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    planned_income: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    planned_expenses: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    actual_income: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    actual_expenses: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[BudgetStatus] = mapped_column(
        _enum(BudgetStatus, "budget_status"), default=BudgetStatus.ACTIVE, nullable=False
    )
    alert_threshold: Mapped[int] = mapped_column(Integer, default=80, nullable=False)
    rollover_unused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deduct_overspent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.id",
    )

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_budget_dates"),
        CheckConstraint("alert_threshold BETWEEN 50 AND 100", name="ck_budget_alert_threshold"),
        Index("ix_budget_user_dates", "user_id", "start_date", "end_date"),
    )

    @property
    def total_allocated(self) -> Decimal:
        return to_money(sum((to_money(c.allocated_amount) for c in self.categories), ZERO))

    @property
    def total_spent(self) -> Decimal:
        return to_money(sum((to_money(c.spent_amount) for c in self.categories), ZERO))

    @property
    def income_variance(self) -> Decimal:
        return to_money(self.actual_income) - to_money(self.planned_income)

    @property
    def expense_variance(self) -> Decimal:
        return to_money(self.actual_expenses) - to_money(self.planned_expenses)

    @property
    def progress_percentage(self) -> Decimal:
        return percentage(self.actual_expenses, self.planned_expenses)

    @property
    def is_over_threshold(self) -> bool:
        return self.progress_percentage >= self.alert_threshold


class BudgetCategory(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budget.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("category.id"), nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    spent_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    usage_percentage: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    previous_period_spent: Mapped[Decimal | None] = mapped_column(Money)
    alert_threshold: Mapped[int | None] = mapped_column(Integer)
    alert_on_overspend: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_budget_category"),
        CheckConstraint("allocated_amount >= 0", name="ck_budget_category_allocated"),
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_budget_category_priority"),
    )

    def recompute_derived(self) -> None:
        """Refresh ``remaining_amount`` and ``usage_percentage`` from allocated/spent."""
        allocated = to_money(self.allocated_amount)
        spent = to_money(self.spent_amount)
        self.allocated_amount = allocated
        self.spent_amount = spent
        self.remaining_amount = allocated - spent
        self.usage_percentage = min(percentage(spent, allocated), MAX_USAGE_PERCENTAGE)

    @property
    def effective_alert_threshold(self) -> int:
        if self.alert_threshold is not None:
            return self.alert_threshold
        if self.budget is not None and self.budget.alert_threshold is not None:
            return self.budget.alert_threshold
        return settings.DEFAULT_ALERT_THRESHOLD

    @property
    def variance(self) -> Decimal:
        return to_money(self.allocated_amount) - to_money(self.spent_amount)

    @property
    def amount_until_alert(self) -> Decimal:
        alert_at = to_money(to_money(self.allocated_amount) * self.effective_alert_threshold / 100)
        return max(ZERO, alert_at - to_money(self.spent_amount))

    @property
    def is_overspent(self) -> bool:
        return to_money(self.spent_amount) > to_money(self.allocated_amount)


# ---------------------------------------------------------------------------
# Scheduled templates


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUAL = "annual"
    CUSTOM = "custom"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RecurringTransaction(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id"), nullable=False)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("category.id"))
    transfer_account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id"))
    type: Mapped[TxnType] = mapped_column(_enum(TxnType, "txn_type"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    payee: Mapped[str | None] = mapped_column(String(120))
    frequency: Mapped[Frequency] = mapped_column(_enum(Frequency, "frequency"), nullable=False)
    frequency_interval: Mapped[int | None] = mapped_column(Integer)
    day_of_month: Mapped[int | None] = mapped_column(Integer)
    day_of_week: Mapped[int | None] = mapped_column(Integer)  # 0=Mon .. 6=Sun
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    max_occurrences: Mapped[int | None] = mapped_column(Integer)
    occurrences_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[ScheduleStatus] = mapped_column(
        _enum(ScheduleStatus, "schedule_status"), default=ScheduleStatus.ACTIVE, nullable=False
    )
    auto_generate: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    generate_days_ahead: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    generate_as_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allow_amount_variation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    min_amount: Mapped[Decimal | None] = mapped_column(Money)
    max_amount: Mapped[Decimal | None] = mapped_column(Money)
    last_generated_at: Mapped[datetime | None] = mapped_column(DateTime)
    total_generated_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    transfer_account: Mapped["Account | None"] = relationship("Account", foreign_keys=[transfer_account_id])
    category: Mapped["Category | None"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_recurring_amount_positive"),
        CheckConstraint(
            "frequency != 'custom' OR frequency_interval >= 1",
            name="ck_recurring_custom_interval",
        ),
        CheckConstraint(
            "max_occurrences IS NULL OR occurrences_count <= max_occurrences",
            name="ck_recurring_occurrences",
        ),
        Index("ix_recurring_due", "status", "next_due_date"),
    )

    @property
    def anchor_day(self) -> int:
        return self.day_of_month or self.start_date.day


class Bill(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id"))
    category_id: Mapped[int | None] = mapped_column(ForeignKey("category.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    payee: Mapped[str | None] = mapped_column(String(120))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_fixed_amount: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    minimum_amount: Mapped[Decimal | None] = mapped_column(Money)
    maximum_amount: Mapped[Decimal | None] = mapped_column(Money)
    average_amount: Mapped[Decimal | None] = mapped_column(Money)
    frequency: Mapped[Frequency] = mapped_column(_enum(Frequency, "frequency"), nullable=False)
    frequency_interval: Mapped[int | None] = mapped_column(Integer)
    due_day: Mapped[int | None] = mapped_column(Integer)
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[ScheduleStatus] = mapped_column(
        _enum(ScheduleStatus, "schedule_status"), default=ScheduleStatus.ACTIVE, nullable=False
    )
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reminder_days_before: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    second_reminder_days_before: Mapped[int | None] = mapped_column(Integer)
    first_reminder_sent_for: Mapped[date | None] = mapped_column(Date)
    second_reminder_sent_for: Mapped[date | None] = mapped_column(Date)
    auto_pay_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_pay_amount: Mapped[Decimal | None] = mapped_column(Money)
    total_paid: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    payment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_paid_date: Mapped[date | None] = mapped_column(Date)
    last_paid_amount: Mapped[Decimal | None] = mapped_column(Money)
    missed_payments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(64))
    notes: Mapped[str | None] = mapped_column(Text)

    account: Mapped["Account | None"] = relationship("Account")
    category: Mapped["Category | None"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bill_amount_positive"),
        CheckConstraint("frequency != 'custom' OR frequency_interval >= 1", name="ck_bill_custom_interval"),
        UniqueConstraint("user_id", "name", name="uq_bill_name"),
    )

    @property
    def anchor_day(self) -> int:
        return self.due_day or self.next_due_date.day

    @property
    def estimated_amount(self) -> Decimal:
        if self.is_fixed_amount:
            return to_money(self.amount)
        if self.average_amount:
            return to_money(self.average_amount)
        if self.minimum_amount and self.maximum_amount:
            return to_money((to_money(self.minimum_amount) + to_money(self.maximum_amount)) / 2)
        return to_money(self.amount)

    def days_until_due(self, today: date) -> int:
        return (self.next_due_date - today).days

    def is_overdue(self, today: date) -> bool:
        return self.status == ScheduleStatus.ACTIVE and self.next_due_date < today


# ---------------------------------------------------------------------------
# Goals


class GoalType(str, Enum):
    EMERGENCY_FUND = "emergency_fund"
    VACATION = "vacation"
    HOUSE = "house"
    CAR = "car"
    RETIREMENT = "retirement"
    EDUCATION = "education"
    DEBT_PAYOFF = "debt_payoff"
    INVESTMENT = "investment"
    OTHER = "other"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class GoalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


DEFAULT_MILESTONES = [25, 50, 75, 100]


class Goal(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id", ondelete="SET NULL"))
    funding_account_id: Mapped[int | None] = mapped_column(ForeignKey("account.id", ondelete="SET NULL"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    goal_type: Mapped[GoalType] = mapped_column(_enum(GoalType, "goal_type"), default=GoalType.OTHER, nullable=False)
    priority: Mapped[GoalPriority] = mapped_column(
        _enum(GoalPriority, "goal_priority"), default=GoalPriority.MEDIUM, nullable=False
    )
    target_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    target_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[GoalStatus] = mapped_column(_enum(GoalStatus, "goal_status"), default=GoalStatus.ACTIVE, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    excess_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO, nullable=False)
    milestones: Mapped[list[int]] = mapped_column(
        MutableList.as_mutable(JSON), default=lambda: list(DEFAULT_MILESTONES), nullable=False
    )
    reached_milestones: Mapped[list[int]] = mapped_column(MutableList.as_mutable(JSON), default=list, nullable=False)
    auto_contribute: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_contribute_amount: Mapped[Decimal | None] = mapped_column(Money)
    auto_contribute_frequency: Mapped[Frequency | None] = mapped_column(_enum(Frequency, "frequency"))
    next_contribution_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)

    account: Mapped["Account | None"] = relationship("Account", foreign_keys=[account_id])
    funding_account: Mapped["Account | None"] = relationship("Account", foreign_keys=[funding_account_id])

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="ck_goal_target_positive"),
        CheckConstraint("current_amount >= 0", name="ck_goal_current_non_negative"),
    )

    @property
    def progress_percentage(self) -> Decimal:
        return min(Decimal("100.00"), percentage(self.current_amount, self.target_amount))

    @property
    def remaining_amount(self) -> Decimal:
        return max(ZERO, to_money(self.target_amount) - to_money(self.current_amount))
