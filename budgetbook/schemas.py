from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from .errors import ValidationFailed
from .models import (
    AccountType,
    AllocationStatus,
    BudgetPeriod,
    BudgetStatus,
    CategoryType,
    Frequency,
    GoalPriority,
    GoalStatus,
    GoalType,
    TransferDirection,
    TxnType,
)


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_input(model: type[ModelT], payload: Any) -> ModelT:
    """Validate ``payload`` into ``model``, reporting failures field by field."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc) from exc


def clean_tags(values: list[str]) -> list[str]:
    """Strip blanks and duplicates from tag names, keeping first-seen order."""
    tags: list[str] = []
    for value in values:
        tag = value.strip()
        if not tag:
            continue
        if len(tag) > 50:
            raise ValueError(f"tag {tag[:20]!r}... is longer than 50 characters")
        if tag not in tags:
            tags.append(tag)
    return tags


# ---------------------------------------------------------------------------
# Users


class UserCreate(BaseModel):
    email: EmailStr
    display_name: str | None = Field(default=None, max_length=100)
    base_currency: str | None = Field(default=None, min_length=3, max_length=3)
    timezone: str | None = Field(default=None, max_length=64)
    low_balance_threshold: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)


# ---------------------------------------------------------------------------
# Accounts


class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: AccountType
    initial_balance: Decimal = Field(
        default=Decimal("0"),
        max_digits=15,
        decimal_places=2,
        validation_alias=AliasChoices("initial_balance", "balance"),
    )
    credit_limit: Optional[Decimal] = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    interest_rate: Optional[Decimal] = Field(default=None, ge=0, max_digits=7, decimal_places=4)
    institution: Optional[str] = Field(default=None, max_length=120)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    is_active: bool = True
    include_in_net_worth: bool = True
    notes: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _credit_limit_only_for_credit(self) -> "AccountCreate":
        if self.credit_limit is not None and self.type != AccountType.CREDIT:
            raise ValueError("credit_limit is only allowed for credit accounts")
        return self


class AccountUpdate(BaseModel):
    """Editable account fields. ``balance`` is deliberately absent."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    initial_balance: Optional[Decimal] = Field(default=None, max_digits=15, decimal_places=2)
    credit_limit: Optional[Decimal] = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    interest_rate: Optional[Decimal] = Field(default=None, ge=0, max_digits=7, decimal_places=4)
    institution: Optional[str] = Field(default=None, max_length=120)
    is_active: Optional[bool] = None
    include_in_net_worth: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    currency: str
    is_active: bool
    include_in_net_worth: bool


class ReconciliationResult(BaseModel):
    account_id: int
    stored_balance: Decimal
    computed_balance: Decimal
    corrected: bool

    @computed_field  # type: ignore[misc]
    @property
    def drift(self) -> Decimal:
        return self.stored_balance - self.computed_balance


class BalanceSnapshot(BaseModel):
    day: date
    balance: Decimal
    transaction_count: int


# ---------------------------------------------------------------------------
# Categories


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None
    is_budgetable: bool = True
    sort_order: Optional[int] = None


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[CategoryType] = None
    parent_id: Optional[int] = None
    is_active: Optional[bool] = None
    is_budgetable: Optional[bool] = None
    sort_order: Optional[int] = None


# ---------------------------------------------------------------------------
# Transactions


class TransactionCreate(BaseModel):
    account_id: int
    type: TxnType
    amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    category_id: Optional[int] = None
    transfer_account_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("transfer_account_id", "to_account_id"),
    )
    transaction_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices("transaction_date", "date"),
    )
    description: Optional[str] = Field(default=None, max_length=255)
    payee: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_pending: bool = False
    reference_number: Optional[str] = Field(default=None, max_length=64)
    recurring_transaction_id: Optional[int] = None
    bill_id: Optional[int] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return clean_tags(value)

    @model_validator(mode="after")
    def _transfer_rules(self) -> "TransactionCreate":
        if self.type == TxnType.TRANSFER:
            if self.transfer_account_id is None:
                raise ValueError("transfer_account_id is required for transfers")
            if self.transfer_account_id == self.account_id:
                raise ValueError("cannot transfer to the same account")
        elif self.transfer_account_id is not None:
            raise ValueError("transfer_account_id is only allowed for transfers")
        return self


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TxnType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    category_id: Optional[int] = None
    transfer_account_id: Optional[int] = None
    transaction_date: Optional[date] = None
    description: Optional[str] = Field(default=None, max_length=255)
    payee: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_pending: Optional[bool] = None
    reference_number: Optional[str] = Field(default=None, max_length=64)
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return None if value is None else clean_tags(value)


class TransactionTags(BaseModel):
    tags: list[str] = Field(min_length=1)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return clean_tags(value)


class SplitPart(BaseModel):
    category_id: int
    amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: int
    type: TxnType
    amount: Decimal
    transaction_date: date
    is_pending: bool
    transfer_account_id: Optional[int] = None
    transfer_direction: Optional[TransferDirection] = None
    transfer_transaction_id: Optional[int] = None
    parent_transaction_id: Optional[int] = None
    is_split: bool = False
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Budgets


class AllocationIn(BaseModel):
    category_id: int
    allocated_amount: Decimal = Field(ge=0, max_digits=15, decimal_places=2)
    alert_threshold: Optional[int] = Field(default=None, ge=50, le=100)
    alert_on_overspend: bool = True
    priority: int = Field(default=3, ge=1, le=5)
    notes: Optional[str] = Field(default=None, max_length=2000)


class BudgetCreate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    period_type: BudgetPeriod = BudgetPeriod.MONTHLY
    start_date: date
    end_date: date
    planned_income: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)
    planned_expenses: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    status: BudgetStatus = BudgetStatus.ACTIVE
    alert_threshold: Optional[int] = Field(default=None, ge=50, le=100)
    rollover_unused: bool = False
    deduct_overspent: bool = False
    notes: Optional[str] = Field(default=None, max_length=2000)
    allocations: list[AllocationIn] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def _not_completed(cls, value: BudgetStatus) -> BudgetStatus:
        if value == BudgetStatus.COMPLETED:
            raise ValueError("a budget cannot be created as completed")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "BudgetCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        seen: set[int] = set()
        for allocation in self.allocations:
            if allocation.category_id in seen:
                raise ValueError(f"category {allocation.category_id} is allocated twice")
            seen.add(allocation.category_id)
        return self


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=120)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    planned_income: Optional[Decimal] = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    planned_expenses: Optional[Decimal] = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    alert_threshold: Optional[int] = Field(default=None, ge=50, le=100)
    rollover_unused: Optional[bool] = None
    deduct_overspent: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AllocationSummary(BaseModel):
    allocation_id: int
    category_id: int
    category_name: str
    allocated_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    usage_percentage: Decimal
    alert_threshold: int
    status: AllocationStatus
    priority: int


class BudgetPerformance(BaseModel):
    budget_id: int
    name: str
    status: BudgetStatus
    days_total: int
    days_elapsed: int
    days_remaining: int
    time_progress: Decimal
    planned_expenses: Decimal
    total_allocated: Decimal
    total_spent: Decimal
    spending_progress: Decimal
    daily_allowance_remaining: Decimal
    projected_spending: Decimal
    projected_overspend: Decimal
    allocations: list[AllocationSummary]

    @computed_field  # type: ignore[misc]
    @property
    def on_pace(self) -> bool:
        return self.projected_spending <= self.total_allocated


# ---------------------------------------------------------------------------
# Recurring transactions and bills


class RecurringCreate(BaseModel):
    account_id: int
    type: TxnType
    amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    description: str = Field(min_length=1, max_length=255)
    category_id: Optional[int] = None
    transfer_account_id: Optional[int] = None
    payee: Optional[str] = Field(default=None, max_length=120)
    frequency: Frequency
    frequency_interval: Optional[int] = Field(default=None, ge=1, le=3650)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: date
    end_date: Optional[date] = None
    next_due_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    auto_generate: bool = True
    generate_days_ahead: int = Field(default=0, ge=0, le=365)
    generate_as_pending: bool = False
    allow_amount_variation: bool = False
    min_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    max_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringCreate":
        if self.frequency == Frequency.CUSTOM and not self.frequency_interval:
            raise ValueError("frequency_interval is required for custom frequency")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        if self.type == TxnType.TRANSFER:
            if self.transfer_account_id is None:
                raise ValueError("transfer_account_id is required for transfers")
            if self.transfer_account_id == self.account_id:
                raise ValueError("cannot transfer to the same account")
        elif self.transfer_account_id is not None:
            raise ValueError("transfer_account_id is only allowed for transfers")
        return self


class RecurringUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category_id: Optional[int] = None
    payee: Optional[str] = Field(default=None, max_length=120)
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    auto_generate: Optional[bool] = None
    generate_days_ahead: Optional[int] = Field(default=None, ge=0, le=365)
    generate_as_pending: Optional[bool] = None
    allow_amount_variation: Optional[bool] = None
    min_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    max_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=2000)


class BillCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    frequency: Frequency = Frequency.MONTHLY
    frequency_interval: Optional[int] = Field(default=None, ge=1, le=3650)
    next_due_date: date
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    end_date: Optional[date] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    payee: Optional[str] = Field(default=None, max_length=120)
    is_fixed_amount: bool = True
    minimum_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    maximum_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    reminder_enabled: bool = True
    reminder_days_before: int = Field(default=3, ge=0, le=60)
    second_reminder_days_before: Optional[int] = Field(default=None, ge=0, le=60)
    auto_pay_enabled: bool = False
    auto_pay_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    reference_number: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _check_bill(self) -> "BillCreate":
        if self.frequency == Frequency.CUSTOM and not self.frequency_interval:
            raise ValueError("frequency_interval is required for custom frequency")
        if self.auto_pay_enabled and self.account_id is None:
            raise ValueError("auto pay requires an account")
        if (
            self.second_reminder_days_before is not None
            and self.second_reminder_days_before >= self.reminder_days_before
        ):
            raise ValueError("second reminder must come after the first one")
        return self


class BillUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    payee: Optional[str] = Field(default=None, max_length=120)
    is_fixed_amount: Optional[bool] = None
    minimum_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    maximum_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    end_date: Optional[date] = None
    reminder_enabled: Optional[bool] = None
    reminder_days_before: Optional[int] = Field(default=None, ge=0, le=60)
    second_reminder_days_before: Optional[int] = Field(default=None, ge=0, le=60)
    auto_pay_enabled: Optional[bool] = None
    auto_pay_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    reference_number: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=2000)


class ReminderNotice(BaseModel):
    bill_id: int
    user_id: int
    stage: str
    due_date: date
    amount: Decimal
    message: str


class ScheduleSummary(BaseModel):
    active_count: int
    monthly_income: Decimal
    monthly_expenses: Decimal
    upcoming: list[tuple[int, date, Decimal]]

    @computed_field  # type: ignore[misc]
    @property
    def monthly_net(self) -> Decimal:
        return self.monthly_income - self.monthly_expenses


class BillSummary(BaseModel):
    active_count: int
    monthly_total: Decimal
    due_soon: list[int]
    overdue: list[int]
    auto_pay_count: int


class BatchResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    failed_ids: list[int] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Goals


class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    target_amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)
    goal_type: GoalType = GoalType.OTHER
    priority: GoalPriority = GoalPriority.MEDIUM
    start_date: Optional[date] = None
    target_date: Optional[date] = None
    account_id: Optional[int] = None
    funding_account_id: Optional[int] = None
    milestones: Optional[list[int]] = None
    auto_contribute: bool = False
    auto_contribute_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    auto_contribute_frequency: Optional[Frequency] = None
    next_contribution_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("milestones")
    @classmethod
    def _check_milestones(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is None:
            return value
        if any(m <= 0 or m > 100 for m in value):
            raise ValueError("milestones are percentages between 1 and 100")
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_auto_contribution(self) -> "GoalCreate":
        if self.start_date and self.target_date and self.target_date <= self.start_date:
            raise ValueError("target_date must be after start_date")
        if self.auto_contribute:
            if self.auto_contribute_amount is None or self.auto_contribute_frequency is None:
                raise ValueError("auto contributions need an amount and a frequency")
            if self.auto_contribute_frequency == Frequency.CUSTOM:
                raise ValueError("auto contributions do not support custom frequency")
        return self


class ContributionPlan(BaseModel):
    goal_id: int
    remaining_amount: Decimal
    months_left: int | None
    weeks_left: int | None
    required_monthly: Decimal | None
    required_weekly: Decimal | None
    on_track: bool


class GoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    goal_type: Optional[GoalType] = None
    priority: Optional[GoalPriority] = None
    account_id: Optional[int] = None
    funding_account_id: Optional[int] = None
    auto_contribute: Optional[bool] = None
    auto_contribute_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    auto_contribute_frequency: Optional[Frequency] = None
    next_contribution_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class GoalSummary(BaseModel):
    active_count: int
    total_target: Decimal
    total_current: Decimal
    total_remaining: Decimal
    average_progress: Decimal
    on_track_count: int
    overdue_count: int
    completed_count: int


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_amount: Decimal
    current_amount: Decimal
    status: GoalStatus
    progress_percentage: Decimal
    excess_amount: Decimal
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# User summaries


class UserSummary(BaseModel):
    user_id: int
    net_worth: Decimal
    monthly_income: Decimal
    monthly_expenses: Decimal
    within_budget: bool
    active_budget_id: Optional[int] = None
    low_balance_accounts: list[AccountOut] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def monthly_savings(self) -> Decimal:
        return self.monthly_income - self.monthly_expenses
