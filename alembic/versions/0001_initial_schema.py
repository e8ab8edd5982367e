"""
Initial bookkeeping schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


# On SQLite these become CHECK-constrained VARCHAR columns
account_type = sa.Enum('checking', 'savings', 'credit', 'investment', 'loan', 'cash', name='account_type')
category_type = sa.Enum('income', 'expense', 'transfer', name='category_type')
txn_type = sa.Enum('income', 'expense', 'transfer', name='txn_type')
transfer_direction = sa.Enum('out', 'in', name='transfer_direction')
budget_period = sa.Enum('weekly', 'monthly', 'yearly', 'custom', name='budget_period')
budget_status = sa.Enum('active', 'completed', 'paused', name='budget_status')
frequency = sa.Enum(
    'daily', 'weekly', 'bi_weekly', 'monthly', 'quarterly', 'semi_annual', 'annual', 'custom',
    name='frequency',
)
schedule_status = sa.Enum('active', 'paused', 'cancelled', 'completed', name='schedule_status')
goal_type = sa.Enum(
    'emergency_fund', 'vacation', 'house', 'car', 'retirement', 'education', 'debt_payoff', 'investment', 'other',
    name='goal_type',
)
goal_status = sa.Enum('active', 'completed', 'paused', name='goal_status')
goal_priority = sa.Enum('low', 'medium', 'high', name='goal_priority')

MONEY = sa.Numeric(15, 2)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'userprofile',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False, unique=True),
        sa.Column('display_name', sa.String(length=100), nullable=True),
        sa.Column('base_currency', sa.String(length=3), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('low_balance_threshold', MONEY, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'account',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('type', account_type, nullable=False),
        sa.Column('institution', sa.String(length=120), nullable=True),
        sa.Column('balance', MONEY, nullable=False),
        sa.Column('initial_balance', MONEY, nullable=False),
        sa.Column('credit_limit', MONEY, nullable=True),
        sa.Column('interest_rate', sa.Numeric(7, 4), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('include_in_net_worth', sa.Boolean(), nullable=False),
        sa.Column('balance_updated_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'name', name='uq_account_name'),
        sa.CheckConstraint("type = 'credit' OR credit_limit IS NULL", name='ck_account_credit_limit_only_credit'),
    )

    op.create_table(
        'category',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('category.id', ondelete='SET NULL'), nullable=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('type', category_type, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_budgetable', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('parent_id IS NULL OR parent_id != id', name='ck_category_parent_not_self'),
    )
    op.create_index('ix_category_user_type', 'category', ['user_id', 'type'])

    op.create_table(
        'budget',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('period_type', budget_period, nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('planned_income', MONEY, nullable=False),
        sa.Column('planned_expenses', MONEY, nullable=False),
        sa.Column('actual_income', MONEY, nullable=False),
        sa.Column('actual_expenses', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', budget_status, nullable=False),
        sa.Column('alert_threshold', sa.Integer(), nullable=False),
        sa.Column('rollover_unused', sa.Boolean(), nullable=False),
        sa.Column('deduct_overspent', sa.Boolean(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_calculated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('end_date > start_date', name='ck_budget_dates'),
        sa.CheckConstraint('alert_threshold BETWEEN 50 AND 100', name='ck_budget_alert_threshold'),
    )
    op.create_index('ix_budget_user_dates', 'budget', ['user_id', 'start_date', 'end_date'])

    op.create_table(
        'budgetcategory',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('budget_id', sa.Integer(), sa.ForeignKey('budget.id', ondelete='CASCADE'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('category.id'), nullable=False),
        sa.Column('allocated_amount', MONEY, nullable=False),
        sa.Column('spent_amount', MONEY, nullable=False),
        sa.Column('remaining_amount', MONEY, nullable=False),
        sa.Column('usage_percentage', MONEY, nullable=False),
        sa.Column('previous_period_spent', MONEY, nullable=True),
        sa.Column('alert_threshold', sa.Integer(), nullable=True),
        sa.Column('alert_on_overspend', sa.Boolean(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_calculated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('budget_id', 'category_id', name='uq_budget_category'),
        sa.CheckConstraint('allocated_amount >= 0', name='ck_budget_category_allocated'),
        sa.CheckConstraint('priority BETWEEN 1 AND 5', name='ck_budget_category_priority'),
    )

    op.create_table(
        'recurringtransaction',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('category.id'), nullable=True),
        sa.Column('transfer_account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=True),
        sa.Column('type', txn_type, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('payee', sa.String(length=120), nullable=True),
        sa.Column('frequency', frequency, nullable=False),
        sa.Column('frequency_interval', sa.Integer(), nullable=True),
        sa.Column('day_of_month', sa.Integer(), nullable=True),
        sa.Column('day_of_week', sa.Integer(), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('next_due_date', sa.Date(), nullable=False),
        sa.Column('max_occurrences', sa.Integer(), nullable=True),
        sa.Column('occurrences_count', sa.Integer(), nullable=False),
        sa.Column('status', schedule_status, nullable=False),
        sa.Column('auto_generate', sa.Boolean(), nullable=False),
        sa.Column('generate_days_ahead', sa.Integer(), nullable=False),
        sa.Column('generate_as_pending', sa.Boolean(), nullable=False),
        sa.Column('allow_amount_variation', sa.Boolean(), nullable=False),
        sa.Column('min_amount', MONEY, nullable=True),
        sa.Column('max_amount', MONEY, nullable=True),
        sa.Column('last_generated_at', sa.DateTime(), nullable=True),
        sa.Column('total_generated_amount', MONEY, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_recurring_amount_positive'),
        sa.CheckConstraint("frequency != 'custom' OR frequency_interval >= 1", name='ck_recurring_custom_interval'),
        sa.CheckConstraint(
            'max_occurrences IS NULL OR occurrences_count <= max_occurrences',
            name='ck_recurring_occurrences',
        ),
    )
    op.create_index('ix_recurring_due', 'recurringtransaction', ['status', 'next_due_date'])

    op.create_table(
        'bill',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=True),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('category.id'), nullable=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('payee', sa.String(length=120), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('is_fixed_amount', sa.Boolean(), nullable=False),
        sa.Column('minimum_amount', MONEY, nullable=True),
        sa.Column('maximum_amount', MONEY, nullable=True),
        sa.Column('average_amount', MONEY, nullable=True),
        sa.Column('frequency', frequency, nullable=False),
        sa.Column('frequency_interval', sa.Integer(), nullable=True),
        sa.Column('due_day', sa.Integer(), nullable=True),
        sa.Column('next_due_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('status', schedule_status, nullable=False),
        sa.Column('reminder_enabled', sa.Boolean(), nullable=False),
        sa.Column('reminder_days_before', sa.Integer(), nullable=False),
        sa.Column('second_reminder_days_before', sa.Integer(), nullable=True),
        sa.Column('first_reminder_sent_for', sa.Date(), nullable=True),
        sa.Column('second_reminder_sent_for', sa.Date(), nullable=True),
        sa.Column('auto_pay_enabled', sa.Boolean(), nullable=False),
        sa.Column('auto_pay_amount', MONEY, nullable=True),
        sa.Column('total_paid', MONEY, nullable=False),
        sa.Column('payment_count', sa.Integer(), nullable=False),
        sa.Column('last_paid_date', sa.Date(), nullable=True),
        sa.Column('last_paid_amount', MONEY, nullable=True),
        sa.Column('missed_payments', sa.Integer(), nullable=False),
        sa.Column('reference_number', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_bill_amount_positive'),
        sa.CheckConstraint("frequency != 'custom' OR frequency_interval >= 1", name='ck_bill_custom_interval'),
        sa.UniqueConstraint('user_id', 'name', name='uq_bill_name'),
    )

    op.create_table(
        'transaction',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), sa.ForeignKey('category.id'), nullable=False),
        sa.Column('transfer_account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=True),
        sa.Column('transfer_direction', transfer_direction, nullable=True),
        sa.Column(
            'transfer_transaction_id',
            sa.Integer(),
            sa.ForeignKey('transaction.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('type', txn_type, nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('payee', sa.String(length=120), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('is_pending', sa.Boolean(), nullable=False),
        sa.Column(
            'parent_transaction_id',
            sa.Integer(),
            sa.ForeignKey('transaction.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('is_split', sa.Boolean(), nullable=False),
        sa.Column(
            'recurring_transaction_id',
            sa.Integer(),
            sa.ForeignKey('recurringtransaction.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('bill_id', sa.Integer(), sa.ForeignKey('bill.id', ondelete='SET NULL'), nullable=True),
        sa.Column('reference_number', sa.String(length=64), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_txn_amount_positive'),
        sa.CheckConstraint(
            "(type = 'transfer' AND transfer_account_id IS NOT NULL AND transfer_direction IS NOT NULL)"
            " OR (type != 'transfer' AND transfer_account_id IS NULL AND transfer_direction IS NULL)",
            name='ck_txn_transfer_rules',
        ),
        sa.CheckConstraint(
            'transfer_account_id IS NULL OR transfer_account_id != account_id',
            name='ck_txn_transfer_not_same_account',
        ),
        sa.CheckConstraint(
            'transfer_transaction_id IS NULL OR transfer_transaction_id != id', name='ck_txn_not_link_self'
        ),
        sa.CheckConstraint(
            'parent_transaction_id IS NULL OR parent_transaction_id != id', name='ck_txn_not_parent_self'
        ),
    )
    op.create_index('ix_txn_user_date', 'transaction', ['user_id', 'transaction_date'])
    op.create_index('ix_txn_account_id', 'transaction', ['account_id'])
    op.create_index('ix_txn_category_id', 'transaction', ['category_id'])

    op.create_table(
        'goal',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id', ondelete='SET NULL'), nullable=True),
        sa.Column(
            'funding_account_id',
            sa.Integer(),
            sa.ForeignKey('account.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('goal_type', goal_type, nullable=False),
        sa.Column('priority', goal_priority, nullable=False),
        sa.Column('target_amount', MONEY, nullable=False),
        sa.Column('current_amount', MONEY, nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('target_date', sa.Date(), nullable=True),
        sa.Column('status', goal_status, nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('excess_amount', MONEY, nullable=False),
        sa.Column('milestones', sa.JSON(), nullable=False),
        sa.Column('reached_milestones', sa.JSON(), nullable=False),
        sa.Column('auto_contribute', sa.Boolean(), nullable=False),
        sa.Column('auto_contribute_amount', MONEY, nullable=True),
        sa.Column('auto_contribute_frequency', frequency, nullable=True),
        sa.Column('next_contribution_date', sa.Date(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('target_amount > 0', name='ck_goal_target_positive'),
        sa.CheckConstraint('current_amount >= 0', name='ck_goal_current_non_negative'),
    )


def downgrade() -> None:
    op.drop_table('goal')
    op.drop_index('ix_txn_category_id', table_name='transaction')
    op.drop_index('ix_txn_account_id', table_name='transaction')
    op.drop_index('ix_txn_user_date', table_name='transaction')
    op.drop_table('transaction')
    op.drop_table('bill')
    op.drop_index('ix_recurring_due', table_name='recurringtransaction')
    op.drop_table('recurringtransaction')
    op.drop_table('budgetcategory')
    op.drop_index('ix_budget_user_dates', table_name='budget')
    op.drop_table('budget')
    op.drop_index('ix_category_user_type', table_name='category')
    op.drop_table('category')
    op.drop_table('account')
    op.drop_table('userprofile')
    op.drop_table('user')
