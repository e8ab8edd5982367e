"""
Service layer

Each service wraps a SQLAlchemy session and runs every command as one
atomic unit of work.
"""

from .account_service import AccountService
from .balance_service import TransactionBalanceService
from .bill_service import BillService
from .budget_service import BudgetService
from .category_service import CategoryService
from .goal_service import GoalService
from .recurring_service import RecurringTransactionService
from .transaction_service import TransactionService
from .user_service import UserService

__all__ = [
    "AccountService",
    "BillService",
    "BudgetService",
    "CategoryService",
    "GoalService",
    "RecurringTransactionService",
    "TransactionBalanceService",
    "TransactionService",
    "UserService",
]
