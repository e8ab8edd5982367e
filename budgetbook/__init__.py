"""Personal finance bookkeeping core: accounts, transactions, budgets, schedules and goals."""

__version__ = "0.1.0"
