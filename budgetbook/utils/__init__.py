from .money import CENT, TOLERANCE, ZERO, format_money, money_sum, percentage, to_money, within_tolerance
from .dates import add_months, clamp_day, inclusive_days, month_bounds, months_between

__all__ = [
    "CENT",
    "TOLERANCE",
    "ZERO",
    "format_money",
    "money_sum",
    "percentage",
    "to_money",
    "within_tolerance",
    "add_months",
    "clamp_day",
    "inclusive_days",
    "month_bounds",
    "months_between",
]
