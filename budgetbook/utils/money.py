from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest drift tolerated between two money amounts that should agree
TOLERANCE = CENT


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` to a two-place Decimal.

    Floats go through ``str`` so binary artefacts (0.1 + 0.2) never leak in.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        amount = Decimal(value)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_money(value)
    return to_money(total)


def percentage(part: Any, whole: Any) -> Decimal:
    """``part / whole * 100`` to two places; 0 when ``whole`` is 0."""
    denominator = to_money(whole)
    if denominator == 0:
        return ZERO
    return (to_money(part) / denominator * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def within_tolerance(left: Any, right: Any) -> bool:
    return abs(to_money(left) - to_money(right)) <= TOLERANCE


def format_money(value: Any) -> str:
    return f"${to_money(value):,.2f}"
