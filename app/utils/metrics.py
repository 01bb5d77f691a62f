"""Pure money / ratio helpers used by the calculator, reconciliation & aggregates."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

WHOLE_UNIT = Decimal("1")
CENT = Decimal("0.01")


def to_money(value: Decimal | float | int | str | None) -> Decimal:
    """Coerce to Decimal; floats go through str() to avoid binary artefacts."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_half_up(value: Decimal, quantum: Decimal = WHOLE_UNIT) -> Decimal:
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def safe_div(numerator: Decimal | float | int, denominator: Decimal | float | int) -> float:
    if denominator in (0, 0.0) or denominator == Decimal("0"):
        return 0.0
    return float(numerator) / float(denominator)


def pct_change(old_value: Decimal | float | int, new_value: Decimal | float | int) -> float:
    """Percentage change old -> new; 0.0 when there is no base to compare against."""
    return round(safe_div(to_money(new_value) - to_money(old_value), old_value) * 100, 2)


def money_sum(values: Iterable[Decimal | float | int | None]) -> Decimal:
    total = Decimal("0")
    for value in values:
        total += to_money(value)
    return total


__all__ = ["WHOLE_UNIT", "CENT", "to_money", "round_half_up", "safe_div", "pct_change", "money_sum"]
