"""Decimal helpers for currency amounts. Floats never touch money."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, float, str]


def to_money(value: MoneyLike) -> Decimal:
    """Coerce to Decimal via ``str`` so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: MoneyLike) -> Decimal:
    """Round half-up to whole cents."""
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: MoneyLike) -> int:
    """Dollars to cents for processor APIs."""
    return int((round2(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return round2(Decimal(cents) / Decimal(100))


__all__ = ["CENT", "ZERO", "to_money", "round2", "to_minor_units", "from_minor_units"]
