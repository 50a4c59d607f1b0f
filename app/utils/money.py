"""Conversion between decimal major units (dollars) and integer minor units (cents).

Everything below the HTTP boundary works in integer cents.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from app.core.exceptions import InvalidAmount

Amount = Union[Decimal, int, float, str]

_HUNDRED = Decimal("100")


def to_minor_units(amount: Amount) -> int:
    """Convert a decimal amount to integer cents, rounding half up."""
    if isinstance(amount, bool):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    return int((value * _HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal."""
    return (Decimal(int(cents)) / _HUNDRED).quantize(Decimal("0.01"))
