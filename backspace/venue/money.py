"""Fixed-point money helpers.

Amounts are ``Decimal`` values quantized to cents. Floats are accepted only
through their string form so ``0.1`` stays ``0.10``.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from .errors import ValidationError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
MINUTES_PER_HOUR = 60


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    """Coerce ``value`` to a cent-quantized ``Decimal``."""

    if value is None:
        return ZERO
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValidationError(f"Invalid money amount: {value!r}")
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        # quantize overflows the context precision on out-of-range magnitudes
        raise ValidationError(f"Invalid money amount: {value!r}") from exc


def format_money(amount: Decimal) -> str:
    return f"{to_money(amount):.2f}"


def line_amount(quantity: int, rate: Decimal) -> Decimal:
    return to_money(rate * quantity)


def total(amounts: Iterable[Decimal]) -> Decimal:
    return to_money(sum(amounts, ZERO))


def session_cost(minutes: int, hourly_rate: Decimal, daily_cap: Decimal = ZERO) -> Decimal:
    """Prorate ``hourly_rate`` linearly over ``minutes``.

    No minimum charge and no billing increments. A positive ``daily_cap``
    bounds the result.
    """

    if minutes <= 0:
        return ZERO
    cost = to_money(Decimal(minutes) * hourly_rate / MINUTES_PER_HOUR)
    if daily_cap > 0 and cost > daily_cap:
        return to_money(daily_cap)
    return cost
