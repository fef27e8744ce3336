"""Utilities for working with money, points and interest rates."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .exceptions import ValidationError

CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    if isinstance(value, bool):
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {value!r}") from exc
    else:
        raise ValidationError(f"Unsupported amount type: {type(value)!r}")

    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValidationError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValidationError("Amount must be greater than zero.")
    return amount


def to_points(value: int | str | Decimal) -> int:
    """Convert ``value`` to a whole number of points."""

    if isinstance(value, bool):
        raise ValidationError("Points must be a whole number.")
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid points value: {value!r}") from exc
    if not number.is_finite() or number != number.to_integral_value():
        raise ValidationError("Points must be a whole number.")
    return int(number)


def to_rate(value: AmountLike) -> Decimal:
    """Return ``value`` as an interest rate in ``[0, 1]`` with four decimal places."""

    if isinstance(value, bool):
        raise ValidationError("Interest rate must be a number.")
    try:
        rate = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid interest rate: {value!r}") from exc
    if not rate.is_finite() or rate < Decimal("0") or rate > Decimal("1"):
        raise ValidationError("Interest rate must be between 0 and 1.")
    return rate.quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(CENT)


def format_currency(amount: Decimal, *, symbol: str = "$") -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``$12.34``)."""

    return f"{symbol}{amount.quantize(CENT, rounding=ROUND_HALF_UP):,.2f}"


def format_rate(rate: Decimal) -> str:
    """Return ``rate`` as a percentage with one decimal place (e.g. ``5.0%``)."""

    return f"{(rate * 100).quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)}%"
