# Overview: Decimal helpers for monetary and rate fields.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import InvalidAmountError

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value, *, field: str = "amount") -> Decimal | None:
    """
    Coerce int/str/float/Decimal to Decimal.

    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    Raises InvalidAmountError for anything that does not parse.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidAmountError(f"{field} must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        raise InvalidAmountError(f"{field} must be a number")


def or_zero(value) -> Decimal:
    return value if value is not None else ZERO


def quantize_cents(value: Decimal) -> Decimal:
    """Round half-up to 2 decimal places."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str | None:
    return str(value) if value is not None else None
