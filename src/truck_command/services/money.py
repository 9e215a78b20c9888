"""
Money helpers

Amounts are stored in Numeric(12, 2) columns and handled as Decimal.
JSON responses carry them as floats.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Decimal for a stored or submitted amount; None and blanks are zero"""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def money_to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(round_money(value))


def format_money(value: Any) -> str:
    """Two-decimal text for CSV exports and messages"""
    return f"{round_money(value):.2f}"


def from_cents(cents: Any) -> Decimal:
    """Stripe amounts are integer cents"""
    return round_money(to_decimal(cents) / 100)
