"""
Money Helpers Module

Currency arithmetic for a single-currency lending book. Every amount is a
Decimal rounded half-up to 2 decimal places after each operation. NEVER uses
float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable, Optional

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# Threshold below which an amount is "effectively zero"
EPSILON = Decimal('0.01')


def round_amount(value: Decimal) -> Decimal:
    """Round a Decimal to 2 decimal places (half-up)"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_amount(value: Any) -> Optional[Decimal]:
    """
    Parse an incoming amount into a rounded Decimal.

    Accepts Decimal, int, float and numeric strings. Returns None for
    anything unparseable or non-finite (NaN, Infinity), and for booleans.
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, str):
            amount = Decimal(value.strip())
        else:
            amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None

    if not amount.is_finite():
        return None

    return round_amount(amount)


def amount_or_zero(value: Any) -> Decimal:
    """Like to_amount, but unparseable input counts as zero"""
    amount = to_amount(value)
    return amount if amount is not None else ZERO


def add(a: Decimal, b: Decimal) -> Decimal:
    return round_amount(a + b)


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return round_amount(a - b)


def multiply(a: Decimal, b: Any) -> Decimal:
    if not isinstance(b, Decimal):
        b = Decimal(str(b))
    return round_amount(a * b)


def divide(a: Decimal, b: Any) -> Decimal:
    if not isinstance(b, Decimal):
        b = Decimal(str(b))
    return round_amount(a / b)


def total(values: Iterable[Decimal]) -> Decimal:
    result = ZERO
    for value in values:
        result = add(result, value)
    return result


def is_effectively_zero(value: Decimal) -> bool:
    """True when the absolute amount is below one cent"""
    return abs(value) < EPSILON


def approximately_equal(a: Decimal, b: Decimal) -> bool:
    return is_effectively_zero(a - b)
