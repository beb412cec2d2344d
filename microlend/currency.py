"""
Amount Handling Module

Decimal precision helpers for lending amounts. A deployment runs in a single
currency (NGN by default); amounts are always Decimal, NEVER float.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Iterable, Union
import re

# High precision for intermediate division before rounding to cents
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')

AmountLike = Union[Decimal, int, str]

CURRENCY_PREFIX_PATTERN = re.compile(r'^(?:[₦$€£]|[A-Z]{3})\s*')
AMOUNT_PATTERN = re.compile(r'^[+-]?\d+(\.\d+)?$')


def round_amount(value: Decimal) -> Decimal:
    """Round to two decimal places, half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an amount to Decimal

    Floats are rejected: binary floating point cannot represent money.

    Raises:
        ValueError: If the value cannot be converted
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Amounts must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling thousands separators and symbols

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Drop a leading currency symbol or code, whitespace and thousands commas
    clean_value = CURRENCY_PREFIX_PATTERN.sub('', value.strip())
    clean_value = re.sub(r'[\s,]', '', clean_value)
    if not AMOUNT_PATTERN.match(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts, yielding 0.00 for an empty iterable"""
    total = ZERO
    for value in values:
        total += value
    return round_amount(total)


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part / whole * 100 rounded to 2 places; 0 when whole is zero"""
    if whole == 0:
        return ZERO
    return round_amount(part / whole * HUNDRED)


def format_amount(amount: Decimal, currency_code: str = "NGN") -> str:
    """Format for display"""
    return f"{currency_code} {amount:,.2f}"
