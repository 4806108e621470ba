"""
Decimal helpers.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def safe_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Safely convert a value to Decimal.

    Returns default for None, NaN, Infinity, and invalid values.
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        if value.is_nan() or value.is_infinite():
            return default
        return value
    try:
        result = Decimal(str(value))
        # Reject NaN and Infinity
        if result.is_nan() or result.is_infinite():
            return default
        return result
    except (InvalidOperation, ValueError, TypeError):
        return default


def parse_decimal(value: Any) -> Decimal | None:
    """Parse a wire value (str/int/float/Decimal) to a finite Decimal, or None if it is not one."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not result.is_finite():
        return None
    return result


def is_finite_number(value: Any) -> bool:
    """True for int/float/Decimal values that are finite. Strings and bools are rejected."""
    if isinstance(value, bool):
        return False
    if isinstance(value, Decimal):
        return value.is_finite()
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value == value and value not in (float("inf"), float("-inf"))
    return False


def fmt_price(value: Decimal | None, places: int = 8) -> str:
    """Fixed-point rendering for logs and alerts."""
    if value is None:
        return "n/a"
    if not value.is_finite():
        return str(value)
    return f"{value:.{places}f}"
