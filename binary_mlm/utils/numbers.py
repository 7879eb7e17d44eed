# binary_mlm/utils/numbers.py
"""
Conversions between stored JSON numbers and Decimal arithmetic.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Union


def toDecimal(value: Any) -> Decimal:
    """Stored number (int, float, str or None) to Decimal; garbage reads as zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def toNumber(value: Decimal) -> Union[int, float]:
    """Decimal to a JSON-friendly number, keeping integers integral."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)
