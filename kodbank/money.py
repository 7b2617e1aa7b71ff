"""
Money Handling Module

Fixed-point decimal amounts with two decimal places. NEVER uses float for
stored or computed monetary values; floats arriving from JSON are converted
through their string form.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import ValidationError

PRECISION = 2
QUANTUM = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')


def quantize(value: Decimal) -> Decimal:
    """
    Round a Decimal to ledger precision

    Raises:
        ValidationError: If the value has more digits than the decimal
            context can hold at two places
    """
    try:
        return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount {value} is too large") from None


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert an incoming value to a finite Decimal

    Args:
        value: Decimal, int, float or numeric string
        field_name: Name used in error messages

    Returns:
        Decimal value (not yet quantized)

    Raises:
        ValidationError: If the value is missing or not a finite number
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str) and value.strip():
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"{field_name} must be a number, got {value!r}")
    else:
        raise ValidationError(f"{field_name} must be a number")

    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def parse_amount(value: Any, field_name: str = "amount") -> Decimal:
    """
    Parse an amount that is about to move money.

    Amounts with more than two decimal places are rejected rather than
    rounded.
    """
    amount = to_decimal(value, field_name)
    if amount != quantize(amount):
        raise ValidationError(
            f"{field_name} cannot have more than {PRECISION} decimal places"
        )
    return quantize(amount)


def format_amount(amount: Decimal) -> str:
    """Format for display and logs"""
    return f"{amount:,.{PRECISION}f}"
