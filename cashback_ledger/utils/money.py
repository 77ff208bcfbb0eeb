from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from ..core.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_amount(value: Union[Decimal, int, float, str, None], field: str = "amount") -> Decimal:
    """Coerce `value` to a 2-place Decimal, rounding half up."""
    if value is None:
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_positive_amount(value, field: str = "amount") -> Decimal:
    amount = to_amount(value, field)
    if amount <= ZERO:
        raise ValidationError(f"{field} must be greater than zero")
    return amount


def to_non_negative_amount(value, field: str = "amount") -> Decimal:
    amount = to_amount(value, field)
    if amount < ZERO:
        raise ValidationError(f"{field} must not be negative")
    return amount
