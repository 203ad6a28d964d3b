from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ..core.constants import CENT
from ..core.errors import InvalidInput


def money(value, field: str = "amount") -> Decimal:
    """
    Normalize a monetary value to a 2-decimal Decimal.

    Floats go through str() so 0.1 stays 0.10 instead of 0.1000000000000000055.
    """
    if value is None or isinstance(value, bool):
        raise InvalidInput(f"{field} is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise InvalidInput(f"{field} must be a finite number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def remaining(total_amount: Decimal, paid_amount: Decimal) -> Decimal:
    """Outstanding balance, never reported below zero."""
    balance = money(total_amount) - money(paid_amount)
    return balance if balance > 0 else Decimal("0.00")
