"""
Fixed-point currency helpers.

All amounts are ``Decimal`` rounded to two places (half-up) after every
computed step; nothing is accumulated unrounded across steps.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Matches Numeric(12, 2) columns
MAX_AMOUNT = Decimal("9999999999.99")


def to_money(value, field: str = "amount") -> Decimal:
    """Coerce JSON/DB input to a 2-place Decimal. Floats go through str() to avoid binary noise."""
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    try:
        if isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})
    return checked_amount(amount, field)


def checked_amount(value: Decimal, field: str = "amount") -> Decimal:
    """Round a value to cents, rejecting anything a Numeric(12, 2) column cannot hold."""
    value = Decimal(value)
    # Bound the magnitude first: quantize fails past the context precision
    if value.adjusted() > MAX_AMOUNT.adjusted():
        raise ValidationError(f"{field} exceeds {MAX_AMOUNT}", details={"field": field})
    amount = round2(value)
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} exceeds {MAX_AMOUNT}", details={"field": field})
    return amount


def round2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal | None) -> str | None:
    """Serialize for JSON ("23.20"); strings keep the exact fixed-point value."""
    if value is None:
        return None
    return str(round2(value))
