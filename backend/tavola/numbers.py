"""
Numeric conventions:
- Money is integer cents everywhere; rounding to cents is half-up.
- Stock quantities are Decimals with three places (grams/millilitres resolution
  for kg/l units).
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

QTY_PLACES = Decimal("0.001")
ZERO = Decimal("0")


def to_decimal(value, *, field: str = "quantity") -> Decimal:
    """Parse int/str/Decimal (and floats via their repr) into a Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"{field} must be a number")
    if not result.is_finite():
        raise ValueError(f"{field} must be a finite number")
    return result


def quantize_qty(value: Decimal) -> Decimal:
    return value.quantize(QTY_PLACES, rounding=ROUND_HALF_UP)


def round_cents(value) -> int:
    """Round a Decimal amount of cents half-up to an int."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def qty_to_json(value) -> float | None:
    if value is None:
        return None
    return float(value)
