from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

TWO_PLACES = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def parse_optional_money(value: Any) -> Optional[Decimal]:
    """Parse a user-supplied money amount.

    ``None``, empty strings, NaN/infinity and anything non-numeric become
    ``None``. Valid amounts are quantized to cents. Sign is preserved so
    callers decide whether negatives are acceptable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = Decimal(str(value))
    elif isinstance(value, str):
        raw = value.strip().replace(" ", "").replace(",", ".")
        if not raw:
            return None
        try:
            parsed = Decimal(raw)
        except InvalidOperation:
            return None
    else:
        return None
    if not parsed.is_finite():
        return None
    return quantize(parsed)
