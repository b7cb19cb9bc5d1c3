from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    # Route floats through str() so 0.1 becomes Decimal("0.1"), not its binary expansion.
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value: Any) -> Decimal:
    # Half-up to whole cents, matching how invoices are printed.
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Any) -> str:
    # Stable textual form for JSON payloads and hash inputs.
    return format(round_money(value), "f")
