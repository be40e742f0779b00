"""Decimal normalization primitives shared by the ledger and the evaluators."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any

NUMERIC_8 = Decimal("0.00000001")
ZERO = Decimal("0").quantize(NUMERIC_8)

# Share quantities at or below this are treated as a closed position.
POSITION_EPSILON = Decimal("0.0001")


def normalize_decimal(value: Decimal, scale: Decimal = NUMERIC_8, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Quantize decimals to the ledger precision."""
    return value.quantize(scale, rounding=rounding)


def to_decimal(value: Any) -> Decimal:
    """Convert a store, feed or config value to a normalized decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return normalize_decimal(value)
    if isinstance(value, float):
        return normalize_decimal(Decimal(repr(value)))
    return normalize_decimal(Decimal(str(value)))


def decimal_to_str(value: Decimal) -> str:
    """Canonical decimal serialization."""
    return format(value.normalize(), "f") if value != 0 else "0"
