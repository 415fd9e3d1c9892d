"""
Cash math helpers. All money is Decimal rounded half-up to centavos.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from app.pos.errors import ActionError

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
MONEY_EPS = Decimal("0.01")
# Drawer comparisons tolerate half a centavo.
DRAWER_EPS = Decimal("0.005")


def to_decimal(value: Any, default: Decimal | None = ZERO) -> Decimal | None:
    """Parse a form/JSON value ("₱1,250.50", 12, None) into a Decimal, or return default."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    raw = str(value).strip().replace(",", "").replace("₱", "").replace("PHP", "").strip()
    if raw == "":
        return default
    try:
        d = Decimal(raw)
    except InvalidOperation:
        return default
    if not d.is_finite():
        return default
    return d


def require_decimal(value: Any, label: str) -> Decimal:
    d = to_decimal(value, default=None)
    if d is None:
        raise ActionError(f"{label} must be a number.")
    return d


def r2(value: Any) -> Decimal:
    d = to_decimal(value)
    return (d or ZERO).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


def peso(value: Any) -> str:
    d = r2(value)
    sign = "-" if d < 0 else ""
    return f"{sign}₱{abs(d):,.2f}"
