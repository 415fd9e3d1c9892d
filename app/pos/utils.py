from __future__ import annotations

import json
import re
import secrets
from datetime import date, datetime
from typing import Any

from app.pos.errors import ActionError

SHORT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_NON_DIGITS = re.compile(r"\D+")


def digits_only(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def to_e164_ph(raw: str | None) -> str:
    """
    Normalize a Philippine mobile number to +639XXXXXXXXX.
    Returns "" when the input cannot be a PH mobile number.
    """
    d = digits_only(raw)
    if len(d) == 11 and d.startswith("09"):
        return "+63" + d[1:]
    if len(d) == 10 and d.startswith("9"):
        return "+63" + d
    if len(d) == 12 and d.startswith("639"):
        return "+" + d
    if len(d) == 13 and d.startswith("0639"):
        return "+" + d[1:]
    return ""


def to_e164_prefix(raw: str | None) -> str:
    """Partial number typed into a search box → E.164 prefix usable in a LIKE/contains match."""
    d = digits_only(raw)
    if not d:
        return ""
    if d.startswith("09"):
        return "+63" + d[1:]
    if d.startswith("639"):
        return "+" + d
    if d.startswith("9"):
        return "+63" + d
    return d


def generate_short_code(length: int = 6) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def order_code(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"OS-{now:%Y%m}-{generate_short_code(6)}"


def run_code(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"RN-{now:%y%m%d}-{generate_short_code(4)}"


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD; raise ActionError on garbage."""
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ActionError(f"Invalid date: {s}")


def parse_datetime(s: str | None) -> datetime | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        raise ActionError(f"Invalid date/time: {s}")


def parse_int(raw: Any) -> int | None:
    try:
        v = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


def parse_json_list(raw: str | None, label: str) -> list[dict[str, Any]]:
    """Form fields like itemsJson / loadoutJson carry a JSON array of objects."""
    if not raw or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ActionError(f"{label} is not valid JSON.")
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ActionError(f"{label} must be a list of objects.")
    return value


def parse_json_object(raw: str | None, label: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ActionError(f"{label} is not valid JSON.")
    if not isinstance(value, dict):
        raise ActionError(f"{label} must be a JSON object.")
    return value
