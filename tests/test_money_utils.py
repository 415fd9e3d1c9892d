import re
from datetime import datetime
from decimal import Decimal

import pytest

from app.pos.errors import ActionError
from app.pos.money import clamp, peso, r2, to_decimal
from app.pos.utils import order_code, parse_date, parse_int, parse_json_list, run_code, to_e164_ph, to_e164_prefix


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("09171234567", "+639171234567"),
        ("0917 123 4567", "+639171234567"),
        ("9171234567", "+639171234567"),
        ("639171234567", "+639171234567"),
        ("+63 917-123-4567", "+639171234567"),
        ("12345", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_to_e164_ph(raw, expected):
    assert to_e164_ph(raw) == expected


def test_to_e164_prefix_for_partial_numbers():
    assert to_e164_prefix("0917") == "+63917"
    assert to_e164_prefix("917") == "+63917"
    assert to_e164_prefix("1234") == "1234"
    assert to_e164_prefix("") == ""


def test_to_decimal_accepts_peso_strings():
    assert to_decimal("₱1,250.50") == Decimal("1250.50")
    assert to_decimal(12) == Decimal("12")
    assert to_decimal("abc") == Decimal("0.00")
    assert to_decimal("", default=None) is None
    assert to_decimal("NaN", default=None) is None


def test_r2_rounds_half_up():
    assert r2("2.345") == Decimal("2.35")
    assert r2("2.344") == Decimal("2.34")
    assert r2(None) == Decimal("0.00")


def test_peso_formatting():
    assert peso("1250") == "₱1,250.00"
    assert peso("-75.5") == "-₱75.50"


def test_clamp():
    assert clamp(Decimal("5"), Decimal("0"), Decimal("3")) == Decimal("3")
    assert clamp(Decimal("-1"), Decimal("0"), Decimal("3")) == Decimal("0")


def test_order_and_run_codes():
    now = datetime(2026, 3, 9, 10, 0)
    assert re.fullmatch(r"OS-202603-[A-Z2-9]{6}", order_code(now))
    assert re.fullmatch(r"RN-260309-[A-Z2-9]{4}", run_code(now))


def test_parse_int_rejects_non_positive():
    assert parse_int("7") == 7
    assert parse_int("0") is None
    assert parse_int("-3") is None
    assert parse_int("x") is None
    assert parse_int(None) is None


def test_parse_date_raises_on_garbage():
    assert parse_date("") is None
    assert parse_date("2026-01-31").day == 31
    with pytest.raises(ActionError):
        parse_date("31/01/2026")


def test_parse_json_list():
    assert parse_json_list('[{"product_id": 1, "qty": 2}]', "Loadout") == [{"product_id": 1, "qty": 2}]
    assert parse_json_list("", "Loadout") == []
    with pytest.raises(ActionError, match="not valid JSON"):
        parse_json_list("[{", "Loadout")
    with pytest.raises(ActionError, match="list of objects"):
        parse_json_list("[1, 2]", "Loadout")
