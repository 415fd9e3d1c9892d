from decimal import Decimal

import pytest

from app.pos.errors import ActionError
from app.pos.modules.catalog.models import UNIT_PACK, UNIT_RETAIL
from app.pos.modules.customers.service import create_customer, create_price_rule
from app.pos.modules.pricing.service import (
    PERCENT_OFF,
    PRICE_OVERRIDE,
    PricedItem,
    Rule,
    Selector,
    allowed_unit_price,
    apply_discounts,
    infer_unit_kind,
    rules_for_customer,
)


def _item(price="100", qty="1", unit_kind=None, product_id=1):
    return PricedItem(product_id=product_id, qty=Decimal(qty), unit_price=Decimal(price), unit_kind=unit_kind, name="Rice")


def test_no_rules_is_base_price():
    q = apply_discounts([_item(qty="3")], [])
    assert q.subtotal == Decimal("300.00")
    assert q.total == Decimal("300.00")
    assert q.discount_total == Decimal("0.00")
    assert q.discounts == []


def test_highest_priority_override_wins():
    rules = [
        Rule("a", "Low", PRICE_OVERRIDE, priority=1, price_override=Decimal("90")),
        Rule("b", "High", PRICE_OVERRIDE, priority=5, price_override=Decimal("95")),
    ]
    q = apply_discounts([_item(qty="2")], rules)
    assert q.items[0].effective_unit_price == Decimal("95.00")
    assert q.items[0].applied_rule_ids == ["b"]
    assert q.total == Decimal("190.00")
    assert q.discounts == [{"rule_id": "b", "name": "High", "amount": Decimal("10.00")}]


def test_override_priority_tie_breaks_on_rule_id():
    rules = [
        Rule("b", "B", PRICE_OVERRIDE, priority=1, price_override=Decimal("80")),
        Rule("a", "A", PRICE_OVERRIDE, priority=1, price_override=Decimal("85")),
    ]
    q = apply_discounts([_item()], rules)
    assert q.items[0].effective_unit_price == Decimal("85.00")


def test_percent_off_stacks_after_override():
    rules = [
        Rule("o", "Override", PRICE_OVERRIDE, priority=10, price_override=Decimal("90")),
        Rule("p1", "Promo", PERCENT_OFF, priority=1, percent_off=Decimal("10")),
        Rule("p2", "Loyalty", PERCENT_OFF, priority=0, percent_off=Decimal("10")),
    ]
    q = apply_discounts([_item()], rules)
    # 100 -> 90 -> 81.00 -> 72.90
    assert q.items[0].effective_unit_price == Decimal("72.90")
    assert q.items[0].applied_rule_ids == ["o", "p1", "p2"]
    assert q.discount_total == Decimal("27.10")
    amounts = {d["rule_id"]: d["amount"] for d in q.discounts}
    assert amounts == {"o": Decimal("10.00"), "p1": Decimal("9.00"), "p2": Decimal("8.10")}


def test_disabled_and_unmatched_rules_are_ignored():
    rules = [
        Rule("off", "Disabled", PERCENT_OFF, enabled=False, percent_off=Decimal("50")),
        Rule("other", "Other product", PERCENT_OFF, Selector(product_ids=(2,)), percent_off=Decimal("50")),
        Rule("retail", "Retail only", PERCENT_OFF, Selector(unit_kind=UNIT_RETAIL), percent_off=Decimal("50")),
    ]
    q = apply_discounts([_item(unit_kind=UNIT_PACK)], rules)
    assert q.total == Decimal("100.00")


def test_unit_kind_selector_matches_items_without_kind():
    rules = [Rule("retail", "Retail", PERCENT_OFF, Selector(unit_kind=UNIT_RETAIL), percent_off=Decimal("10"))]
    q = apply_discounts([_item(unit_kind=None)], rules)
    assert q.total == Decimal("90.00")


def test_customer_rules_feed_allowed_price(db, users, rice, customer):
    create_price_rule(
        db,
        customer,
        {"product_id": rice.id, "unit_kind": "PACK", "mode": "FIXED_DISCOUNT", "value": "50"},
        users["admin"],
    )
    create_price_rule(
        db,
        customer,
        {"product_id": rice.id, "unit_kind": "RETAIL", "mode": "PERCENT_DISCOUNT", "value": "10"},
        users["admin"],
    )
    db.commit()

    rules = rules_for_customer(db, customer.id)
    assert len(rules) == 2
    assert allowed_unit_price(db, customer.id, rice, UNIT_PACK) == Decimal("1200.00")
    assert allowed_unit_price(db, customer.id, rice, UNIT_RETAIL) == Decimal("46.80")
    # Walk-ins pay list price.
    assert allowed_unit_price(db, None, rice, UNIT_PACK) == Decimal("1250.00")


def test_overlapping_active_rules_are_rejected(db, users, rice, customer):
    admin = users["admin"]
    base = {"product_id": rice.id, "unit_kind": "PACK", "mode": "FIXED_PRICE", "value": "1200"}
    create_price_rule(db, customer, {**base, "starts_at": "2026-01-01T00:00", "ends_at": "2026-01-31T23:59"}, admin)
    create_price_rule(db, customer, {**base, "starts_at": "2026-02-01T00:00", "ends_at": "2026-02-28T23:59"}, admin)

    with pytest.raises(ActionError, match="overlapping"):
        create_price_rule(db, customer, {**base, "starts_at": "2026-01-15T00:00", "ends_at": "2026-02-15T00:00"}, admin)
    with pytest.raises(ActionError, match="overlapping"):
        create_price_rule(db, customer, base, admin)

    # Inactive rules and other unit kinds never collide.
    create_price_rule(db, customer, {**base, "active": False}, admin)
    create_price_rule(db, customer, {**base, "unit_kind": "RETAIL", "value": "50"}, admin)


def test_price_rule_validation(db, users, rice, customer):
    admin = users["admin"]
    with pytest.raises(ActionError, match="cannot exceed 100"):
        create_price_rule(db, customer, {"product_id": rice.id, "unit_kind": "PACK", "mode": "PERCENT_DISCOUNT", "value": "120"}, admin)
    with pytest.raises(ActionError, match="Start must be"):
        create_price_rule(
            db,
            customer,
            {
                "product_id": rice.id,
                "unit_kind": "PACK",
                "mode": "FIXED_PRICE",
                "value": "1000",
                "starts_at": "2026-02-01T00:00",
                "ends_at": "2026-01-01T00:00",
            },
            admin,
        )


def test_customer_phone_is_normalized_and_unique(db, users):
    c = create_customer(db, {"first_name": "Jun", "last_name": "Reyes", "phone": "0918 765 4321"}, users["cashier"])
    assert c.phone == "+639187654321"
    with pytest.raises(ActionError, match="already belongs"):
        create_customer(db, {"first_name": "Other", "phone": "+639187654321"}, users["cashier"])


def test_infer_unit_kind_from_price(rice, feeds):
    assert infer_unit_kind(rice, Decimal("52")) == UNIT_RETAIL
    assert infer_unit_kind(rice, Decimal("1250")) == UNIT_PACK
    assert infer_unit_kind(feeds, Decimal("1500")) == UNIT_PACK
