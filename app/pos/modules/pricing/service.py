"""
Discount rule engine shared by order entry, cashier settlement and remit.

Two rule kinds exist:
- PRICE_OVERRIDE replaces the unit price (first matching override by priority wins);
- PERCENT_OFF takes a percentage off the current unit price (all matching rules stack,
  multiplicatively, rounding to centavos after each step).

Customer-specific prices (CustomerItemPrice rows) are converted into rules with priority 10.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from sqlalchemy import or_

from app.pos.modules.catalog.models import UNIT_PACK, UNIT_RETAIL, Product
from app.pos.modules.customers.models import (
    PRICE_MODE_FIXED_DISCOUNT,
    PRICE_MODE_FIXED_PRICE,
    PRICE_MODE_PERCENT_DISCOUNT,
    CustomerItemPrice,
)
from app.pos.money import ZERO, r2

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

PRICE_OVERRIDE = "PRICE_OVERRIDE"
PERCENT_OFF = "PERCENT_OFF"
CUSTOMER_RULE_PRIORITY = 10


@dataclass(frozen=True)
class Selector:
    product_ids: tuple[int, ...] = ()
    unit_kind: str | None = None


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    kind: str
    selector: Selector = Selector()
    priority: int = 0
    enabled: bool = True
    price_override: Decimal | None = None
    percent_off: Decimal | None = None


@dataclass
class PricedItem:
    product_id: int
    qty: Decimal
    unit_price: Decimal
    unit_kind: str | None = None
    name: str = ""


@dataclass
class AdjustedItem:
    product_id: int
    name: str
    qty: Decimal
    unit_kind: str | None
    base_unit_price: Decimal
    effective_unit_price: Decimal
    line_total: Decimal
    discount: Decimal
    applied_rule_ids: list[str] = field(default_factory=list)


@dataclass
class Quote:
    subtotal: Decimal
    discounts: list[dict]
    discount_total: Decimal
    total: Decimal
    items: list[AdjustedItem]

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "discount_total": float(self.discount_total),
            "total": float(self.total),
            "discounts": [{**d, "amount": float(d["amount"])} for d in self.discounts],
            "items": [
                {
                    "product_id": it.product_id,
                    "name": it.name,
                    "qty": float(it.qty),
                    "unit_kind": it.unit_kind,
                    "base_unit_price": float(it.base_unit_price),
                    "effective_unit_price": float(it.effective_unit_price),
                    "line_total": float(it.line_total),
                    "discount": float(it.discount),
                    "applied_rule_ids": it.applied_rule_ids,
                }
                for it in self.items
            ],
        }


def matches_selector(item: PricedItem, sel: Selector) -> bool:
    if sel.product_ids and item.product_id not in sel.product_ids:
        return False
    # Unit kind only discriminates when both sides declare one.
    if sel.unit_kind and item.unit_kind and sel.unit_kind != item.unit_kind:
        return False
    return True


def _ordered(rules: Iterable[Rule]) -> list[Rule]:
    return sorted((r for r in rules if r.enabled), key=lambda r: (-r.priority, r.id))


def apply_discounts(items: list[PricedItem], rules: Iterable[Rule]) -> Quote:
    active = _ordered(rules)
    per_rule: dict[str, dict] = {}
    adjusted: list[AdjustedItem] = []
    subtotal = ZERO
    total = ZERO

    def _credit(rule: Rule, amount: Decimal) -> None:
        agg = per_rule.setdefault(rule.id, {"rule_id": rule.id, "name": rule.name, "amount": ZERO})
        agg["amount"] = r2(agg["amount"] + amount)

    for item in items:
        base = r2(item.unit_price)
        unit = base
        applied: list[str] = []

        override = next(
            (r for r in active if r.kind == PRICE_OVERRIDE and r.price_override is not None and matches_selector(item, r.selector)),
            None,
        )
        if override is not None:
            new_unit = r2(override.price_override)
            _credit(override, r2((unit - new_unit) * item.qty))
            unit = new_unit
            applied.append(override.id)

        for rule in active:
            if rule.kind != PERCENT_OFF or rule.percent_off is None or not matches_selector(item, rule.selector):
                continue
            new_unit = r2(unit * (Decimal("1") - rule.percent_off / Decimal("100")))
            _credit(rule, r2((unit - new_unit) * item.qty))
            unit = new_unit
            applied.append(rule.id)

        line_base = r2(base * item.qty)
        line_total = r2(unit * item.qty)
        subtotal += line_base
        total += line_total
        adjusted.append(
            AdjustedItem(
                product_id=item.product_id,
                name=item.name,
                qty=item.qty,
                unit_kind=item.unit_kind,
                base_unit_price=base,
                effective_unit_price=unit,
                line_total=line_total,
                discount=r2(line_base - line_total),
                applied_rule_ids=applied,
            )
        )

    subtotal = r2(subtotal)
    total = r2(total)
    return Quote(
        subtotal=subtotal,
        discounts=[d for d in per_rule.values() if d["amount"] != 0],
        discount_total=r2(subtotal - total),
        total=total,
        items=adjusted,
    )


def base_unit_price(product: Product, unit_kind: str | None) -> Decimal:
    if unit_kind == UNIT_RETAIL:
        return r2(product.price)
    return r2(product.srp)


def rules_for_customer(
    s: "Session",
    customer_id: int | None,
    *,
    now: datetime | None = None,
    product_ids: Iterable[int] | None = None,
) -> list[Rule]:
    """Active, in-window CustomerItemPrice rows as engine rules."""
    if not customer_id:
        return []
    now = now or datetime.utcnow()
    q = s.query(CustomerItemPrice).filter(
        CustomerItemPrice.customer_id == customer_id,
        CustomerItemPrice.active.is_(True),
        or_(CustomerItemPrice.starts_at.is_(None), CustomerItemPrice.starts_at <= now),
        or_(CustomerItemPrice.ends_at.is_(None), CustomerItemPrice.ends_at >= now),
    )
    if product_ids is not None:
        ids = list(set(product_ids))
        if not ids:
            return []
        q = q.filter(CustomerItemPrice.product_id.in_(ids))

    rules: list[Rule] = []
    for row in q.order_by(CustomerItemPrice.id.asc()).all():
        sel = Selector(product_ids=(row.product_id,), unit_kind=row.unit_kind)
        name = f"Customer price ({row.mode}, {row.unit_kind})"
        rid = f"CIP-{row.id}"
        value = r2(row.value)
        if row.mode == PRICE_MODE_FIXED_PRICE:
            rules.append(Rule(rid, name, PRICE_OVERRIDE, sel, CUSTOMER_RULE_PRIORITY, price_override=value))
        elif row.mode == PRICE_MODE_PERCENT_DISCOUNT:
            rules.append(Rule(rid, name, PERCENT_OFF, sel, CUSTOMER_RULE_PRIORITY, percent_off=value))
        elif row.mode == PRICE_MODE_FIXED_DISCOUNT and row.product is not None:
            base = base_unit_price(row.product, row.unit_kind)
            rules.append(
                Rule(rid, name, PRICE_OVERRIDE, sel, CUSTOMER_RULE_PRIORITY, price_override=max(ZERO, base - value))
            )
    return rules


def quote_for_customer(s: "Session", customer_id: int | None, items: list[PricedItem]) -> Quote:
    rules = rules_for_customer(s, customer_id, product_ids=[i.product_id for i in items])
    return apply_discounts(items, rules)


def allowed_unit_price(s: "Session", customer_id: int | None, product: Product, unit_kind: str) -> Decimal:
    """Lowest price a cashier may charge without a manager's discount approval."""
    item = PricedItem(product_id=product.id, qty=Decimal("1"), unit_price=base_unit_price(product, unit_kind), unit_kind=unit_kind)
    q = quote_for_customer(s, customer_id, [item])
    return q.items[0].effective_unit_price


def infer_unit_kind(product: Product, unit_price: Decimal) -> str:
    """Legacy lines without a stored unit kind: the price tells retail from pack."""
    if product.allow_pack_sale and (product.price or 0) > 0 and abs(r2(unit_price) - r2(product.price)) <= Decimal("0.01"):
        return UNIT_RETAIL
    return UNIT_PACK
