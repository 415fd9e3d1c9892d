from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from app.pos.audit import record_event
from app.pos.errors import ActionError
from app.pos.modules.catalog.models import (
    MOVE_ADJUST,
    UNIT_PACK,
    UNIT_RETAIL,
    Product,
    StockMovement,
)
from app.pos.money import to_decimal

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User

logger = logging.getLogger(__name__)

# Packing unit → kilograms per unit. Anything unknown weighs nothing for capacity purposes.
_KG_FACTORS = {
    "kg": Decimal("1"),
    "kgs": Decimal("1"),
    "kilo": Decimal("1"),
    "kilos": Decimal("1"),
    "kilogram": Decimal("1"),
    "kilograms": Decimal("1"),
    "g": Decimal("0.001"),
    "gram": Decimal("0.001"),
    "grams": Decimal("0.001"),
}

# product_id -> {"pack": qty, "retail": qty}
StockDeltas = dict[int, dict[str, Decimal]]


def unit_kg(product: Product) -> Decimal:
    """Weight in kg of one pack of product."""
    factor = _KG_FACTORS.get((product.packing_unit or "").strip().lower(), Decimal("0"))
    return (to_decimal(product.packing_size) or Decimal("0")) * factor


def add_delta(deltas: StockDeltas, product_id: int, unit_kind: str, qty: Decimal) -> None:
    bucket = deltas.setdefault(product_id, {"pack": Decimal("0"), "retail": Decimal("0")})
    key = "retail" if unit_kind == UNIT_RETAIL else "pack"
    bucket[key] += qty


def _lock_products(s: "Session", product_ids) -> dict[int, Product]:
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    rows = s.query(Product).filter(Product.id.in_(ids)).with_for_update().all()
    return {p.id: p for p in rows}


def stock_shortages(s: "Session", deltas: StockDeltas) -> list[str]:
    """Human-readable shortage lines; empty list means every delta can be covered."""
    products = _lock_products(s, deltas.keys())
    problems: list[str] = []
    for pid, d in deltas.items():
        p = products.get(pid)
        if p is None:
            problems.append(f"Product #{pid} not found")
            continue
        if d["pack"] > 0 and d["pack"] > (p.stock or 0):
            problems.append(f"{p.name}: need {d['pack']} pack(s), have {p.stock}")
        if d["retail"] > 0 and d["retail"] > (p.packing_stock or 0):
            problems.append(f"{p.name}: need {d['retail']} retail unit(s), have {p.packing_stock}")
    return problems


def deduct_stock(
    s: "Session",
    deltas: StockDeltas,
    *,
    movement_type: str | None,
    ref_kind: str | None,
    ref_id: int | None,
    user_id: int | None = None,
    error_message: str = "Insufficient stock.",
) -> None:
    """
    Decrement stock/packing_stock for every delta, all-or-nothing.
    A StockMovement row is written per non-zero bucket when movement_type is given.
    """
    problems = stock_shortages(s, deltas)
    if problems:
        raise ActionError(f"{error_message} " + "; ".join(problems))
    products = _lock_products(s, deltas.keys())
    for pid, d in deltas.items():
        p = products[pid]
        p.stock = (p.stock or 0) - d["pack"]
        p.packing_stock = (p.packing_stock or 0) - d["retail"]
        p.updated_at = datetime.utcnow()
        if movement_type:
            _add_movements(s, pid, d, movement_type, ref_kind, ref_id, user_id)


def restore_stock(
    s: "Session",
    deltas: StockDeltas,
    *,
    movement_type: str | None,
    ref_kind: str | None,
    ref_id: int | None,
    user_id: int | None = None,
) -> None:
    products = _lock_products(s, deltas.keys())
    for pid, d in deltas.items():
        p = products.get(pid)
        if p is None:
            logger.warning("restore_stock: product %s vanished; skipping", pid)
            continue
        p.stock = (p.stock or 0) + d["pack"]
        p.packing_stock = (p.packing_stock or 0) + d["retail"]
        p.updated_at = datetime.utcnow()
        if movement_type:
            _add_movements(s, pid, d, movement_type, ref_kind, ref_id, user_id)


def _add_movements(s, pid, d, movement_type, ref_kind, ref_id, user_id) -> None:
    for unit_kind, key in ((UNIT_PACK, "pack"), (UNIT_RETAIL, "retail")):
        if d[key] == 0:
            continue
        s.add(
            StockMovement(
                type=movement_type,
                product_id=pid,
                qty=d[key],
                unit_kind=unit_kind,
                ref_kind=ref_kind,
                ref_id=ref_id,
                created_by_user_id=user_id,
            )
        )


def validate_product_payload(payload: dict) -> list[str]:
    """Validate product create/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    for field, label in (("price", "Retail price"), ("srp", "Pack price (SRP)"), ("packing_size", "Packing size")):
        raw = payload.get(field)
        if raw not in (None, "") and to_decimal(raw, default=None) is None:
            errors.append(f"{label} must be a number.")
        elif (to_decimal(raw) or 0) < 0:
            errors.append(f"{label} must be ≥ 0.")
    if payload.get("allow_pack_sale") and (to_decimal(payload.get("price")) or 0) <= 0:
        errors.append("Retail price is required when retail sale is allowed.")
    return errors


def _apply_payload(p: Product, payload: dict) -> dict:
    changes: dict = {}

    def _set(attr: str, value) -> None:
        old = getattr(p, attr)
        if old != value:
            changes[attr] = {"old": str(old), "new": str(value)}
            setattr(p, attr, value)

    _set("name", (payload.get("name") or "").strip())
    _set("sku", (payload.get("sku") or "").strip() or None)
    _set("price", to_decimal(payload.get("price")))
    _set("srp", to_decimal(payload.get("srp")))
    _set("dealer_price", to_decimal(payload.get("dealer_price"), default=None))
    _set("packing_size", to_decimal(payload.get("packing_size")))
    _set("packing_unit", (payload.get("packing_unit") or "").strip() or None)
    _set("allow_pack_sale", bool(payload.get("allow_pack_sale")))
    _set("is_active", bool(payload.get("is_active", True)))
    _set("description", (payload.get("description") or "").strip() or None)
    return changes


def create_product(s: "Session", payload: dict, user: "User") -> Product:
    p = Product(stock=Decimal("0"), packing_stock=Decimal("0"))
    _apply_payload(p, payload)
    p.stock = to_decimal(payload.get("stock")) or Decimal("0")
    p.packing_stock = to_decimal(payload.get("packing_stock")) or Decimal("0")
    s.add(p)
    s.flush()
    record_event(
        s,
        actor=user,
        action="product.create",
        entity_type="Product",
        entity_id=p.id,
        metadata={"name": p.name, "price": p.price, "srp": p.srp},
    )
    return p


def update_product(s: "Session", p: Product, payload: dict, user: "User") -> Product:
    changes = _apply_payload(p, payload)
    p.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="product.edit",
            entity_type="Product",
            entity_id=p.id,
            metadata={"name": p.name, "changes": changes},
        )
    return p


def adjust_stock(
    s: "Session",
    p: Product,
    *,
    pack_delta: Decimal,
    retail_delta: Decimal,
    reason: str,
    user: "User",
) -> Product:
    """Manual stock count correction. Result may not go negative."""
    if not reason:
        raise ActionError("Reason is required for a stock adjustment.")
    if pack_delta == 0 and retail_delta == 0:
        raise ActionError("Nothing to adjust.")
    new_stock = (p.stock or 0) + pack_delta
    new_packing = (p.packing_stock or 0) + retail_delta
    if new_stock < 0 or new_packing < 0:
        raise ActionError("Adjustment would make stock negative.")
    p.stock = new_stock
    p.packing_stock = new_packing
    p.updated_at = datetime.utcnow()
    _add_movements(
        s,
        p.id,
        {"pack": pack_delta, "retail": retail_delta},
        MOVE_ADJUST,
        None,
        None,
        user.id,
    )
    record_event(
        s,
        actor=user,
        action="product.stock_adjust",
        entity_type="Product",
        entity_id=p.id,
        reason=reason,
        metadata={"pack_delta": pack_delta, "retail_delta": retail_delta},
    )
    return p
