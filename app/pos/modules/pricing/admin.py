from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.pos.db import db_session
from app.pos.errors import ActionError, NotFoundError
from app.pos.modules.catalog.models import UNIT_KINDS, UNIT_PACK, Product
from app.pos.modules.pricing.service import (
    PricedItem,
    allowed_unit_price,
    base_unit_price,
    quote_for_customer,
)
from app.pos.money import to_decimal
from app.pos.rbac import ADMIN, CASHIER, STORE_MANAGER, require_role
from app.pos.utils import parse_int, parse_json_list

bp = Blueprint("pricing", __name__)


@bp.get("/api/pricing/allowed")
@require_role(ADMIN, STORE_MANAGER, CASHIER)
def pricing_allowed():
    s = db_session()
    product_id = parse_int(request.args.get("product_id"))
    customer_id = parse_int(request.args.get("customer_id"))
    unit_kind = (request.args.get("unit_kind") or UNIT_PACK).upper()
    if not product_id or unit_kind not in UNIT_KINDS:
        raise ActionError("product_id and a valid unit_kind are required.")
    product = s.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found.")
    return jsonify(
        {
            "ok": True,
            "product_id": product.id,
            "unit_kind": unit_kind,
            "base_unit_price": float(base_unit_price(product, unit_kind)),
            "allowed_unit_price": float(allowed_unit_price(s, customer_id, product, unit_kind)),
        }
    )


@bp.route("/api/pricing/quote", methods=["GET", "POST"])
@require_role(ADMIN, STORE_MANAGER, CASHIER)
def pricing_quote():
    """
    Body: {"customer_id": 3, "items": [{"product_id": 1, "qty": 2, "unit_kind": "PACK"}]}
    GET takes the same shape as query args: ?customer_id=3&items=[...]
    unit_price is optional; the catalog price for the unit kind is used when absent.
    """
    s = db_session()
    if request.method == "GET":
        body = {"customer_id": request.args.get("customer_id"), "items": parse_json_list(request.args.get("items"), "items")}
    else:
        body = request.get_json(silent=True) or {}
    raw_items = body.get("items") or []
    if not isinstance(raw_items, list) or not raw_items:
        raise ActionError("items must be a non-empty list.")

    ids = {parse_int(r.get("product_id")) for r in raw_items if isinstance(r, dict)}
    ids.discard(None)
    products = {p.id: p for p in s.query(Product).filter(Product.id.in_(ids)).all()} if ids else {}

    items: list[PricedItem] = []
    for r in raw_items:
        pid = parse_int(r.get("product_id")) if isinstance(r, dict) else None
        p = products.get(pid) if pid else None
        if not p:
            raise NotFoundError(f"Product {r.get('product_id') if isinstance(r, dict) else r} not found.")
        unit_kind = (r.get("unit_kind") or UNIT_PACK).upper()
        qty = to_decimal(r.get("qty"), default=None)
        if qty is None or qty <= 0:
            raise ActionError(f"Quantity for {p.name} must be > 0.")
        price = to_decimal(r.get("unit_price"), default=None)
        items.append(
            PricedItem(
                product_id=p.id,
                qty=qty,
                unit_price=price if price is not None else base_unit_price(p, unit_kind),
                unit_kind=unit_kind,
                name=p.name,
            )
        )

    quote = quote_for_customer(s, parse_int(body.get("customer_id")), items)
    return jsonify({"ok": True, **quote.as_dict()})
