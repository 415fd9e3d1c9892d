from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.pos.db import db_session
from app.pos.models import User
from app.pos.modules.catalog.models import Product, StockMovement
from app.pos.modules.catalog.service import (
    adjust_stock,
    create_product,
    update_product,
    validate_product_payload,
)
from app.pos.money import to_decimal
from app.pos.rbac import ADMIN, CASHIER, MANAGERS, STORE_MANAGER, require_role

bp = Blueprint("catalog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    return {
        "name": request.form.get("name"),
        "sku": request.form.get("sku"),
        "price": request.form.get("price"),
        "srp": request.form.get("srp"),
        "dealer_price": request.form.get("dealer_price"),
        "packing_size": request.form.get("packing_size"),
        "packing_unit": request.form.get("packing_unit"),
        "allow_pack_sale": request.form.get("allow_pack_sale") == "1",
        "is_active": request.form.get("is_active", "1") == "1",
        "description": request.form.get("description"),
        "stock": request.form.get("stock"),
        "packing_stock": request.form.get("packing_stock"),
    }


# ---------- List ----------
@bp.get("/products")
@require_role(ADMIN, STORE_MANAGER, CASHIER)
def products_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    show_inactive = request.args.get("inactive") == "1"

    q = s.query(Product)
    if search:
        like = f"%{search}%"
        q = q.filter((Product.name.ilike(like)) | (Product.sku.ilike(like)))
    if not show_inactive:
        q = q.filter(Product.is_active.is_(True))

    products = q.order_by(Product.name.asc()).all()
    return render_template("catalog/list.html", products=products, search=search, show_inactive=show_inactive)


@bp.get("/api/products/search")
@require_role(ADMIN, STORE_MANAGER, CASHIER)
def products_search_json():
    s = db_session()
    term = (request.args.get("q") or "").strip()
    q = s.query(Product).filter(Product.is_active.is_(True))
    if term:
        q = q.filter(Product.name.ilike(f"%{term}%"))
    rows = q.order_by(Product.name.asc()).limit(20).all()
    return jsonify(
        {
            "items": [
                {
                    "id": p.id,
                    "name": p.name,
                    "price": float(p.price or 0),
                    "srp": float(p.srp or 0),
                    "stock": float(p.stock or 0),
                    "packing_stock": float(p.packing_stock or 0),
                    "allow_pack_sale": p.allow_pack_sale,
                    "packing_unit": p.packing_unit,
                }
                for p in rows
            ]
        }
    )


# ---------- New ----------
@bp.get("/products/new")
@require_role(*MANAGERS)
def products_new_get():
    return render_template("catalog/edit.html", product=None)


@bp.post("/products/new")
@require_role(*MANAGERS)
def products_new_post():
    s = db_session()
    payload = _payload_from_form()
    errors = validate_product_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("catalog/edit.html", product=None, form=payload), 400

    p = create_product(s, payload, _current_user())
    s.commit()
    flash("Product created.", "success")
    return redirect(url_for("catalog.product_edit_get", product_id=p.id))


# ---------- Edit ----------
@bp.get("/products/<int:product_id>/edit")
@require_role(*MANAGERS)
def product_edit_get(product_id: int):
    s = db_session()
    p = s.get(Product, product_id)
    if not p:
        abort(404)
    movements = (
        s.query(StockMovement)
        .filter(StockMovement.product_id == p.id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(25)
        .all()
    )
    return render_template("catalog/edit.html", product=p, movements=movements)


@bp.post("/products/<int:product_id>/edit")
@require_role(*MANAGERS)
def product_edit_post(product_id: int):
    s = db_session()
    p = s.get(Product, product_id)
    if not p:
        abort(404)
    payload = _payload_from_form()
    errors = validate_product_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("catalog/edit.html", product=p, form=payload), 400

    update_product(s, p, payload, _current_user())
    s.commit()
    flash("Product updated.", "success")
    return redirect(url_for("catalog.product_edit_get", product_id=p.id))


@bp.post("/products/<int:product_id>/stock")
@require_role(*MANAGERS)
def product_stock_adjust(product_id: int):
    s = db_session()
    p = s.get(Product, product_id)
    if not p:
        abort(404)
    adjust_stock(
        s,
        p,
        pack_delta=to_decimal(request.form.get("pack_delta")),
        retail_delta=to_decimal(request.form.get("retail_delta")),
        reason=(request.form.get("reason") or "").strip(),
        user=_current_user(),
    )
    s.commit()
    flash("Stock adjusted.", "success")
    return redirect(url_for("catalog.product_edit_get", product_id=p.id))
