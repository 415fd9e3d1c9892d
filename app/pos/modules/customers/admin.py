from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.pos.db import db_session
from app.pos.errors import ActionError, NotFoundError
from app.pos.models import User
from app.pos.modules.catalog.models import UNIT_KINDS, Product
from app.pos.modules.customers.models import PRICE_MODES, Customer, CustomerItemPrice
from app.pos.modules.customers.service import (
    add_address,
    create_customer,
    create_price_rule,
    credit_exposure,
    delete_price_rule,
    search_customers,
    set_price_rule_active,
    update_customer,
    validate_customer_payload,
)
from app.pos.rbac import ADMIN, CASHIER, STORE_MANAGER, require_role
from app.pos.utils import parse_int

bp = Blueprint("customers", __name__)

STAFF = (ADMIN, STORE_MANAGER, CASHIER)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    return {
        "first_name": request.form.get("first_name"),
        "middle_name": request.form.get("middle_name"),
        "last_name": request.form.get("last_name"),
        "alias": request.form.get("alias"),
        "phone": request.form.get("phone"),
        "email": request.form.get("email"),
        "credit_limit": request.form.get("credit_limit"),
        "notes": request.form.get("notes"),
        "is_active": request.form.get("is_active", "1") == "1",
        "address_line1": request.form.get("address_line1"),
    }


def _get_customer_or_404(customer_id: int) -> Customer:
    c = db_session().get(Customer, customer_id)
    if not c:
        abort(404)
    return c


def _customer_json(c: Customer) -> dict:
    return {
        "id": c.id,
        "name": c.full_name,
        "alias": c.alias,
        "phone": c.phone,
        "addresses": [{"id": a.id, "label": a.label, "text": a.one_line} for a in c.addresses],
    }


# ---------- List ----------
@bp.get("/customers")
@require_role(*STAFF)
def customers_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    customers = search_customers(s, search, limit=200)
    return render_template("customers/list.html", customers=customers, search=search)


@bp.get("/api/customers/search")
@require_role(*STAFF)
def customers_search_json():
    s = db_session()
    rows = search_customers(s, request.args.get("q") or "", limit=20)
    return jsonify({"items": [_customer_json(c) for c in rows]})


@bp.post("/api/customers")
@require_role(*STAFF)
def customers_create_json():
    """Quick-create from the order/cashier picker."""
    s = db_session()
    body = request.get_json(silent=True) or {}
    errors = validate_customer_payload(body)
    if errors:
        raise ActionError(" ".join(errors))
    c = create_customer(s, body, _current_user())
    s.commit()
    return jsonify({"ok": True, "customer": _customer_json(c)}), 201


# ---------- New ----------
@bp.get("/customers/new")
@require_role(*STAFF)
def customers_new_get():
    return render_template("customers/edit.html", customer=None, form={})


@bp.post("/customers/new")
@require_role(*STAFF)
def customers_new_post():
    s = db_session()
    payload = _payload_from_form()
    errors = validate_customer_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("customers/edit.html", customer=None, form=payload), 400

    c = create_customer(s, payload, _current_user())
    s.commit()
    flash("Customer created.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


# ---------- Detail ----------
@bp.get("/customers/<int:customer_id>")
@require_role(*STAFF)
def customer_detail(customer_id: int):
    from app.pos.modules.orders.models import Order

    s = db_session()
    c = _get_customer_or_404(customer_id)
    recent_orders = (
        s.query(Order).filter(Order.customer_id == c.id).order_by(Order.created_at.desc()).limit(20).all()
    )
    return render_template(
        "customers/detail.html",
        customer=c,
        recent_orders=recent_orders,
        ar_balance=credit_exposure(s, c.id),
    )


# ---------- Edit ----------
@bp.get("/customers/<int:customer_id>/edit")
@require_role(*STAFF)
def customer_edit_get(customer_id: int):
    c = _get_customer_or_404(customer_id)
    return render_template("customers/edit.html", customer=c, form={})


@bp.post("/customers/<int:customer_id>/edit")
@require_role(*STAFF)
def customer_edit_post(customer_id: int):
    s = db_session()
    c = _get_customer_or_404(customer_id)
    payload = _payload_from_form()
    errors = validate_customer_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("customers/edit.html", customer=c, form=payload), 400

    update_customer(s, c, payload, _current_user())
    s.commit()
    flash("Customer updated.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/addresses")
@require_role(*STAFF)
def customer_address_add(customer_id: int):
    s = db_session()
    c = _get_customer_or_404(customer_id)
    add_address(s, c, request.form.to_dict(), _current_user())
    s.commit()
    flash("Address added.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


# ---------- Pricing rules ----------
@bp.get("/customers/<int:customer_id>/pricing")
@require_role(ADMIN, STORE_MANAGER)
def customer_pricing(customer_id: int):
    s = db_session()
    c = _get_customer_or_404(customer_id)
    products = s.query(Product).filter(Product.is_active.is_(True)).order_by(Product.name.asc()).all()
    return render_template(
        "customers/pricing.html",
        customer=c,
        rules=c.item_prices,
        products=products,
        unit_kinds=UNIT_KINDS,
        modes=PRICE_MODES,
    )


@bp.post("/customers/<int:customer_id>/pricing")
@require_role(ADMIN)
def customer_pricing_post(customer_id: int):
    s = db_session()
    u = _current_user()
    c = _get_customer_or_404(customer_id)
    act = (request.form.get("_action") or "").strip()

    if act == "create":
        payload = {
            "product_id": request.form.get("product_id"),
            "unit_kind": request.form.get("unit_kind"),
            "mode": request.form.get("mode"),
            "value": request.form.get("value"),
            "starts_at": request.form.get("starts_at"),
            "ends_at": request.form.get("ends_at"),
            "active": (request.form.get("active") or "1") == "1",
        }
        create_price_rule(s, c, payload, u)
        s.commit()
        flash("Pricing rule added.", "success")
        return redirect(url_for("customers.customer_pricing", customer_id=c.id))

    rule_id = parse_int(request.form.get("id"))
    if not rule_id:
        raise ActionError("Invalid id")
    rule = s.get(CustomerItemPrice, rule_id)
    if not rule or rule.customer_id != c.id:
        raise NotFoundError("Rule not found")

    if act == "toggleActive":
        set_price_rule_active(s, rule, (request.form.get("active") or "0") == "1", u)
        s.commit()
        return redirect(url_for("customers.customer_pricing", customer_id=c.id))

    if act == "delete":
        delete_price_rule(s, rule, u)
        s.commit()
        flash("Pricing rule deleted.", "success")
        return redirect(url_for("customers.customer_pricing", customer_id=c.id))

    raise ActionError("Unknown action")
