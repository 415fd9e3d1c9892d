from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy import or_

from app.pos.db import db_session
from app.pos.errors import ActionError, NotFoundError
from app.pos.models import User
from app.pos.modules.cashier_shifts.service import open_shift_for
from app.pos.modules.catalog.models import Product
from app.pos.modules.orders.models import (
    CHANNEL_DELIVERY,
    CHANNELS,
    FULFILLMENT_DELIVERED,
    FULFILLMENT_DISPATCHED,
    OPEN_STATUSES,
    Order,
)
from app.pos.modules.orders.service import (
    acquire_lock,
    cancel_order,
    create_order,
    ensure_not_locked_by_other,
    expire_stale_orders,
    order_balance,
    order_total,
    quote_order,
    record_credit,
    release_lock,
    reprint,
    settle_payment,
    sum_settlement_credits,
    void_order,
)
from app.pos.rbac import ADMIN, CASHIER, MANAGERS, STORE_MANAGER, require_role
from app.pos.utils import parse_date, parse_int, parse_json_list

bp = Blueprint("orders", __name__)

ORDER_STAFF = (ADMIN, STORE_MANAGER, CASHIER)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_order_or_404(order_id: int) -> Order:
    order = db_session().get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found.")
    return order


def _wants_json() -> bool:
    return request.is_json or request.accept_mimetypes.best == "application/json"


# ---------- Cashier queue ----------
@bp.get("/cashier")
@require_role(*ORDER_STAFF)
def cashier_queue():
    """Open walk-in/pickup work for the counter. Dispatched deliveries are remitted per run instead."""
    s = db_session()
    now = datetime.utcnow()
    cancelled, purged = expire_stale_orders(s, now, lock_ttl_seconds=current_app.config["ORDER_LOCK_TTL_SECONDS"])
    if cancelled or purged:
        s.commit()
    q = s.query(Order).filter(
        Order.status.in_(OPEN_STATUSES),
        or_(Order.expiry_at.is_(None), Order.expiry_at > now),
        or_(
            Order.channel != CHANNEL_DELIVERY,
            Order.fulfillment_status.notin_((FULFILLMENT_DISPATCHED, FULFILLMENT_DELIVERED)),
        ),
    )
    orders = q.order_by(Order.created_at.asc()).limit(200).all()
    shift = open_shift_for(s, _current_user().id)
    return render_template(
        "orders/queue.html", orders=orders, shift=shift, now=now, cancelled=cancelled, purged=purged
    )


# ---------- List ----------
@bp.get("/orders")
@require_role(*ORDER_STAFF)
def orders_list():
    s = db_session()
    status = (request.args.get("status") or "").strip().upper()
    search = (request.args.get("q") or "").strip()
    q = s.query(Order)
    if status:
        q = q.filter(Order.status == status)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Order.order_code.ilike(like), Order.customer_name.ilike(like), Order.receipt_no.ilike(like)))
    orders = q.order_by(Order.created_at.desc()).limit(200).all()
    return render_template("orders/list.html", orders=orders, status=status, search=search)


# ---------- New ----------
@bp.get("/orders/new")
@require_role(*ORDER_STAFF)
def orders_new_get():
    s = db_session()
    products = s.query(Product).filter(Product.is_active.is_(True)).order_by(Product.name.asc()).all()
    return render_template("orders/new.html", products=products, channels=CHANNELS)


@bp.post("/orders/new")
@require_role(*ORDER_STAFF)
def orders_new_post():
    s = db_session()
    if request.is_json:
        payload = request.get_json(silent=True) or {}
    else:
        payload = {k: request.form.get(k) for k in (
            "channel", "customer_id", "customer_name", "deliver_to", "deliver_phone",
            "deliver_landmark", "deliver_lat", "deliver_lng", "notes",
        )}
        payload["items"] = parse_json_list(request.form.get("items_json"), "Items")

    order = create_order(s, payload, _current_user(), expiry_hours=current_app.config["ORDER_EXPIRY_HOURS"])
    s.commit()
    if _wants_json():
        return jsonify({"ok": True, "id": order.id, "order_code": order.order_code})
    flash(f"Order {order.order_code} created.", "success")
    return redirect(url_for("orders.order_receipt", order_id=order.id))


# ---------- Cashier order page ----------
@bp.get("/cashier/orders/<int:order_id>")
@require_role(*ORDER_STAFF)
def cashier_order(order_id: int):
    s = db_session()
    u = _current_user()
    order = _get_order_or_404(order_id)
    locked_by_other = False
    if order.status in OPEN_STATUSES:
        locked_by_other = not acquire_lock(s, order, u, ttl_seconds=current_app.config["ORDER_LOCK_TTL_SECONDS"])
        s.commit()
    return render_template(
        "orders/cashier_order.html",
        order=order,
        quote=quote_order(s, order),
        total=order_total(s, order),
        paid=sum_settlement_credits(order.payments),
        balance=order_balance(s, order),
        shift=open_shift_for(s, u.id),
        locked_by_other=locked_by_other,
    )


@bp.post("/cashier/orders/<int:order_id>")
@require_role(*ORDER_STAFF)
def cashier_order_post(order_id: int):
    s = db_session()
    u = _current_user()
    order = _get_order_or_404(order_id)
    intent = (request.form.get("intent") or "").strip()

    if intent == "release":
        if order.locked_by_user_id in (None, u.id):
            release_lock(order)
            s.commit()
        return redirect(url_for("orders.cashier_queue"))

    if intent == "reprint":
        reprint(s, order, u)
        s.commit()
        return redirect(url_for("orders.order_receipt", order_id=order.id, autoprint=1))

    if intent == "settle":
        ensure_not_locked_by_other(order, u, ttl_seconds=current_app.config["ORDER_LOCK_TTL_SECONDS"])
        payment = settle_payment(
            s,
            order,
            u,
            cash_given=request.form.get("cash_given"),
            customer_id=parse_int(request.form.get("customer_id")),
            release_with_balance=request.form.get("release_with_balance") == "1",
            release_approved_by=request.form.get("release_approved_by"),
            discount_approved_by=request.form.get("discount_approved_by"),
        )
        s.commit()
        if _wants_json():
            return jsonify({"ok": True, "status": order.status, "change": float(payment.change or 0)})
        flash(f"Payment recorded. Change: {payment.change:,.2f}", "success")
        return redirect(url_for("orders.order_receipt", order_id=order.id, pid=payment.id))

    raise ActionError("Unknown intent")


@bp.post("/orders/<int:order_id>/credit")
@require_role(*ORDER_STAFF)
def order_credit(order_id: int):
    s = db_session()
    order = _get_order_or_404(order_id)
    due = parse_date(request.form.get("due_date"))
    record_credit(
        s,
        order,
        _current_user(),
        customer_id=parse_int(request.form.get("customer_id")),
        due_date=datetime(due.year, due.month, due.day) if due else None,
        release_now=request.form.get("release_now") == "1",
        release_approved_by=request.form.get("release_approved_by"),
    )
    s.commit()
    flash("Order recorded on credit.", "success")
    return redirect(url_for("orders.order_receipt", order_id=order.id))


# ---------- Cancel / void ----------
@bp.post("/orders/<int:order_id>/cancel")
@require_role(*MANAGERS)
def order_cancel(order_id: int):
    s = db_session()
    order = _get_order_or_404(order_id)
    cancel_order(s, order, _current_user(), reason=request.form.get("reason"))
    s.commit()
    flash(f"Order {order.order_code} cancelled.", "success")
    return redirect(url_for("orders.orders_list"))


@bp.post("/orders/<int:order_id>/void")
@require_role(*MANAGERS)
def order_void(order_id: int):
    s = db_session()
    order = _get_order_or_404(order_id)
    void_order(s, order, _current_user(), reason=request.form.get("reason") or "")
    s.commit()
    flash(f"Order {order.order_code} voided.", "success")
    return redirect(url_for("orders.orders_list"))


# ---------- Receipt ----------
@bp.get("/orders/<int:order_id>/receipt")
@require_role(*ORDER_STAFF)
def order_receipt(order_id: int):
    s = db_session()
    order = _get_order_or_404(order_id)
    pid = parse_int(request.args.get("pid"))
    payment = next((p for p in order.payments if p.id == pid), None) if pid else None
    return render_template(
        "orders/receipt.html",
        order=order,
        total=order_total(s, order),
        paid=sum_settlement_credits(order.payments),
        balance=order_balance(s, order),
        payment=payment,
        autoprint=request.args.get("autoprint") == "1",
    )
