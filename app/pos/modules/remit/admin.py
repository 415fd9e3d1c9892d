from __future__ import annotations

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.pos.db import db_session
from app.pos.errors import ActionError, NotFoundError
from app.pos.models import User
from app.pos.modules.cashier_shifts.service import open_shift_for
from app.pos.modules.dispatch.models import RUN_CHECKED_IN, RUN_CLOSED, RUN_DISPATCHED, DeliveryRun
from app.pos.modules.orders.models import STATUS_PAID, STATUS_VOIDED, Order
from app.pos.modules.remit.models import RV_DECIDABLE, RESOLUTIONS, RiderCharge, RiderRunVariance
from app.pos.modules.remit.service import (
    manager_decide_variance,
    record_rider_charge_payment,
    remit_delivery,
    remit_figures,
    rider_accept_variance,
    rider_charge_balance,
    rider_employee_id,
)
from app.pos.rbac import ADMIN, CASHIER, EMPLOYEE, MANAGERS, STORE_MANAGER, require_role
from app.pos.utils import parse_int

bp = Blueprint("remit", __name__)

REMIT_STAFF = (ADMIN, STORE_MANAGER, CASHIER)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Cashier: delivery remit ----------
@bp.get("/cashier/delivery")
@require_role(*REMIT_STAFF)
def delivery_runs():
    s = db_session()
    runs = (
        s.query(DeliveryRun)
        .filter(DeliveryRun.status.in_((RUN_DISPATCHED, RUN_CHECKED_IN, RUN_CLOSED)))
        .order_by(DeliveryRun.created_at.desc())
        .limit(50)
        .all()
    )
    return render_template("remit/runs.html", runs=runs)


@bp.get("/cashier/delivery/<int:run_id>")
@require_role(*REMIT_STAFF)
def delivery_run(run_id: int):
    s = db_session()
    run = s.get(DeliveryRun, run_id)
    if not run:
        raise NotFoundError("Run not found.")
    rows = [
        (o, remit_figures(s, o))
        for o in run.orders
        if o.status not in (STATUS_PAID, STATUS_VOIDED)
    ]
    return render_template("remit/run_orders.html", run=run, rows=rows)


@bp.get("/delivery-remit/<int:order_id>")
@require_role(*REMIT_STAFF)
def delivery_remit(order_id: int):
    s = db_session()
    order = s.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found.")
    return render_template(
        "remit/delivery_remit.html",
        order=order,
        figures=remit_figures(s, order),
        shift=open_shift_for(s, _current_user().id),
    )


@bp.post("/delivery-remit/<int:order_id>")
@require_role(*REMIT_STAFF)
def delivery_remit_post(order_id: int):
    s = db_session()
    order = s.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found.")
    result = remit_delivery(
        s,
        _current_user(),
        order,
        cash_given=request.form.get("cash_given"),
        lock_ttl_seconds=current_app.config["ORDER_LOCK_TTL_SECONDS"],
    )
    s.commit()
    if request.is_json or request.accept_mimetypes.best == "application/json":
        return jsonify(
            {
                "ok": True,
                "status": order.status,
                "applied": float(result.applied),
                "change": float(result.change),
                "bridged": float(result.bridged),
                "remaining": float(result.remaining),
            }
        )
    msg = f"Remitted {result.applied:,.2f}. Change: {result.change:,.2f}"
    if result.bridged > 0:
        msg += f". Rider shortage of {result.bridged:,.2f} recorded."
    flash(msg, "success")
    return redirect(url_for("orders.order_receipt", order_id=order.id))


# ---------- Manager: rider variances ----------
@bp.get("/store/rider-variances")
@require_role(*MANAGERS)
def rider_variances():
    s = db_session()
    show = (request.args.get("show") or "open").strip().lower()
    q = s.query(RiderRunVariance)
    if show != "all":
        q = q.filter(RiderRunVariance.status.in_(RV_DECIDABLE))
    variances = q.order_by(RiderRunVariance.created_at.desc()).limit(200).all()
    return render_template(
        "remit/variances.html",
        variances=variances,
        show=show,
        resolutions=RESOLUTIONS,
        charge_balance=rider_charge_balance,
    )


@bp.post("/store/rider-variances")
@require_role(*MANAGERS)
def rider_variances_post():
    s = db_session()
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()
    if intent == "decide":
        v = s.get(RiderRunVariance, parse_int(request.form.get("variance_id")) or 0)
        if not v:
            raise NotFoundError("Variance not found.")
        manager_decide_variance(s, u, v, resolution=request.form.get("resolution") or "", note=request.form.get("note"))
        flash("Variance updated.", "success")
    elif intent == "charge-payment":
        charge = s.get(RiderCharge, parse_int(request.form.get("charge_id")) or 0)
        if not charge:
            raise NotFoundError("Charge not found.")
        record_rider_charge_payment(
            s,
            u,
            charge,
            amount=request.form.get("amount"),
            method=request.form.get("method"),
            ref_no=request.form.get("ref_no"),
        )
        flash("Charge payment recorded.", "success")
    else:
        raise ActionError("Unknown intent")
    s.commit()
    return redirect(url_for("remit.rider_variances", show=request.args.get("show") or "open"))


# ---------- Rider ----------
@bp.get("/rider")
@require_role(EMPLOYEE)
def rider_home():
    s = db_session()
    rider_id = rider_employee_id(_current_user())
    runs = (
        s.query(DeliveryRun)
        .filter(DeliveryRun.rider_id == rider_id)
        .order_by(DeliveryRun.created_at.desc())
        .limit(30)
        .all()
    )
    variances = (
        s.query(RiderRunVariance)
        .filter(RiderRunVariance.rider_id == rider_id)
        .order_by(RiderRunVariance.created_at.desc())
        .all()
    )
    return render_template("remit/rider_home.html", runs=runs, variances=variances, charge_balance=rider_charge_balance)


@bp.post("/rider/variances/<int:variance_id>")
@require_role(EMPLOYEE)
def rider_variance_accept(variance_id: int):
    s = db_session()
    v = s.get(RiderRunVariance, variance_id)
    if not v:
        raise NotFoundError("Variance not found.")
    rider_accept_variance(s, _current_user(), v)
    s.commit()
    flash("Charge accepted; it will be deducted from payroll.", "success")
    return redirect(url_for("remit.rider_home"))
