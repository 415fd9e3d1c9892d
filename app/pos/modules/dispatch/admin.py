from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.pos.db import db_session, transaction
from app.pos.errors import ActionError, ForbiddenError, NotFoundError
from app.pos.models import User
from app.pos.modules.catalog.models import Product
from app.pos.modules.clearance.models import ClearanceCase
from app.pos.modules.clearance.service import receipt_figures, send_clearance
from app.pos.modules.dispatch.models import RUN_STATUSES, DeliveryRun, DeliveryRunOrder, RunReceipt
from app.pos.modules.dispatch.service import (
    attach_order,
    create_run,
    detach_order,
    dispatch_run,
    post_remit,
    revert_to_dispatched,
    revert_to_planned,
    rider_checkin,
    run_load_kg,
    run_recap,
    save_loadout,
)
from app.pos.modules.fleet.models import Vehicle
from app.pos.modules.fleet.service import active_riders
from app.pos.modules.orders.models import CHANNEL_DELIVERY, FULFILLMENT_NEW, OPEN_STATUSES, Order
from app.pos.modules.remit.service import rider_employee_id
from app.pos.rbac import ADMIN, EMPLOYEE, MANAGERS, STORE_MANAGER, require_role, user_has_role
from app.pos.utils import parse_int, parse_json_list

bp = Blueprint("dispatch", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_run_or_404(s, run_id: int) -> DeliveryRun:
    run = s.get(DeliveryRun, run_id)
    if not run:
        raise NotFoundError("Run not found.")
    return run


def _ensure_can_check_in(user: User, run: DeliveryRun) -> None:
    """Managers check in any run; riders only their own."""
    if user_has_role(user, *MANAGERS):
        return
    if run.rider_id != rider_employee_id(user):
        raise ForbiddenError("This run belongs to another rider.")


# ---------- Runs ----------
@bp.get("/runs")
@require_role(*MANAGERS)
def runs_list():
    s = db_session()
    status = (request.args.get("status") or "").strip().upper()
    q = s.query(DeliveryRun)
    if status in RUN_STATUSES:
        q = q.filter(DeliveryRun.status == status)
    runs = q.order_by(DeliveryRun.created_at.desc()).limit(200).all()
    return render_template("dispatch/runs.html", runs=runs, status=status, statuses=RUN_STATUSES)


@bp.get("/runs/new")
@require_role(*MANAGERS)
def runs_new_get():
    s = db_session()
    vehicles = s.query(Vehicle).filter(Vehicle.active.is_(True)).order_by(Vehicle.name.asc()).all()
    return render_template("dispatch/new.html", riders=active_riders(s), vehicles=vehicles)


@bp.post("/runs/new")
@require_role(*MANAGERS)
def runs_new_post():
    s = db_session()
    run = create_run(
        s,
        _current_user(),
        rider_id=parse_int(request.form.get("rider_id")),
        vehicle_id=parse_int(request.form.get("vehicle_id")),
        notes=request.form.get("notes"),
    )
    s.commit()
    flash(f"Run {run.run_code} created.", "success")
    return redirect(url_for("dispatch.run_dispatch", run_id=run.id))


# ---------- Planning / dispatch ----------
@bp.get("/runs/<int:run_id>/dispatch")
@require_role(*MANAGERS)
def run_dispatch(run_id: int):
    s = db_session()
    run = _get_run_or_404(s, run_id)
    on_a_run = s.query(DeliveryRunOrder.order_id)
    candidates = (
        s.query(Order)
        .filter(
            Order.channel == CHANNEL_DELIVERY,
            Order.status.in_(OPEN_STATUSES),
            Order.fulfillment_status == FULFILLMENT_NEW,
            Order.id.notin_(on_a_run),
        )
        .order_by(Order.created_at.asc())
        .all()
    )
    products = s.query(Product).filter(Product.is_active.is_(True)).order_by(Product.name.asc()).all()
    vehicles = s.query(Vehicle).filter(Vehicle.active.is_(True)).order_by(Vehicle.name.asc()).all()
    return render_template(
        "dispatch/dispatch.html",
        run=run,
        candidates=candidates,
        products=products,
        vehicles=vehicles,
        load_kg=run_load_kg(s, run, run.loadout_snapshot or []),
    )


@bp.post("/runs/<int:run_id>/dispatch")
@require_role(*MANAGERS)
def run_dispatch_post(run_id: int):
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()
    back = redirect(url_for("dispatch.run_dispatch", run_id=run_id))

    if intent == "dispatch":
        rows = None
        if request.form.get("loadout_json"):
            rows = parse_json_list(request.form.get("loadout_json"), "Loadout")
        with transaction(serializable=True) as tx:
            run = _get_run_or_404(tx, run_id)
            dispatch_run(tx, u, run, loadout_rows=rows, capacity_override_by=request.form.get("capacity_override_by"))
            code = run.run_code
        flash(f"Run {code} dispatched.", "success")
        return back

    s = db_session()
    run = _get_run_or_404(s, run_id)
    if intent == "attach":
        order = s.get(Order, parse_int(request.form.get("order_id")) or 0)
        if order is None:
            raise NotFoundError("Order not found.")
        attach_order(s, u, run, order)
        s.commit()
        flash(f"Order {order.order_code} attached.", "success")
    elif intent == "detach":
        detach_order(s, u, run, parse_int(request.form.get("order_id")) or 0)
        s.commit()
        flash("Order detached.", "success")
    elif intent == "save":
        save_loadout(
            s,
            u,
            run,
            parse_json_list(request.form.get("loadout_json"), "Loadout"),
            vehicle_id=parse_int(request.form.get("vehicle_id")),
        )
        s.commit()
        flash("Loadout saved.", "success")
    elif intent == "revert-planned":
        revert_to_planned(s, u, run)
        s.commit()
        flash("Run reverted to planned; stock restored.", "success")
    else:
        raise ActionError("Unknown intent")
    return back


# ---------- Rider check-in ----------
@bp.get("/runs/<int:run_id>/checkin")
@require_role(ADMIN, STORE_MANAGER, EMPLOYEE)
def run_checkin(run_id: int):
    s = db_session()
    run = _get_run_or_404(s, run_id)
    _ensure_can_check_in(_current_user(), run)
    cases = {c.run_receipt_id: c for c in s.query(ClearanceCase).filter(ClearanceCase.run_id == run.id).all()}
    figures = {rc.id: receipt_figures(rc) for rc in run.receipts}
    products = s.query(Product).filter(Product.is_active.is_(True)).order_by(Product.name.asc()).all()
    flagged_keys = {rc.receipt_key for rc in run.receipts if rc.id in cases}
    product_names = {p.id: p.name for p in products}
    return render_template(
        "dispatch/checkin.html",
        run=run,
        cases=cases,
        figures=figures,
        products=products,
        product_names=product_names,
        flagged_keys=flagged_keys,
    )


@bp.post("/runs/<int:run_id>/checkin")
@require_role(ADMIN, STORE_MANAGER, EMPLOYEE)
def run_checkin_post(run_id: int):
    s = db_session()
    u = _current_user()
    run = _get_run_or_404(s, run_id)
    _ensure_can_check_in(u, run)
    intent = (request.form.get("intent") or "checkin").strip()

    if intent == "send-clearance":
        receipt = s.get(RunReceipt, parse_int(request.form.get("receipt_id")) or 0)
        if receipt is None or receipt.run_id != run.id:
            raise NotFoundError("Run receipt not found.")
        send_clearance(
            s,
            u,
            receipt,
            claim_type=request.form.get("claim_type") or "",
            message=request.form.get("message"),
            customer_id=parse_int(request.form.get("customer_id")),
        )
        s.commit()
        flash("Clearance sent to the store manager.", "success")
        return redirect(url_for("dispatch.run_checkin", run_id=run.id))

    if intent != "checkin":
        raise ActionError("Unknown intent")
    rider_checkin(
        s,
        u,
        run,
        stock_rows=parse_json_list(request.form.get("stock_json"), "Returned stock"),
        sold_rows=parse_json_list(request.form.get("sold_json"), "Road sales"),
        parent_payments=parse_json_list(request.form.get("parent_payments_json"), "Parent payments"),
        parent_overrides=parse_json_list(request.form.get("parent_overrides_json"), "Parent overrides"),
        price_override_by=request.form.get("price_override_by"),
    )
    s.commit()
    flash(f"Run {run.run_code} checked in.", "success")
    return redirect(url_for("dispatch.run_checkin", run_id=run.id))


# ---------- Remit ----------
@bp.get("/runs/<int:run_id>/remit")
@require_role(*MANAGERS)
def run_remit(run_id: int):
    s = db_session()
    run = _get_run_or_404(s, run_id)
    cases = s.query(ClearanceCase).filter(ClearanceCase.run_id == run.id).all()
    return render_template("dispatch/remit.html", run=run, recap=run_recap(s, run), cases=cases)


@bp.post("/runs/<int:run_id>/remit")
@require_role(*MANAGERS)
def run_remit_post(run_id: int):
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()
    if intent == "post-remit":
        with transaction(serializable=True) as tx:
            run = _get_run_or_404(tx, run_id)
            post_remit(tx, u, run)
        flash("Remit posted; run closed.", "success")
        return redirect(url_for("dispatch.run_summary", run_id=run_id))
    if intent == "revert-to-dispatched":
        s = db_session()
        revert_to_dispatched(s, u, _get_run_or_404(s, run_id))
        s.commit()
        flash("Run handed back to the rider for check-in.", "success")
        return redirect(url_for("dispatch.run_checkin", run_id=run_id))
    raise ActionError("Unknown intent")


@bp.get("/runs/<int:run_id>/summary")
@require_role(ADMIN, STORE_MANAGER, EMPLOYEE)
def run_summary(run_id: int):
    s = db_session()
    run = _get_run_or_404(s, run_id)
    _ensure_can_check_in(_current_user(), run)
    return render_template("dispatch/summary.html", run=run, recap=run_recap(s, run))
