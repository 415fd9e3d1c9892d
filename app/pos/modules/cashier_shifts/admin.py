from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.pos.db import db_session, transaction
from app.pos.errors import ActionError, NotFoundError
from app.pos.models import Role, User
from app.pos.modules.cashier_shifts.models import (
    RESOLUTIONS,
    SHIFT_ACTIVE_STATUSES,
    SHIFT_SUBMITTED,
    CashierCharge,
    CashierShift,
    CashierShiftVariance,
)
from app.pos.modules.cashier_shifts.service import (
    DENOMINATIONS,
    active_shift_for,
    cashier_ack_variance,
    cashier_note_variance,
    cashier_resume_shift,
    cashier_submit_count,
    charge_balance,
    drawer_breakdown,
    manager_close_shift,
    manager_open_shift,
    manager_request_recount,
    manager_resend_opening,
    paper_ref_no,
    post_drawer_txn,
    record_charge_payment,
    respond_to_opening,
    waive_charge,
)
from app.pos.rbac import CASHIER, MANAGERS, require_role
from app.pos.utils import parse_int

bp = Blueprint("cashier_shifts", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_shift_or_404(s, shift_id: int | None) -> CashierShift:
    shift = s.get(CashierShift, shift_id) if shift_id else None
    if not shift:
        raise NotFoundError("Shift not found.")
    return shift


# ---------- Manager: shifts ----------
@bp.get("/store/cashier-shifts")
@require_role(*MANAGERS)
def manager_shifts():
    s = db_session()
    active = (
        s.query(CashierShift)
        .filter(CashierShift.status.in_(SHIFT_ACTIVE_STATUSES))
        .order_by(CashierShift.opened_at.desc())
        .all()
    )
    recent = (
        s.query(CashierShift)
        .filter(CashierShift.status.notin_(SHIFT_ACTIVE_STATUSES))
        .order_by(CashierShift.closed_at.desc())
        .limit(30)
        .all()
    )
    cashiers = (
        s.query(User)
        .join(User.roles)
        .filter(Role.key == CASHIER, User.is_active.is_(True))
        .order_by(User.email.asc())
        .all()
    )
    breakdowns = {sh.id: drawer_breakdown(s, sh) for sh in active}
    suggested_refs = {sh.id: paper_ref_no(sh) for sh in active if sh.status == SHIFT_SUBMITTED}
    return render_template(
        "cashier_shifts/manager.html",
        active=active,
        recent=recent,
        cashiers=cashiers,
        breakdowns=breakdowns,
        suggested_refs=suggested_refs,
        resolutions=RESOLUTIONS,
    )


@bp.post("/store/cashier-shifts")
@require_role(*MANAGERS)
def manager_shifts_post():
    s = db_session()
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()

    if intent == "open":
        shift, created = manager_open_shift(
            s,
            u,
            cashier_id=parse_int(request.form.get("cashier_id")),
            opening_float=request.form.get("opening_float"),
            device_id=request.form.get("device_id"),
        )
        s.commit()
        if created:
            flash(f"Shift #{shift.id} opened; waiting for the cashier to accept the float.", "success")
        else:
            flash(f"Cashier already has shift #{shift.id} ({shift.status}).", "warning")
    elif intent == "resend":
        shift = _get_shift_or_404(s, parse_int(request.form.get("shift_id")))
        manager_resend_opening(s, u, shift, opening_float=request.form.get("opening_float"))
        s.commit()
        flash(f"Opening float re-sent for shift #{shift.id}.", "success")
    elif intent == "close":
        shift = _get_shift_or_404(s, parse_int(request.form.get("shift_id")))
        manager_close_shift(
            s,
            u,
            shift,
            manager_counted=request.form.get("manager_counted"),
            resolution=request.form.get("resolution"),
            paper_ref=request.form.get("paper_ref"),
            note=request.form.get("note"),
        )
        s.commit()
        flash(f"Shift #{shift.id} closed.", "success")
    elif intent == "recount":
        shift = _get_shift_or_404(s, parse_int(request.form.get("shift_id")))
        manager_request_recount(s, u, shift, note=request.form.get("note"))
        s.commit()
        flash(f"Shift #{shift.id} sent back to the cashier for recount.", "warning")
    else:
        raise ActionError("Unknown intent")
    return redirect(url_for("cashier_shifts.manager_shifts"))


# ---------- Cashier: own shift ----------
@bp.get("/cashier/shift")
@require_role(CASHIER)
def cashier_shift():
    s = db_session()
    shift = active_shift_for(s, _current_user().id)
    return render_template(
        "cashier_shifts/cashier.html",
        shift=shift,
        breakdown=drawer_breakdown(s, shift) if shift else None,
        denominations=DENOMINATIONS,
    )


@bp.post("/cashier/shift")
@require_role(CASHIER)
def cashier_shift_post():
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()
    back = redirect(url_for("cashier_shifts.cashier_shift"))

    if intent in ("drawer:deposit", "drawer:withdraw"):
        with transaction(serializable=True) as tx:
            shift = _get_shift_or_404(tx, parse_int(request.form.get("shift_id")))
            txn = post_drawer_txn(
                tx,
                u,
                shift,
                withdraw=intent == "drawer:withdraw",
                amount=request.form.get("amount"),
                note=request.form.get("note"),
            )
            amount = txn.amount
        flash(f"{'Withdrawal' if intent == 'drawer:withdraw' else 'Deposit'} of {amount:,.2f} recorded.", "success")
        return back

    s = db_session()
    if intent == "open":
        shift = cashier_resume_shift(s, u)
        flash(f"Resumed shift #{shift.id}.", "success")
        return redirect(url_for("orders.cashier_queue"))

    if intent in ("opening:accept", "opening:dispute"):
        shift = _get_shift_or_404(s, parse_int(request.form.get("shift_id")))
        respond_to_opening(
            s,
            u,
            shift,
            accept=intent == "opening:accept",
            counted=request.form.get("opening_counted"),
            note=request.form.get("note"),
        )
        s.commit()
        flash("Opening float accepted." if intent == "opening:accept" else "Opening float disputed.", "success")
        return back

    if intent == "close":
        shift = _get_shift_or_404(s, parse_int(request.form.get("shift_id")))
        counts = {key: request.form.get(f"d_{key}") for _, _, key in DENOMINATIONS if request.form.get(f"d_{key}")}
        cashier_submit_count(
            s,
            u,
            shift,
            counted=request.form.get("counted"),
            denominations=counts,
            notes=request.form.get("notes"),
        )
        s.commit()
        flash("Counted cash submitted. The manager will recount and close the shift.", "success")
        return back

    raise ActionError("Unknown intent")


# ---------- Cashier: own variances ----------
@bp.get("/cashier/charges")
@require_role(CASHIER)
def cashier_charges():
    s = db_session()
    variances = (
        s.query(CashierShiftVariance)
        .join(CashierShift, CashierShiftVariance.shift_id == CashierShift.id)
        .filter(CashierShift.cashier_id == _current_user().id)
        .order_by(CashierShiftVariance.created_at.desc())
        .all()
    )
    return render_template("cashier_shifts/charges.html", variances=variances, charge_balance=charge_balance)


@bp.post("/cashier/charges")
@require_role(CASHIER)
def cashier_charges_post():
    s = db_session()
    u = _current_user()
    variance = s.get(CashierShiftVariance, parse_int(request.form.get("variance_id")) or 0)
    if not variance:
        raise NotFoundError("Variance not found.")
    intent = (request.form.get("intent") or "").strip()
    if intent == "cashier-note":
        cashier_note_variance(s, u, variance, request.form.get("note"))
        flash("Note saved.", "success")
    elif intent == "cashier-ack":
        cashier_ack_variance(s, u, variance)
        flash("Variance acknowledged.", "success")
    else:
        raise ActionError("Unknown intent")
    s.commit()
    return redirect(url_for("cashier_shifts.cashier_charges"))


# ---------- Manager: cashier variances & charges ----------
@bp.get("/store/cashier-variances")
@require_role(*MANAGERS)
def manager_variances():
    s = db_session()
    variances = s.query(CashierShiftVariance).order_by(CashierShiftVariance.created_at.desc()).limit(200).all()
    return render_template("cashier_shifts/variances.html", variances=variances, charge_balance=charge_balance)


@bp.post("/store/cashier-variances")
@require_role(*MANAGERS)
def manager_variances_post():
    s = db_session()
    u = _current_user()
    charge = s.get(CashierCharge, parse_int(request.form.get("charge_id")) or 0)
    if not charge:
        raise NotFoundError("Charge not found.")
    intent = (request.form.get("intent") or "").strip()
    if intent == "charge-payment":
        record_charge_payment(
            s,
            u,
            charge,
            amount=request.form.get("amount"),
            method=request.form.get("method"),
            ref_no=request.form.get("ref_no"),
        )
        flash("Charge payment recorded.", "success")
    elif intent == "waive":
        waive_charge(s, u, charge, note=request.form.get("note"))
        flash("Charge waived.", "success")
    else:
        raise ActionError("Unknown intent")
    s.commit()
    return redirect(url_for("cashier_shifts.manager_variances"))
