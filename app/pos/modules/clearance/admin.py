from __future__ import annotations

from datetime import datetime

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.pos.db import db_session
from app.pos.errors import ActionError, NotFoundError
from app.pos.models import User
from app.pos.modules.cashier_shifts.service import open_shift_for
from app.pos.modules.clearance.models import CASE_DECIDED, CASE_NEEDS_CLEARANCE, ClearanceCase, CustomerAr
from app.pos.modules.clearance.service import decide_case, mark_voided, open_ar_entries, record_ar_payment
from app.pos.modules.customers.models import Customer
from app.pos.rbac import ADMIN, CASHIER, MANAGERS, STORE_MANAGER, require_role
from app.pos.utils import parse_date, parse_int

bp = Blueprint("clearance", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Manager inbox ----------
@bp.get("/store/clearance")
@require_role(*MANAGERS)
def inbox():
    s = db_session()
    show = (request.args.get("show") or "pending").strip().lower()
    q = s.query(ClearanceCase)
    if show == "decided":
        q = q.filter(ClearanceCase.status == CASE_DECIDED)
    else:
        q = q.filter(ClearanceCase.status == CASE_NEEDS_CLEARANCE)
    cases = q.order_by(ClearanceCase.flagged_at.asc()).limit(200).all()
    return render_template("clearance/inbox.html", cases=cases, show=show)


@bp.get("/store/clearance/<int:case_id>")
@require_role(*MANAGERS)
def case_detail(case_id: int):
    s = db_session()
    case = s.get(ClearanceCase, case_id)
    if not case:
        raise NotFoundError("Clearance case not found.")
    return render_template("clearance/case.html", case=case)


@bp.post("/store/clearance/<int:case_id>")
@require_role(*MANAGERS)
def case_detail_post(case_id: int):
    s = db_session()
    case = s.get(ClearanceCase, case_id)
    if not case:
        raise NotFoundError("Clearance case not found.")
    u = _current_user()
    intent = (request.form.get("intent") or "").strip()

    if intent == "decide":
        due = parse_date(request.form.get("due_date"))
        d = decide_case(
            s,
            u,
            case,
            decision=request.form.get("decision") or "",
            approved_discount=request.form.get("approved_discount"),
            note=request.form.get("note"),
            due_date=datetime(due.year, due.month, due.day) if due else None,
        )
        s.commit()
        flash(f"Case decided: {d.kind}.", "success")
    elif intent == "mark-voided":
        mark_voided(s, u, case, reason=request.form.get("reason"))
        s.commit()
        flash("Receipt marked voided.", "success")
    else:
        raise ActionError("Unknown intent")
    return redirect(url_for("clearance.case_detail", case_id=case.id))


# ---------- Customer A/R ----------
@bp.get("/ar/customers/<int:customer_id>")
@require_role(ADMIN, STORE_MANAGER, CASHIER)
def ar_ledger(customer_id: int):
    s = db_session()
    customer = s.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found.")
    entries = (
        s.query(CustomerAr)
        .filter(CustomerAr.customer_id == customer.id)
        .order_by(CustomerAr.created_at.desc(), CustomerAr.id.desc())
        .all()
    )
    open_entries = open_ar_entries(s, customer.id)
    return render_template(
        "clearance/ar_ledger.html",
        customer=customer,
        entries=entries,
        open_total=sum((e.balance for e in open_entries), 0),
        shift=open_shift_for(s, _current_user().id),
    )


@bp.post("/ar/customers/<int:customer_id>")
@require_role(CASHIER)
def ar_ledger_post(customer_id: int):
    s = db_session()
    customer = s.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found.")
    if (request.form.get("intent") or "record-payment") != "record-payment":
        raise ActionError("Unknown intent")
    applied, change = record_ar_payment(
        s,
        _current_user(),
        customer,
        amount=request.form.get("amount"),
        ar_id=parse_int(request.form.get("ar_id")),
        ref_no=request.form.get("ref_no"),
    )
    s.commit()
    flash(f"Applied {applied:,.2f}. Change: {change:,.2f}", "success")
    return redirect(url_for("clearance.ar_ledger", customer_id=customer.id))
