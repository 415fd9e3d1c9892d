import re
from datetime import datetime, time, timedelta

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import func
from werkzeug.security import generate_password_hash

from app.pos.audit import record_event
from app.pos.db import db_session
from app.pos.models import AuditEvent, Role, User
from app.pos.modules.cashier_shifts.models import SHIFT_ACTIVE_STATUSES, VARIANCE_OPEN, CashierShift, CashierShiftVariance
from app.pos.modules.clearance.models import CASE_NEEDS_CLEARANCE, ClearanceCase
from app.pos.modules.dispatch.models import DeliveryRun
from app.pos.modules.fleet.models import Employee
from app.pos.modules.remit.models import RV_DECIDABLE, RiderRunVariance
from app.pos.rbac import ADMIN, MANAGERS, require_role
from app.pos.utils import parse_date, parse_int

bp = Blueprint("admin", __name__)

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/store")
@require_role(*MANAGERS)
def store_dashboard():
    s = db_session()
    runs_by_status = dict(
        s.query(DeliveryRun.status, func.count(DeliveryRun.id)).group_by(DeliveryRun.status).all()
    )
    counts = {
        "pending_clearance": s.query(ClearanceCase).filter(ClearanceCase.status == CASE_NEEDS_CLEARANCE).count(),
        "active_shifts": s.query(CashierShift).filter(CashierShift.status.in_(SHIFT_ACTIVE_STATUSES)).count(),
        "open_cashier_variances": s.query(CashierShiftVariance)
        .filter(CashierShiftVariance.status == VARIANCE_OPEN)
        .count(),
        "open_rider_variances": s.query(RiderRunVariance).filter(RiderRunVariance.status.in_(RV_DECIDABLE)).count(),
    }
    return render_template("admin/store.html", counts=counts, runs_by_status=runs_by_status)


# ---------- Users ----------
@bp.get("/admin/users")
@require_role(ADMIN)
def users_list():
    s = db_session()
    users = s.query(User).order_by(User.email.asc()).all()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    employees = s.query(Employee).filter(Employee.active.is_(True)).order_by(Employee.first_name.asc()).all()
    return render_template("admin/users.html", users=users, roles=roles, employees=employees)


@bp.post("/admin/users")
@require_role(ADMIN)
def users_create():
    s = db_session()
    u = _current_user()

    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    role = s.query(Role).filter(Role.key == (request.form.get("role") or "").strip()).one_or_none()

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not _EMAIL_RE.match(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    if len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if role is None:
        errors.append("Select a role.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_list"))

    new_user = User(
        email=email,
        full_name=(request.form.get("full_name") or "").strip() or None,
        password_hash=generate_password_hash(password),
        is_active=True,
    )
    new_user.roles.append(role)
    s.add(new_user)
    s.flush()
    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=new_user.id,
        metadata={"email": email, "role": role.key},
    )
    s.commit()
    flash(f"Account created for {email}.", "success")
    return redirect(url_for("admin.users_list"))


@bp.post("/admin/users/<int:user_id>/toggle")
@require_role(ADMIN)
def users_toggle(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    if user.id == u.id:
        flash("You cannot deactivate your own account.", "danger")
        return redirect(url_for("admin.users_list"))
    user.is_active = not user.is_active
    record_event(s, actor=u, action="user.toggle", entity_type="User", entity_id=user.id, metadata={"is_active": user.is_active})
    s.commit()
    return redirect(url_for("admin.users_list"))


@bp.post("/admin/users/<int:user_id>/employee")
@require_role(ADMIN)
def users_link_employee(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    employee_id = parse_int(request.form.get("employee_id"))
    if employee_id:
        emp = s.get(Employee, employee_id)
        if emp is None:
            abort(404)
        taken = s.query(User).filter(User.employee_id == emp.id, User.id != user.id).one_or_none()
        if taken:
            flash(f"Employee is already linked to {taken.email}.", "danger")
            return redirect(url_for("admin.users_list"))
    before = user.employee_id
    user.employee_id = employee_id
    record_event(
        s,
        actor=_current_user(),
        action="user.link_employee",
        entity_type="User",
        entity_id=user.id,
        metadata={"before": before, "after": employee_id},
    )
    s.commit()
    flash("Employee link saved.", "success")
    return redirect(url_for("admin.users_list"))


# ---------- Audit ----------
@bp.get("/admin/audit")
@require_role(ADMIN)
def audit_list():
    """Last 200 audit events, filterable by action, actor email and date range."""
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end date
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
