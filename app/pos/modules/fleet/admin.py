from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.pos.audit import record_event
from app.pos.db import db_session
from app.pos.models import User
from app.pos.modules.fleet.models import EMPLOYEE_ROLES, VEHICLE_TYPES, Employee, Vehicle
from app.pos.modules.fleet.service import save_employee, save_vehicle
from app.pos.rbac import ADMIN, STORE_MANAGER, require_role

bp = Blueprint("fleet", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Vehicles ----------
@bp.get("/settings/vehicles")
@require_role(ADMIN, STORE_MANAGER)
def vehicles_list():
    s = db_session()
    vehicles = s.query(Vehicle).order_by(Vehicle.active.desc(), Vehicle.name.asc()).all()
    edit_id = request.args.get("edit", type=int)
    editing = s.get(Vehicle, edit_id) if edit_id else None
    return render_template("fleet/vehicles.html", vehicles=vehicles, editing=editing, vehicle_types=VEHICLE_TYPES)


@bp.post("/settings/vehicles")
@require_role(ADMIN)
def vehicles_save():
    s = db_session()
    vehicle_id = request.form.get("id", type=int)
    vehicle = None
    if vehicle_id:
        vehicle = s.get(Vehicle, vehicle_id)
        if not vehicle:
            abort(404)
    payload = {
        "name": request.form.get("name"),
        "type": request.form.get("type"),
        "capacity_units": request.form.get("capacity_units"),
        "plate_no": request.form.get("plate_no"),
        "active": request.form.get("active", "1") == "1",
    }
    save_vehicle(s, payload, _current_user(), vehicle)
    s.commit()
    flash("Vehicle saved.", "success")
    return redirect(url_for("fleet.vehicles_list"))


@bp.post("/settings/vehicles/<int:vehicle_id>/toggle")
@require_role(ADMIN)
def vehicle_toggle(vehicle_id: int):
    s = db_session()
    v = s.get(Vehicle, vehicle_id)
    if not v:
        abort(404)
    v.active = not v.active
    record_event(s, actor=_current_user(), action="vehicle.toggle", entity_type="Vehicle", entity_id=v.id, metadata={"active": v.active})
    s.commit()
    return redirect(url_for("fleet.vehicles_list"))


# ---------- Employees / riders ----------
@bp.get("/settings/employees")
@require_role(ADMIN, STORE_MANAGER)
def employees_list():
    s = db_session()
    role_filter = (request.args.get("role") or "").strip().upper()
    q = s.query(Employee)
    if role_filter in EMPLOYEE_ROLES:
        q = q.filter(Employee.role == role_filter)
    employees = q.order_by(Employee.active.desc(), Employee.first_name.asc()).all()
    vehicles = s.query(Vehicle).filter(Vehicle.active.is_(True)).order_by(Vehicle.name.asc()).all()
    edit_id = request.args.get("edit", type=int)
    editing = s.get(Employee, edit_id) if edit_id else None
    return render_template(
        "fleet/employees.html",
        employees=employees,
        vehicles=vehicles,
        editing=editing,
        roles=EMPLOYEE_ROLES,
        role_filter=role_filter,
    )


@bp.post("/settings/employees")
@require_role(ADMIN)
def employees_save():
    s = db_session()
    employee_id = request.form.get("id", type=int)
    employee = None
    if employee_id:
        employee = s.get(Employee, employee_id)
        if not employee:
            abort(404)
    payload = {
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "alias": request.form.get("alias"),
        "phone": request.form.get("phone"),
        "role": request.form.get("role"),
        "default_vehicle_id": request.form.get("default_vehicle_id"),
        "active": request.form.get("active", "1") == "1",
    }
    save_employee(s, payload, _current_user(), employee)
    s.commit()
    flash("Employee saved.", "success")
    return redirect(url_for("fleet.employees_list"))
