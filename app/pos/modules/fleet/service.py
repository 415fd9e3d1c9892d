from __future__ import annotations

from typing import TYPE_CHECKING

from app.pos.audit import record_event
from app.pos.errors import ActionError
from app.pos.modules.fleet.models import EMPLOYEE_RIDER, EMPLOYEE_ROLES, VEHICLE_TYPES, Employee, Vehicle
from app.pos.money import to_decimal
from app.pos.utils import parse_int, to_e164_ph

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User


def validate_vehicle_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Vehicle name is required.")
    if (payload.get("type") or "").strip().upper() not in VEHICLE_TYPES:
        errors.append(f"Invalid vehicle type. Must be one of: {', '.join(VEHICLE_TYPES)}")
    cap = to_decimal(payload.get("capacity_units"), default=None)
    if cap is None or cap < 0:
        errors.append("Capacity (kg) must be a number ≥ 0.")
    return errors


def save_vehicle(s: "Session", payload: dict, user: "User", vehicle: Vehicle | None = None) -> Vehicle:
    errors = validate_vehicle_payload(payload)
    if errors:
        raise ActionError(" ".join(errors))
    name = payload["name"].strip()
    vtype = payload["type"].strip().upper()
    dup = s.query(Vehicle).filter(Vehicle.name == name, Vehicle.type == vtype)
    if vehicle is not None:
        dup = dup.filter(Vehicle.id != vehicle.id)
    if dup.first():
        raise ActionError(f"A {vtype} named {name} already exists.")

    is_new = vehicle is None
    if vehicle is None:
        vehicle = Vehicle()
        s.add(vehicle)
    vehicle.name = name
    vehicle.type = vtype
    vehicle.capacity_units = to_decimal(payload.get("capacity_units"))
    vehicle.plate_no = (payload.get("plate_no") or "").strip() or None
    vehicle.active = bool(payload.get("active", True))
    s.flush()
    record_event(
        s,
        actor=user,
        action="vehicle.create" if is_new else "vehicle.edit",
        entity_type="Vehicle",
        entity_id=vehicle.id,
        metadata={"name": name, "type": vtype, "capacity_units": vehicle.capacity_units},
    )
    return vehicle


def validate_employee_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("first_name") or "").strip():
        errors.append("First name is required.")
    if (payload.get("role") or "").strip().upper() not in EMPLOYEE_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(EMPLOYEE_ROLES)}")
    raw_phone = (payload.get("phone") or "").strip()
    if raw_phone and not to_e164_ph(raw_phone):
        errors.append("Phone must be a valid PH mobile number.")
    return errors


def save_employee(s: "Session", payload: dict, user: "User", employee: Employee | None = None) -> Employee:
    errors = validate_employee_payload(payload)
    if errors:
        raise ActionError(" ".join(errors))
    phone = to_e164_ph(payload.get("phone")) or None
    if phone:
        dup = s.query(Employee).filter(Employee.phone == phone)
        if employee is not None:
            dup = dup.filter(Employee.id != employee.id)
        if dup.first():
            raise ActionError(f"Phone {phone} is already used by another employee.")
    vehicle_id = parse_int(payload.get("default_vehicle_id"))
    if vehicle_id and not s.get(Vehicle, vehicle_id):
        raise ActionError("Default vehicle not found.")

    is_new = employee is None
    if employee is None:
        employee = Employee()
        s.add(employee)
    employee.first_name = payload["first_name"].strip()
    employee.last_name = (payload.get("last_name") or "").strip()
    employee.alias = (payload.get("alias") or "").strip() or None
    employee.phone = phone
    employee.role = payload["role"].strip().upper()
    employee.active = bool(payload.get("active", True))
    employee.default_vehicle_id = vehicle_id
    s.flush()
    record_event(
        s,
        actor=user,
        action="employee.create" if is_new else "employee.edit",
        entity_type="Employee",
        entity_id=employee.id,
        metadata={"name": employee.full_name, "role": employee.role},
    )
    return employee


def active_riders(s: "Session") -> list[Employee]:
    return (
        s.query(Employee)
        .filter(Employee.role == EMPLOYEE_RIDER, Employee.active.is_(True))
        .order_by(Employee.first_name.asc(), Employee.last_name.asc())
        .all()
    )
