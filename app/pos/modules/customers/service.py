from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_

from app.pos.audit import record_event
from app.pos.errors import ActionError, NotFoundError
from app.pos.modules.catalog.models import UNIT_KINDS, Product
from app.pos.modules.customers.models import PRICE_MODES, Customer, CustomerAddress, CustomerItemPrice
from app.pos.money import to_decimal
from app.pos.utils import digits_only, parse_datetime, to_e164_ph, to_e164_prefix

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User


def validate_customer_payload(payload: dict) -> list[str]:
    """Validate customer create/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("first_name") or "").strip():
        errors.append("First name is required.")
    raw_phone = (payload.get("phone") or "").strip()
    if raw_phone and not to_e164_ph(raw_phone):
        errors.append("Phone must be a valid PH mobile number (e.g. 09171234567).")
    limit = payload.get("credit_limit")
    if limit not in (None, "") and (to_decimal(limit, default=None) is None or to_decimal(limit) < 0):
        errors.append("Credit limit must be a number ≥ 0.")
    return errors


def _ensure_phone_free(s: "Session", phone: str | None, exclude_id: int | None = None) -> None:
    if not phone:
        return
    q = s.query(Customer).filter(Customer.phone == phone)
    if exclude_id:
        q = q.filter(Customer.id != exclude_id)
    other = q.first()
    if other:
        raise ActionError(f"Phone {phone} already belongs to {other.full_name}.")


def create_customer(s: "Session", payload: dict, user: "User") -> Customer:
    phone = to_e164_ph(payload.get("phone")) or None
    _ensure_phone_free(s, phone)
    now = datetime.utcnow()
    c = Customer(
        first_name=(payload.get("first_name") or "").strip(),
        middle_name=(payload.get("middle_name") or "").strip() or None,
        last_name=(payload.get("last_name") or "").strip(),
        alias=(payload.get("alias") or "").strip() or None,
        phone=phone,
        email=(payload.get("email") or "").strip().lower() or None,
        credit_limit=to_decimal(payload.get("credit_limit"), default=None),
        notes=(payload.get("notes") or "").strip() or None,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(c)
    s.flush()

    line1 = (payload.get("address_line1") or "").strip()
    if line1:
        add_address(s, c, {"line1": line1, "label": "Primary"}, user)

    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=c.id,
        metadata={"name": c.full_name, "phone": c.phone},
    )
    return c


def update_customer(s: "Session", c: Customer, payload: dict, user: "User") -> Customer:
    changes: dict = {}
    phone = to_e164_ph(payload.get("phone")) or None
    _ensure_phone_free(s, phone, exclude_id=c.id)

    new_values = {
        "first_name": (payload.get("first_name") or "").strip(),
        "middle_name": (payload.get("middle_name") or "").strip() or None,
        "last_name": (payload.get("last_name") or "").strip(),
        "alias": (payload.get("alias") or "").strip() or None,
        "phone": phone,
        "email": (payload.get("email") or "").strip().lower() or None,
        "credit_limit": to_decimal(payload.get("credit_limit"), default=None),
        "notes": (payload.get("notes") or "").strip() or None,
        "is_active": bool(payload.get("is_active", True)),
    }
    for attr, value in new_values.items():
        old = getattr(c, attr)
        if old != value:
            changes[attr] = {"old": str(old), "new": str(value)}
            setattr(c, attr, value)
    c.updated_at = datetime.utcnow()

    if changes:
        record_event(
            s,
            actor=user,
            action="customer.edit",
            entity_type="Customer",
            entity_id=c.id,
            metadata={"name": c.full_name, "changes": changes},
        )
    return c


def add_address(s: "Session", c: Customer, payload: dict, user: "User") -> CustomerAddress:
    line1 = (payload.get("line1") or "").strip()
    if not line1:
        raise ActionError("Address line is required.")
    lat = to_decimal(payload.get("lat"), default=None)
    lng = to_decimal(payload.get("lng"), default=None)
    if (lat is None) != (lng is None):
        raise ActionError("Latitude and longitude must be provided together.")
    addr = CustomerAddress(
        customer_id=c.id,
        label=(payload.get("label") or "").strip() or None,
        line1=line1,
        barangay=(payload.get("barangay") or "").strip() or None,
        city=(payload.get("city") or "").strip() or None,
        province=(payload.get("province") or "").strip() or None,
        landmark=(payload.get("landmark") or "").strip() or None,
        lat=lat,
        lng=lng,
    )
    s.add(addr)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer.address_add",
        entity_type="Customer",
        entity_id=c.id,
        metadata={"address_id": addr.id, "line1": line1},
    )
    return addr


def search_customers(s: "Session", term: str, *, limit: int = 20) -> list[Customer]:
    """
    Name/alias tokens must all match; a number-ish term also matches phone by E.164 prefix.
    """
    term = (term or "").strip()
    q = s.query(Customer).filter(Customer.is_active.is_(True))
    if not term:
        return q.order_by(Customer.last_name.asc(), Customer.first_name.asc()).limit(limit).all()

    name_conds = []
    for tok in term.split():
        like = f"%{tok}%"
        name_conds.append(
            or_(
                Customer.first_name.ilike(like),
                Customer.middle_name.ilike(like),
                Customer.last_name.ilike(like),
                Customer.alias.ilike(like),
            )
        )
    conds = [and_(*name_conds)]
    if len(digits_only(term)) >= 3:
        prefix = to_e164_prefix(term)
        conds.append(Customer.phone.like(f"%{prefix}%"))
    return (
        q.filter(or_(*conds))
        .order_by(Customer.last_name.asc(), Customer.first_name.asc())
        .limit(limit)
        .all()
    )


# ---------- Customer pricing rules ----------


def find_overlapping_rule(
    s: "Session",
    *,
    customer_id: int,
    product_id: int,
    unit_kind: str,
    starts_at: datetime | None,
    ends_at: datetime | None,
    exclude_id: int | None = None,
) -> CustomerItemPrice | None:
    """Active rule of the same (customer, product, unit kind) whose window intersects [starts_at, ends_at]."""
    q = s.query(CustomerItemPrice).filter(
        CustomerItemPrice.customer_id == customer_id,
        CustomerItemPrice.product_id == product_id,
        CustomerItemPrice.unit_kind == unit_kind,
        CustomerItemPrice.active.is_(True),
    )
    if exclude_id:
        q = q.filter(CustomerItemPrice.id != exclude_id)
    # None on either side means unbounded.
    if ends_at is not None:
        q = q.filter(or_(CustomerItemPrice.starts_at.is_(None), CustomerItemPrice.starts_at <= ends_at))
    if starts_at is not None:
        q = q.filter(or_(CustomerItemPrice.ends_at.is_(None), CustomerItemPrice.ends_at >= starts_at))
    return q.first()


def create_price_rule(s: "Session", customer: Customer, payload: dict, user: "User") -> CustomerItemPrice:
    product_id = int(payload.get("product_id") or 0)
    unit_kind = (payload.get("unit_kind") or "").strip().upper()
    mode = (payload.get("mode") or "").strip().upper()
    value = to_decimal(payload.get("value"), default=None)
    starts_at = parse_datetime(payload.get("starts_at"))
    ends_at = parse_datetime(payload.get("ends_at"))
    active = bool(payload.get("active", True))

    if not product_id or unit_kind not in UNIT_KINDS or mode not in PRICE_MODES:
        raise ActionError("Product, unit kind and mode are required.")
    if not s.get(Product, product_id):
        raise NotFoundError("Product not found.")
    if value is None or value < 0:
        raise ActionError("Value must be ≥ 0.")
    if mode == "PERCENT_DISCOUNT" and value > 100:
        raise ActionError("Percent discount cannot exceed 100.")
    if starts_at and ends_at and starts_at > ends_at:
        raise ActionError("Start must be ≤ End.")

    if active and find_overlapping_rule(
        s,
        customer_id=customer.id,
        product_id=product_id,
        unit_kind=unit_kind,
        starts_at=starts_at,
        ends_at=ends_at,
    ):
        raise ActionError("There is already an active rule overlapping this period.")

    rule = CustomerItemPrice(
        customer_id=customer.id,
        product_id=product_id,
        unit_kind=unit_kind,
        mode=mode,
        value=value,
        starts_at=starts_at,
        ends_at=ends_at,
        active=active,
    )
    s.add(rule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer.price_rule_create",
        entity_type="CustomerItemPrice",
        entity_id=rule.id,
        metadata={"customer_id": customer.id, "product_id": product_id, "mode": mode, "value": value},
    )
    return rule


def set_price_rule_active(s: "Session", rule: CustomerItemPrice, active: bool, user: "User") -> CustomerItemPrice:
    if active and find_overlapping_rule(
        s,
        customer_id=rule.customer_id,
        product_id=rule.product_id,
        unit_kind=rule.unit_kind,
        starts_at=rule.starts_at,
        ends_at=rule.ends_at,
        exclude_id=rule.id,
    ):
        raise ActionError("Another active rule overlaps. Deactivate it first.")
    rule.active = active
    record_event(
        s,
        actor=user,
        action="customer.price_rule_toggle",
        entity_type="CustomerItemPrice",
        entity_id=rule.id,
        metadata={"active": active},
    )
    return rule


def delete_price_rule(s: "Session", rule: CustomerItemPrice, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="customer.price_rule_delete",
        entity_type="CustomerItemPrice",
        entity_id=rule.id,
        metadata={"customer_id": rule.customer_id, "product_id": rule.product_id, "value": rule.value},
    )
    s.delete(rule)


def credit_exposure(s: "Session", customer_id: int) -> Decimal:
    """Open A/R balance for the customer (used on the detail page against credit_limit)."""
    from sqlalchemy import func

    from app.pos.modules.clearance.models import AR_OPEN_STATUSES, CustomerAr

    total = (
        s.query(func.coalesce(func.sum(CustomerAr.balance), 0))
        .filter(CustomerAr.customer_id == customer_id, CustomerAr.status.in_(AR_OPEN_STATUSES))
        .scalar()
    )
    return to_decimal(total) or Decimal("0")
