"""
Delivery remit at the cashier and the rider variance ledger.

The cashier receives the cash a rider collected for one delivery order. When the
customer paid in full but the rider hands over less, the gap is bridged with an
internal credit so the customer is settled, and the shortage lands on the rider as a
variance for a manager to decide.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, NamedTuple

from app.pos.audit import record_event
from app.pos.errors import ActionError, ForbiddenError
from app.pos.modules.dispatch.models import RECEIPT_PARENT, DeliveryRun, RunReceipt
from app.pos.modules.fleet.models import EMPLOYEE_RIDER
from app.pos.modules.orders.models import (
    CHANNEL_DELIVERY,
    FULFILLMENT_DELIVERED,
    PAY_CASH,
    PAY_INTERNAL_CREDIT,
    STATUS_PAID,
    STATUS_PARTIALLY_PAID,
    STATUS_UNPAID,
    STATUS_VOIDED,
    Order,
    Payment,
)
from app.pos.modules.orders.service import (
    MAIN_DELIVERY_REF,
    allocate_receipt_no,
    ensure_not_locked_by_other,
    has_all_frozen_line_totals,
    release_lock,
    rider_shortage_ref,
    sum_cash_payments,
    sum_frozen_line_totals,
    sum_shortage_bridge_payments,
)
from app.pos.modules.remit.models import (
    RC_OPEN,
    RC_OPEN_STATUSES,
    RC_PARTIALLY_SETTLED,
    RC_SETTLED,
    RC_WAIVED,
    RESOLUTION_CHARGE_RIDER,
    RESOLUTION_WAIVE,
    RESOLUTIONS,
    RV_CLOSED,
    RV_DECIDABLE,
    RV_MANAGER_APPROVED,
    RV_OPEN,
    RV_RIDER_ACCEPTED,
    RV_WAIVED,
    RiderCharge,
    RiderChargePayment,
    RiderRunVariance,
)
from app.pos.money import MONEY_EPS, ZERO, clamp, r2, to_decimal

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User

logger = logging.getLogger(__name__)

RIDER_PLAN_TAG = "[PLAN:PAYROLL_DEDUCTION]"


class RemitResult(NamedTuple):
    applied: Decimal
    change: Decimal
    bridged: Decimal
    remaining: Decimal
    payment: Payment | None


# ---------- Rider cash truth ----------
def origin_receipt(s: "Session", order: Order) -> RunReceipt | None:
    if not order.origin_run_receipt_id:
        return None
    return s.get(RunReceipt, order.origin_run_receipt_id)


def parent_receipt(s: "Session", order: Order) -> RunReceipt | None:
    return (
        s.query(RunReceipt)
        .filter(RunReceipt.kind == RECEIPT_PARENT, RunReceipt.parent_order_id == order.id)
        .order_by(RunReceipt.id.desc())
        .first()
    )


def _snapshot_cash(s: "Session", order: Order) -> tuple[Decimal, int | None]:
    """Fallback: cash the rider declared for this order in a run's check-in snapshot."""
    runs = (
        s.query(DeliveryRun)
        .filter(DeliveryRun.checkin_snapshot.isnot(None))
        .order_by(DeliveryRun.id.desc())
        .limit(50)
        .all()
    )
    for run in runs:
        for p in (run.checkin_snapshot or {}).get("parentPayments", []):
            if int(p.get("order_id") or 0) == order.id:
                return to_decimal(p.get("cash_collected")), run.id
    return ZERO, None


def remit_figures(s: "Session", order: Order) -> dict:
    """Final total, rider cash and what is still due, as shown on the remit page."""
    receipt = origin_receipt(s, order) or parent_receipt(s, order)
    if receipt is not None and receipt.lines:
        final_total = r2(receipt.frozen_total)
        frozen = True
    else:
        frozen = has_all_frozen_line_totals(order.items)
        final_total = sum_frozen_line_totals(order.items) if frozen else ZERO

    run_id = receipt.run_id if receipt is not None else None
    if receipt is not None:
        rider_cash = to_decimal(receipt.cash_collected)
    else:
        rider_cash, run_id = _snapshot_cash(s, order)
    rider_cash = r2(clamp(rider_cash, ZERO, final_total))

    already_cash = sum_cash_payments(order.payments)
    due = max(ZERO, r2(rider_cash - min(already_cash, rider_cash)))
    return {
        "receipt": receipt,
        "run_id": run_id,
        "frozen": frozen,
        "final_total": final_total,
        "rider_cash": rider_cash,
        "already_cash": already_cash,
        "already_bridged": sum_shortage_bridge_payments(order.payments),
        "due": due,
    }


# ---------- Delivery remit ----------
def remit_delivery(
    s: "Session",
    user: "User",
    order: Order,
    *,
    cash_given,
    lock_ttl_seconds: int,
) -> RemitResult:
    from app.pos.modules.cashier_shifts.service import require_open_shift

    cash_given = r2(to_decimal(cash_given))
    if cash_given < 0:
        raise ActionError("Cash given must be ≥ 0.")
    if order.channel != CHANNEL_DELIVERY:
        raise ActionError("Only delivery orders are remitted here.")
    if order.status in (STATUS_PAID, STATUS_VOIDED):
        raise ActionError("Order is already settled.")
    shift = require_open_shift(s, user)
    ensure_not_locked_by_other(order, user, ttl_seconds=lock_ttl_seconds)

    f = remit_figures(s, order)
    if not f["frozen"]:
        raise ActionError("Totals are not frozen yet. Complete rider check-in first, then remit.")

    rider_cash = f["rider_cash"]
    final_total = f["final_total"]
    due = f["due"]
    applied = min(cash_given, due)

    shortage = max(ZERO, r2(due - applied))
    receipt = f["receipt"]
    bridge = ZERO
    if (
        abs(rider_cash - final_total) <= MONEY_EPS
        and shortage > MONEY_EPS
        and f["already_bridged"] <= MONEY_EPS
        and receipt is not None
    ):
        bridge = shortage

    settled = f["already_cash"] + f["already_bridged"] + applied + bridge
    remaining = max(ZERO, r2(final_total - settled))
    if remaining > MONEY_EPS and not order.customer_id:
        raise ActionError("Link a customer before accepting partial payment.")

    rider_id = None
    if bridge > 0:
        run = s.get(DeliveryRun, receipt.run_id)
        rider_id = run.rider_id if run is not None else None
        if not rider_id:
            raise ActionError("Cannot create rider shortage variance: missing rider.")

    payment = None
    change = ZERO
    if applied > 0:
        change = r2(cash_given - applied)
        payment = Payment(
            method=PAY_CASH,
            amount=applied,
            tendered=cash_given,
            change=change,
            ref_no=MAIN_DELIVERY_REF,
            shift_id=shift.id,
            cashier_id=user.id,
        )
        order.payments.append(payment)

    if bridge > 0:
        order.payments.append(
            Payment(
                method=PAY_INTERNAL_CREDIT,
                amount=bridge,
                tendered=ZERO,
                change=ZERO,
                ref_no=rider_shortage_ref(receipt.id),
                shift_id=shift.id,
                cashier_id=user.id,
            )
        )
        _upsert_shortage_variance(
            s,
            receipt=receipt,
            rider_id=rider_id,
            order=order,
            shift_id=shift.id,
            expected=rider_cash,
            actual=applied,
        )

    now = datetime.utcnow()
    if remaining <= MONEY_EPS:
        order.status = STATUS_PAID
        order.paid_at = now
        order.is_on_credit = False
        if not order.receipt_no:
            order.receipt_no = allocate_receipt_no(s)
    else:
        order.status = STATUS_PARTIALLY_PAID if order.payments else STATUS_UNPAID
        order.is_on_credit = True
    order.dispatched_at = order.dispatched_at or now
    order.delivered_at = order.delivered_at or now
    order.fulfillment_status = FULFILLMENT_DELIVERED
    release_lock(order)
    order.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="order.delivery_remit",
        entity_type="Order",
        entity_id=order.id,
        metadata={
            "order_code": order.order_code,
            "rider_cash": rider_cash,
            "applied": applied,
            "bridge": bridge,
            "remaining": remaining,
            "shift_id": shift.id,
        },
    )
    if bridge > 0:
        logger.warning("order %s remitted short by %s; rider variance opened", order.order_code, bridge)
    return RemitResult(applied=applied, change=change, bridged=bridge, remaining=remaining, payment=payment)


def _upsert_shortage_variance(
    s: "Session",
    *,
    receipt: RunReceipt,
    rider_id: int,
    order: Order,
    shift_id: int,
    expected: Decimal,
    actual: Decimal,
) -> RiderRunVariance:
    v = s.query(RiderRunVariance).filter(RiderRunVariance.receipt_id == receipt.id).one_or_none()
    if v is None:
        v = RiderRunVariance(receipt_id=receipt.id, run_id=receipt.run_id, rider_id=rider_id)
        s.add(v)
    v.order_id = order.id
    v.shift_id = shift_id
    v.expected = r2(expected)
    v.actual = r2(actual)
    v.variance = r2(actual - expected)
    v.status = RV_OPEN
    v.note = f"AUTO: cashier shortage settlement for Order#{order.id}"
    return v


# ---------- Manager decision ----------
def _waive_open_charge(v: RiderRunVariance, now: datetime) -> None:
    if v.charge is not None and v.charge.status in RC_OPEN_STATUSES:
        v.charge.status = RC_WAIVED
        v.charge.settled_at = now


def _upsert_charge(s: "Session", v: RiderRunVariance, *, note: str | None, created_by_id: int | None) -> RiderCharge:
    amount = r2(abs(to_decimal(v.variance)))
    charge = v.charge
    if charge is None:
        charge = RiderCharge(variance=v, rider_id=v.rider_id, created_by_id=created_by_id)
        s.add(charge)
    charge.run_id = v.run_id
    charge.rider_id = v.rider_id
    charge.amount = amount
    charge.status = RC_OPEN
    if note:
        charge.note = note
    return charge


def manager_decide_variance(
    s: "Session",
    manager: "User",
    v: RiderRunVariance,
    *,
    resolution: str,
    note: str | None = None,
) -> RiderRunVariance:
    resolution = (resolution or "").strip().upper()
    if resolution not in RESOLUTIONS:
        raise ActionError("Invalid resolution")
    if v.status not in RV_DECIDABLE:
        raise ActionError("Variance is not editable")
    note = (note or "").strip() or None
    now = datetime.utcnow()

    v.resolution = resolution
    v.status = RV_WAIVED if resolution == RESOLUTION_WAIVE else RV_MANAGER_APPROVED
    v.manager_approved_at = now
    v.manager_approved_by_id = manager.id
    if note:
        v.note = note

    if resolution == RESOLUTION_CHARGE_RIDER:
        if v.is_shortage:
            _upsert_charge(s, v, note=note, created_by_id=manager.id)
        else:
            # Overages are never charged.
            _waive_open_charge(v, now)
    elif resolution == RESOLUTION_WAIVE:
        v.resolved_at = now
        _waive_open_charge(v, now)
    s.flush()
    record_event(
        s,
        actor=manager,
        action="rider_variance.decide",
        entity_type="RiderRunVariance",
        entity_id=v.id,
        reason=note,
        metadata={"resolution": resolution, "variance": v.variance, "status": v.status},
    )
    return v


# ---------- Rider side ----------
def rider_employee_id(user: "User") -> int:
    emp = user.employee
    if emp is None:
        raise ForbiddenError("Employee profile not linked")
    if emp.role != EMPLOYEE_RIDER:
        raise ForbiddenError("Rider access only")
    return emp.id


def rider_accept_variance(s: "Session", user: "User", v: RiderRunVariance) -> RiderRunVariance:
    if v.rider_id != rider_employee_id(user):
        raise ForbiddenError("Forbidden")
    if not v.is_shortage:
        raise ActionError("Only shortages can be accepted as rider charges")
    if v.status != RV_MANAGER_APPROVED or v.resolution != RESOLUTION_CHARGE_RIDER or v.rider_accepted_at:
        raise ActionError("Variance is not eligible for acceptance")
    now = datetime.utcnow()
    v.status = RV_RIDER_ACCEPTED
    v.rider_accepted_at = now
    v.rider_accepted_by_id = user.id
    charge = v.charge or _upsert_charge(s, v, note=None, created_by_id=user.id)
    if RIDER_PLAN_TAG not in (charge.note or ""):
        charge.note = f"{charge.note or ''}\n{RIDER_PLAN_TAG} Accepted by rider".strip()
    s.flush()
    record_event(s, actor=user, action="rider_variance.accept", entity_type="RiderRunVariance", entity_id=v.id)
    return v


# ---------- Charges ----------
def rider_charge_balance(charge: RiderCharge) -> Decimal:
    paid = sum((to_decimal(p.amount) for p in charge.payments), ZERO)
    return max(ZERO, r2(to_decimal(charge.amount) - paid))


def record_rider_charge_payment(
    s: "Session",
    manager: "User",
    charge: RiderCharge,
    *,
    amount,
    method: str | None = None,
    ref_no: str | None = None,
) -> RiderChargePayment:
    if charge.status not in RC_OPEN_STATUSES:
        raise ActionError(f"Charge is already {charge.status.lower()}.")
    value = to_decimal(amount, default=None)
    if value is None or value <= 0:
        raise ActionError("Enter a valid amount > 0")
    value = r2(value)
    balance = rider_charge_balance(charge)
    if value > balance + MONEY_EPS:
        raise ActionError(f"Payment exceeds remaining balance ({balance:.2f}).")
    payment = RiderChargePayment(
        amount=value,
        method=(method or "PAYROLL_DEDUCTION").strip().upper(),
        ref_no=(ref_no or "").strip() or None,
        recorded_by_id=manager.id,
    )
    charge.payments.append(payment)
    now = datetime.utcnow()
    if rider_charge_balance(charge) <= MONEY_EPS:
        charge.status = RC_SETTLED
        charge.settled_at = now
        if charge.variance is not None and charge.variance.status == RV_RIDER_ACCEPTED:
            charge.variance.status = RV_CLOSED
            charge.variance.resolved_at = now
    else:
        charge.status = RC_PARTIALLY_SETTLED
    s.flush()
    record_event(
        s,
        actor=manager,
        action="rider_charge.payment",
        entity_type="RiderCharge",
        entity_id=charge.id,
        metadata={"amount": value, "status": charge.status},
    )
    return payment
