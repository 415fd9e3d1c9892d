"""
Cashier shift lifecycle and drawer math.

A manager opens a shift with a float (PENDING_ACCEPT); the cashier counts and accepts
it (OPEN) or disputes it (OPENING_DISPUTED). While OPEN the cashier takes payments and
posts drawer deposits/withdrawals. The cashier submits a count (SUBMITTED) and the
manager recounts and final-closes it, recording any variance and, for a shortage,
an optional charge against the cashier.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.pos.audit import record_event
from app.pos.errors import ActionError, ConflictError, ForbiddenError
from app.pos.models import Branch, User
from app.pos.modules.cashier_shifts.models import (
    CHARGE_OPEN,
    CHARGE_PARTIALLY_SETTLED,
    CHARGE_SETTLED,
    CHARGE_WAIVED,
    RESOLUTION_CHARGE_CASHIER,
    RESOLUTION_INFO_ONLY,
    RESOLUTION_WAIVE,
    RESOLUTIONS,
    SHIFT_ACTIVE_STATUSES,
    SHIFT_FINAL_CLOSED,
    SHIFT_OPEN,
    SHIFT_OPENING_DISPUTED,
    SHIFT_PENDING_ACCEPT,
    SHIFT_RECOUNT_REQUIRED,
    SHIFT_SUBMITTED,
    TXN_CASH_IN,
    TXN_CASH_OUT,
    TXN_DROP,
    VARIANCE_CLOSED,
    VARIANCE_MANAGER_APPROVED,
    VARIANCE_OPEN,
    VARIANCE_WAIVED,
    CashDrawerTxn,
    CashierCharge,
    CashierChargePayment,
    CashierShift,
    CashierShiftVariance,
)
from app.pos.modules.clearance.models import CustomerArPayment
from app.pos.modules.orders.models import PAY_CASH, Payment
from app.pos.money import DRAWER_EPS, MONEY_EPS, ZERO, r2, to_decimal
from app.pos.rbac import CASHIER, user_has_role

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# (value, bucket, key). Quarter coins are keyed "25".
DENOMINATIONS = (
    (Decimal("1000"), "bills", "1000"),
    (Decimal("500"), "bills", "500"),
    (Decimal("200"), "bills", "200"),
    (Decimal("100"), "bills", "100"),
    (Decimal("50"), "bills", "50"),
    (Decimal("20"), "coins", "20"),
    (Decimal("10"), "coins", "10"),
    (Decimal("5"), "coins", "5"),
    (Decimal("1"), "coins", "1"),
    (Decimal("0.25"), "coins", "25"),
)

CASHIER_CHARGE_TAG = "[CASHIER_CHARGE]"


# ---------- Denominations ----------
def parse_denominations(raw: dict) -> tuple[dict, Decimal]:
    """
    Read counts keyed "d_1000", "d_25", ... (form) or "1000", "25", ... (JSON).
    Negative or garbage counts are floored to 0.
    """
    counts: dict = {"bills": {}, "coins": {}}
    total = ZERO
    for value, bucket, key in DENOMINATIONS:
        qty = to_decimal(raw.get(f"d_{key}", raw.get(key)), default=ZERO)
        qty = max(ZERO, qty.to_integral_value())
        counts[bucket][key] = int(qty)
        total += value * qty
    return counts, r2(total)


def denominations_total(counts: dict) -> Decimal:
    total = ZERO
    for value, bucket, key in DENOMINATIONS:
        total += value * max(ZERO, to_decimal((counts.get(bucket) or {}).get(key), default=ZERO))
    return r2(total)


# ---------- Lookups ----------
def open_shift_for(s: "Session", cashier_id: int) -> CashierShift | None:
    return (
        s.query(CashierShift)
        .filter(CashierShift.cashier_id == cashier_id, CashierShift.status == SHIFT_OPEN)
        .order_by(CashierShift.id.desc())
        .first()
    )


def active_shift_for(s: "Session", cashier_id: int) -> CashierShift | None:
    return (
        s.query(CashierShift)
        .filter(CashierShift.cashier_id == cashier_id, CashierShift.status.in_(SHIFT_ACTIVE_STATUSES))
        .order_by(CashierShift.id.desc())
        .first()
    )


def require_open_shift(s: "Session", user: User) -> CashierShift:
    shift = open_shift_for(s, user.id)
    if shift is None:
        raise ForbiddenError("Open your cashier shift first.")
    return shift


# ---------- Drawer math ----------
def drawer_breakdown(s: "Session", shift: CashierShift) -> dict:
    """Cash that should be in the drawer, with the parts that make it up."""
    tendered, change = (
        s.query(func.coalesce(func.sum(Payment.tendered), 0), func.coalesce(func.sum(Payment.change), 0))
        .filter(Payment.shift_id == shift.id, Payment.method == PAY_CASH)
        .one()
    )
    ar_cash = (
        s.query(func.coalesce(func.sum(CustomerArPayment.amount), 0)).filter(CustomerArPayment.shift_id == shift.id).scalar()
    )
    by_type = dict(
        s.query(CashDrawerTxn.type, func.coalesce(func.sum(CashDrawerTxn.amount), 0))
        .filter(CashDrawerTxn.shift_id == shift.id)
        .group_by(CashDrawerTxn.type)
        .all()
    )
    opening = r2(shift.opening_float)
    sales = r2(to_decimal(tendered) - to_decimal(change))
    ar = r2(ar_cash)
    deposits = r2(by_type.get(TXN_CASH_IN, 0))
    withdrawals = r2(to_decimal(by_type.get(TXN_CASH_OUT, 0)) + to_decimal(by_type.get(TXN_DROP, 0)))
    return {
        "opening_float": opening,
        "cash_sales": sales,
        "ar_cash": ar,
        "deposits": deposits,
        "withdrawals": withdrawals,
        "expected": r2(opening + sales + ar + deposits - withdrawals),
    }


def expected_drawer(s: "Session", shift: CashierShift) -> Decimal:
    return drawer_breakdown(s, shift)["expected"]


def paper_ref_no(shift: CashierShift, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"CS-{now:%Y%m%d}-{shift.id:04d}-{now:%H%M%S}"


# ---------- Manager side ----------
def manager_open_shift(
    s: "Session",
    manager: User,
    *,
    cashier_id: int | None,
    opening_float,
    device_id: str | None = None,
) -> tuple[CashierShift, bool]:
    """Returns (shift, created). An existing active shift is handed back untouched."""
    cashier = s.get(User, cashier_id) if cashier_id else None
    if cashier is None or not user_has_role(cashier, CASHIER):
        raise ActionError("Select an active cashier.")
    amount = to_decimal(opening_float, default=None)
    if amount is None or amount < 0:
        raise ActionError("Opening float must be a valid number (>= 0).")
    branch = s.query(Branch).order_by(Branch.id.asc()).first()
    if branch is None:
        raise ActionError("No branch configured.")

    existing = active_shift_for(s, cashier.id)
    if existing is not None:
        return existing, False

    # uq_cashier_shifts_active_cashier catches a concurrent open that passed the lookup above.
    try:
        with s.begin_nested():
            shift = CashierShift(
                cashier_id=cashier.id,
                branch_id=branch.id,
                status=SHIFT_PENDING_ACCEPT,
                opening_float=r2(amount),
                opened_by_id=manager.id,
                opened_at=datetime.utcnow(),
                device_id=(device_id or "").strip() or None,
            )
            s.add(shift)
            s.flush()
    except IntegrityError:
        raise ConflictError("Cashier already has an active shift. Refresh the page.")
    record_event(
        s,
        actor=manager,
        action="shift.open",
        entity_type="CashierShift",
        entity_id=shift.id,
        metadata={"cashier_id": cashier.id, "opening_float": shift.opening_float},
    )
    return shift, True


def manager_resend_opening(s: "Session", manager: User, shift: CashierShift, *, opening_float=None) -> CashierShift:
    if shift.closed_at is not None:
        return shift
    if shift.status not in (SHIFT_OPENING_DISPUTED, SHIFT_PENDING_ACCEPT):
        raise ActionError(f"Cannot resend in status {shift.status}.")
    if opening_float not in (None, ""):
        amount = to_decimal(opening_float, default=None)
        if amount is None or amount < 0:
            raise ActionError("Opening float must be a valid number (>= 0).")
        shift.opening_float = r2(amount)
    shift.status = SHIFT_PENDING_ACCEPT
    shift.opening_counted = None
    shift.opening_verified_at = None
    shift.opening_verified_by_id = None
    shift.opening_dispute_note = None
    record_event(
        s,
        actor=manager,
        action="shift.resend",
        entity_type="CashierShift",
        entity_id=shift.id,
        metadata={"opening_float": shift.opening_float},
    )
    return shift


def manager_request_recount(s: "Session", manager: User, shift: CashierShift, *, note: str | None = None) -> CashierShift:
    """Send a SUBMITTED count back to the cashier. The drawer stays locked until they submit again."""
    note = (note or "").strip()
    if not note:
        raise ActionError("Tell the cashier what to recount.")
    if shift.status != SHIFT_SUBMITTED:
        raise ActionError("Only a submitted count can be sent back for recount.")
    line = f"[RECOUNT_REQUESTED] cashier={r2(shift.closing_total):.2f} | note={note}"
    existing_notes = (shift.notes or "").strip()
    shift.notes = f"{existing_notes}\n{line}" if existing_notes else line
    shift.status = SHIFT_RECOUNT_REQUIRED
    record_event(
        s,
        actor=manager,
        action="shift.recount_requested",
        entity_type="CashierShift",
        entity_id=shift.id,
        reason=note,
        metadata={"closing_total": shift.closing_total},
    )
    return shift


def manager_close_shift(
    s: "Session",
    manager: User,
    shift: CashierShift,
    *,
    manager_counted,
    resolution: str | None = None,
    paper_ref: str | None = None,
    note: str | None = None,
) -> CashierShift:
    """Recount and final-close a SUBMITTED shift. Already closed shifts are left as they are."""
    counted = to_decimal(manager_counted, default=None)
    if counted is None or counted < 0:
        raise ActionError("Manager recount total is required (>= 0).")
    resolution = (resolution or "").strip().upper() or None
    if resolution and resolution not in RESOLUTIONS:
        raise ActionError("Invalid manager decision selected.")
    paper_ref = (paper_ref or "").strip() or None
    note = (note or "").strip() or None

    if shift.closed_at is not None or shift.status == SHIFT_FINAL_CLOSED:
        return shift
    if shift.status != SHIFT_SUBMITTED:
        raise ActionError("Cannot close: cashier has not submitted counted cash yet.")
    if shift.closing_total is None:
        raise ActionError("Cannot close: cashier submitted status but counted cash is missing.")

    now = datetime.utcnow()
    expected = expected_drawer(s, shift)
    counted = r2(counted)
    cashier_counted = r2(shift.closing_total)
    variance = r2(counted - expected)
    has_mismatch = abs(variance) >= DRAWER_EPS
    is_short = variance < -DRAWER_EPS
    if has_mismatch and not is_short and not resolution:
        resolution = RESOLUTION_INFO_ONLY

    if is_short and not resolution:
        raise ActionError("Manager decision is required before closing a short drawer.")
    if is_short and not paper_ref:
        raise ActionError("Paper reference number is required when drawer is short.")
    if resolution == RESOLUTION_CHARGE_CASHIER and not is_short:
        raise ActionError("CHARGE_CASHIER is only allowed for shortage variances.")

    audit_line = " | ".join(
        part
        for part in (
            "[MANAGER_RECOUNT]",
            f"expected={expected:.2f}",
            f"cashier={cashier_counted:.2f}",
            f"manager={counted:.2f}",
            f"variance={variance:.2f}",
            f"decision={resolution}" if resolution else None,
            f"paperRef={paper_ref}" if paper_ref else None,
            f"note={note}" if note else None,
        )
        if part
    )
    existing_notes = (shift.notes or "").strip()
    shift.notes = f"{existing_notes}\n{audit_line}" if existing_notes else audit_line

    if has_mismatch:
        if resolution == RESOLUTION_WAIVE:
            status = VARIANCE_WAIVED
        elif resolution == RESOLUTION_CHARGE_CASHIER:
            status = VARIANCE_MANAGER_APPROVED
        else:
            status = VARIANCE_OPEN
        row = s.query(CashierShiftVariance).filter(CashierShiftVariance.shift_id == shift.id).one_or_none()
        if row is None:
            row = CashierShiftVariance(shift_id=shift.id)
            s.add(row)
        row.expected = expected
        row.counted = counted
        row.variance = variance
        row.status = status
        row.resolution = resolution
        row.paper_ref_no = paper_ref
        row.note = audit_line
        row.manager_approved_at = now if resolution else None
        row.manager_approved_by_id = manager.id if resolution else None
        row.resolved_at = now if resolution == RESOLUTION_WAIVE else None
        s.flush()

        if resolution == RESOLUTION_CHARGE_CASHIER:
            charge_note = " | ".join(
                part
                for part in (
                    CASHIER_CHARGE_TAG,
                    f"shift#{shift.id}",
                    f"expected={expected:.2f}",
                    f"managerCounted={counted:.2f}",
                    f"paperRef={paper_ref}" if paper_ref else None,
                    note,
                )
                if part
            )
            charge = s.query(CashierCharge).filter(CashierCharge.variance_id == row.id).one_or_none()
            if charge is None:
                charge = CashierCharge(variance_id=row.id, created_by_id=manager.id)
                s.add(charge)
            charge.shift_id = shift.id
            charge.cashier_id = shift.cashier_id
            charge.amount = r2(abs(variance))
            charge.status = CHARGE_OPEN
            charge.note = charge_note

    shift.status = SHIFT_FINAL_CLOSED
    shift.closed_at = now
    shift.final_closed_by_id = manager.id
    record_event(
        s,
        actor=manager,
        action="shift.close",
        entity_type="CashierShift",
        entity_id=shift.id,
        metadata={
            "expected": expected,
            "cashier_counted": cashier_counted,
            "manager_counted": counted,
            "variance": variance,
            "resolution": resolution,
            "paper_ref": paper_ref,
        },
    )
    logger.info("shift %s final-closed (variance=%s, resolution=%s)", shift.id, variance, resolution)
    return shift


# ---------- Cashier side ----------
def cashier_resume_shift(s: "Session", user: User) -> CashierShift:
    shift = active_shift_for(s, user.id)
    if shift is None:
        raise ForbiddenError("Shift must be opened by manager.")
    return shift


def _own_shift(shift: CashierShift | None, user: User) -> CashierShift:
    if shift is None:
        raise ForbiddenError("Shift must be opened by manager.")
    if shift.cashier_id != user.id:
        raise ForbiddenError("You cannot act on another cashier's shift.")
    return shift


def respond_to_opening(
    s: "Session",
    user: User,
    shift: CashierShift,
    *,
    accept: bool,
    counted,
    note: str | None = None,
) -> CashierShift:
    """Cashier verifies the opening float. Outside PENDING_ACCEPT this does nothing."""
    _own_shift(shift, user)
    amount = to_decimal(counted, default=None)
    if amount is None or amount < 0:
        raise ActionError("Opening counted must be a valid number (>= 0).")
    note = (note or "").strip() or None
    if not accept and not note:
        raise ActionError("Dispute note is required.")
    if shift.status != SHIFT_PENDING_ACCEPT:
        return shift

    shift.opening_counted = r2(amount)
    shift.opening_verified_at = datetime.utcnow()
    shift.opening_verified_by_id = user.id
    shift.opening_dispute_note = None if accept else note
    shift.status = SHIFT_OPEN if accept else SHIFT_OPENING_DISPUTED
    record_event(
        s,
        actor=user,
        action="shift.opening_accept" if accept else "shift.opening_dispute",
        entity_type="CashierShift",
        entity_id=shift.id,
        reason=note,
        metadata={"opening_float": shift.opening_float, "counted": shift.opening_counted},
    )
    return shift


def post_drawer_txn(
    s: "Session",
    user: User,
    shift: CashierShift,
    *,
    withdraw: bool,
    amount,
    note: str | None = None,
) -> CashDrawerTxn:
    """
    Deposit (CASH_IN) or withdrawal (CASH_OUT) on the cashier's own OPEN shift.
    Callers run this at SERIALIZABLE so the overdraw check sees every concurrent posting.
    """
    _own_shift(shift, user)
    if shift.status != SHIFT_OPEN:
        raise ActionError("Drawer is locked: counted cash already submitted. Manager must close/audit the shift.")
    value = to_decimal(amount, default=None)
    if value is None or value <= 0:
        raise ActionError("Enter a valid amount > 0")
    value = r2(value)
    if withdraw:
        expected = expected_drawer(s, shift)
        if value > expected + DRAWER_EPS:
            raise ActionError(
                f"Withdraw exceeds expected drawer cash ({expected:.2f}). "
                "Fix missing payment or use Deposit for legit top-up. Over/short is handled at shift close."
            )
    txn = CashDrawerTxn(
        shift_id=shift.id,
        type=TXN_CASH_OUT if withdraw else TXN_CASH_IN,
        amount=value,
        note=(note or "").strip() or None,
        created_by_id=user.id,
    )
    s.add(txn)
    s.flush()
    record_event(
        s,
        actor=user,
        action="drawer.withdraw" if withdraw else "drawer.deposit",
        entity_type="CashierShift",
        entity_id=shift.id,
        metadata={"amount": value, "note": txn.note},
    )
    return txn


def cashier_submit_count(
    s: "Session",
    user: User,
    shift: CashierShift,
    *,
    counted=None,
    denominations: dict | None = None,
    notes: str | None = None,
) -> CashierShift:
    """Cashier hands in the drawer count. Denominations, when given, decide the total."""
    _own_shift(shift, user)
    closing_denoms = None
    if denominations:
        closing_denoms, total = parse_denominations(denominations)
    else:
        total = to_decimal(counted, default=None)
    if total is None or total < 0:
        raise ActionError("Counted cash must be a valid number (>= 0).")
    if shift.status == SHIFT_SUBMITTED:
        raise ActionError("Counted cash already submitted. Wait for the manager to close the shift.")
    if shift.status not in (SHIFT_OPEN, SHIFT_RECOUNT_REQUIRED):
        raise ActionError(f"Cannot submit count while shift is {shift.status}.")

    shift.closing_total = r2(total)
    shift.closing_denoms = closing_denoms
    notes = (notes or "").strip() or None
    if shift.status == SHIFT_RECOUNT_REQUIRED:
        # Keep the manager's recount request on record.
        shift.notes = "\n".join(part for part in ((shift.notes or "").strip(), notes) if part) or None
    else:
        shift.notes = notes
    shift.status = SHIFT_SUBMITTED
    shift.cashier_submitted_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="shift.submit_count",
        entity_type="CashierShift",
        entity_id=shift.id,
        metadata={"closing_total": shift.closing_total},
    )
    return shift


# ---------- Variances & charges ----------
def cashier_note_variance(s: "Session", user: User, variance: CashierShiftVariance, note: str | None) -> CashierShiftVariance:
    if variance.shift.cashier_id != user.id:
        raise ForbiddenError("Not your variance.")
    note = (note or "").strip()
    if not note:
        raise ActionError("Note is required.")
    if variance.charge is not None:
        variance.charge.note = f"{variance.charge.note or ''}\n[CASHIER_NOTE] {note}".strip()
    variance.note = f"{variance.note or ''}\n[CASHIER_NOTE] {note}".strip()
    record_event(s, actor=user, action="cashier_variance.note", entity_type="CashierShiftVariance", entity_id=variance.id, reason=note)
    return variance


def cashier_ack_variance(s: "Session", user: User, variance: CashierShiftVariance) -> CashierShiftVariance:
    if variance.shift.cashier_id != user.id:
        raise ForbiddenError("Not your variance.")
    if variance.status != VARIANCE_MANAGER_APPROVED:
        raise ActionError("Only manager-approved variances can be acknowledged.")
    variance.status = VARIANCE_CLOSED
    variance.resolved_at = datetime.utcnow()
    record_event(s, actor=user, action="cashier_variance.ack", entity_type="CashierShiftVariance", entity_id=variance.id)
    return variance


def charge_balance(charge: CashierCharge) -> Decimal:
    paid = sum((to_decimal(p.amount) for p in charge.payments), ZERO)
    return max(ZERO, r2(to_decimal(charge.amount) - paid))


def record_charge_payment(
    s: "Session",
    manager: User,
    charge: CashierCharge,
    *,
    amount,
    method: str | None = None,
    ref_no: str | None = None,
) -> CashierChargePayment:
    if charge.status in (CHARGE_SETTLED, CHARGE_WAIVED):
        raise ActionError(f"Charge is already {charge.status.lower()}.")
    value = to_decimal(amount, default=None)
    if value is None or value <= 0:
        raise ActionError("Enter a valid amount > 0")
    value = r2(value)
    balance = charge_balance(charge)
    if value > balance + MONEY_EPS:
        raise ActionError(f"Payment exceeds remaining balance ({balance:.2f}).")
    payment = CashierChargePayment(
        amount=value,
        method=(method or "PAYROLL_DEDUCTION").strip().upper(),
        ref_no=(ref_no or "").strip() or None,
        recorded_by_id=manager.id,
    )
    charge.payments.append(payment)
    if charge_balance(charge) <= MONEY_EPS:
        charge.status = CHARGE_SETTLED
        charge.settled_at = datetime.utcnow()
    else:
        charge.status = CHARGE_PARTIALLY_SETTLED
    s.flush()
    record_event(
        s,
        actor=manager,
        action="cashier_charge.payment",
        entity_type="CashierCharge",
        entity_id=charge.id,
        metadata={"amount": value, "status": charge.status},
    )
    return payment


def waive_charge(s: "Session", manager: User, charge: CashierCharge, *, note: str | None = None) -> CashierCharge:
    if charge.status == CHARGE_SETTLED:
        raise ActionError("Charge is already settled.")
    charge.status = CHARGE_WAIVED
    charge.settled_at = datetime.utcnow()
    if note:
        charge.note = f"{charge.note or ''}\n[WAIVED] {note.strip()}".strip()
    record_event(s, actor=manager, action="cashier_charge.waive", entity_type="CashierCharge", entity_id=charge.id, reason=note)
    return charge
