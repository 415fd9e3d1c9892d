"""
Clearance: what happens when a delivery receipt comes back short.

The rider (or a cashier) flags the receipt; a manager approves the missing amount as
a discount, as customer A/R, or a mix of both, or rejects it. A/R entries are later
paid down at the cashier and that cash counts toward the cashier's drawer.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from app.pos.audit import record_event
from app.pos.errors import ActionError, ConflictError, NotFoundError
from app.pos.modules.clearance.models import (
    AR_OPEN,
    AR_OPEN_STATUSES,
    AR_PARTIALLY_SETTLED,
    AR_SETTLED,
    CASE_DECIDED,
    CASE_NEEDS_CLEARANCE,
    CLAIM_OPEN_BALANCE,
    CLAIM_TYPES,
    DECISION_APPROVE,
    DECISION_REJECT,
    KIND_APPROVE_DISCOUNT_OVERRIDE,
    KIND_APPROVE_HYBRID,
    KIND_APPROVE_OPEN_BALANCE,
    KIND_REJECT,
    ORIGIN_RIDER,
    ClearanceCase,
    ClearanceClaim,
    ClearanceDecision,
    CustomerAr,
    CustomerArPayment,
)
from app.pos.modules.customers.models import Customer
from app.pos.modules.dispatch.models import RECEIPT_PARENT, RunReceipt
from app.pos.money import MONEY_EPS, ZERO, clamp, r2, to_decimal

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User

logger = logging.getLogger(__name__)


def case_key(receipt: RunReceipt) -> str:
    """PARENT receipts reuse their PARENT:<order_id> key; roadside ones are keyed by receipt id."""
    if receipt.kind == RECEIPT_PARENT:
        return receipt.receipt_key
    return f"ROAD:{receipt.id}"


def receipt_figures(receipt: RunReceipt) -> tuple[Decimal, Decimal, Decimal]:
    """(frozen total, paid clamped to [0, total], remaining)."""
    total = r2(receipt.frozen_total)
    paid = r2(clamp(to_decimal(receipt.cash_collected), ZERO, total))
    return total, paid, r2(total - paid)


def pending_case_for(s: "Session", receipt: RunReceipt) -> ClearanceCase | None:
    return s.query(ClearanceCase).filter(ClearanceCase.receipt_key == case_key(receipt)).one_or_none()


# ---------- Send ----------
def send_clearance(
    s: "Session",
    user: "User",
    receipt: RunReceipt,
    *,
    claim_type: str,
    message: str | None,
    customer_id: int | None = None,
    origin: str = ORIGIN_RIDER,
) -> ClearanceCase:
    claim_type = (claim_type or "").strip().upper()
    if claim_type not in CLAIM_TYPES:
        raise ActionError(f"Invalid claim type. Must be one of: {', '.join(CLAIM_TYPES)}")
    message = (message or "").strip()[:500]
    if not message:
        raise ActionError("Message is required.")

    total, paid, remaining = receipt_figures(receipt)
    if remaining <= MONEY_EPS:
        raise ActionError("Receipt has no remaining balance to clear.")

    customer_id = customer_id or receipt.customer_id
    if customer_id and s.get(Customer, customer_id) is None:
        raise ActionError("Customer not found.")
    if claim_type == CLAIM_OPEN_BALANCE and not customer_id:
        raise ActionError("Open balance requires a customer.")

    key = case_key(receipt)
    if s.query(ClearanceCase.id).filter(ClearanceCase.receipt_key == key).first():
        raise ConflictError("Clearance already sent for this receipt.")

    now = datetime.utcnow()
    case = ClearanceCase(
        receipt_key=key,
        status=CASE_NEEDS_CLEARANCE,
        origin=origin,
        customer_id=customer_id,
        order_id=receipt.parent_order_id,
        run_id=receipt.run_id,
        run_receipt_id=receipt.id,
        frozen_total=total,
        cash_collected=paid,
        flagged_by_id=user.id,
        flagged_at=now,
        note=message,
        created_at=now,
        updated_at=now,
    )
    case.claims.append(
        ClearanceClaim(type=claim_type, requested_payable=paid, cash_available=paid, detail=message)
    )
    s.add(case)
    s.flush()
    record_event(
        s,
        actor=user,
        action="clearance.send",
        entity_type="ClearanceCase",
        entity_id=case.id,
        metadata={"receipt_key": key, "claim": claim_type, "total": total, "paid": paid},
    )
    return case


# ---------- Decide ----------
def decide_case(
    s: "Session",
    manager: "User",
    case: ClearanceCase,
    *,
    decision: str,
    approved_discount=None,
    note: str | None,
    due_date: datetime | None = None,
) -> ClearanceDecision:
    decision = (decision or "").strip().upper()
    if decision not in (DECISION_APPROVE, DECISION_REJECT):
        raise ActionError("Invalid decision kind.")
    discount = to_decimal(approved_discount, default=None)
    if decision == DECISION_APPROVE and discount is None:
        raise ActionError("Approved discount is required for approval.")
    note = (note or "").strip()[:500]
    if not note:
        raise ActionError("Decision note is required.")

    if case.status != CASE_NEEDS_CLEARANCE:
        raise ActionError("Case is no longer pending clearance.")
    if case.decisions:
        raise ActionError("Decision already exists for this case.")

    balance = r2(max(ZERO, r2(case.frozen_total) - r2(case.cash_collected)))
    if balance <= MONEY_EPS:
        raise ActionError("No remaining balance to decide.")

    kind = KIND_REJECT
    approved = ZERO
    ar_balance = ZERO
    if decision == DECISION_APPROVE:
        requested = r2(max(ZERO, discount))
        if requested > balance + MONEY_EPS:
            raise ActionError("Approved discount cannot exceed remaining balance.")
        approved = min(balance, requested)
        ar_balance = r2(max(ZERO, balance - approved))
        if approved <= MONEY_EPS:
            kind = KIND_APPROVE_OPEN_BALANCE
        elif ar_balance <= MONEY_EPS:
            kind = KIND_APPROVE_DISCOUNT_OVERRIDE
        else:
            kind = KIND_APPROVE_HYBRID

    if ar_balance > MONEY_EPS and not case.customer_id:
        raise ActionError("Selected decision requires a customer record.")

    d = ClearanceDecision(
        kind=kind,
        override_discount_approved=approved if approved > MONEY_EPS else None,
        approved_payable=r2(case.cash_collected),
        ar_balance=ar_balance if ar_balance > MONEY_EPS else None,
        decided_by_id=manager.id,
        note=note,
    )
    case.decisions.append(d)
    s.flush()

    if ar_balance > MONEY_EPS:
        s.add(
            CustomerAr(
                customer_id=case.customer_id,
                clearance_decision_id=d.id,
                order_id=case.order_id,
                run_id=case.run_id,
                principal=ar_balance,
                balance=ar_balance,
                status=AR_OPEN,
                due_date=due_date,
                note=note,
            )
        )
    case.status = CASE_DECIDED
    case.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=manager,
        action="clearance.decide",
        entity_type="ClearanceCase",
        entity_id=case.id,
        reason=note,
        metadata={"kind": kind, "balance": balance, "discount": approved, "ar": ar_balance},
    )
    logger.info("clearance case %s decided: %s (ar=%s)", case.id, kind, ar_balance)
    return d


def mark_voided(s: "Session", manager: "User", case: ClearanceCase, *, reason: str | None) -> ClearanceCase:
    """Rejected cases can close out the receipt as voided."""
    last = case.last_decision
    if case.status != CASE_DECIDED or last is None or last.kind != KIND_REJECT:
        raise ActionError("Only rejected cases can be marked voided.")
    reason = (reason or "").strip()[:200] or "Rejected clearance"
    receipt = case.run_receipt
    if receipt is None:
        raise NotFoundError("Run receipt not found.")
    now = datetime.utcnow()
    receipt.note = f"VOIDED: {reason}"
    receipt.void_reason = reason
    receipt.voided_at = now
    receipt.voided_by_id = manager.id
    receipt.updated_at = now
    record_event(
        s,
        actor=manager,
        action="clearance.mark_voided",
        entity_type="RunReceipt",
        entity_id=receipt.id,
        reason=reason,
        metadata={"case_id": case.id},
    )
    return case


# ---------- Customer A/R ----------
def open_ar_entries(s: "Session", customer_id: int) -> list[CustomerAr]:
    return (
        s.query(CustomerAr)
        .filter(
            CustomerAr.customer_id == customer_id,
            CustomerAr.balance > 0,
            CustomerAr.status.in_(AR_OPEN_STATUSES),
        )
        .order_by(CustomerAr.created_at.asc(), CustomerAr.id.asc())
        .all()
    )


def record_ar_payment(
    s: "Session",
    user: "User",
    customer: Customer,
    *,
    amount,
    ar_id: int | None = None,
    ref_no: str | None = None,
) -> tuple[Decimal, Decimal]:
    """
    Apply cash to one chosen A/R entry or FIFO across open ones.

    Returns (applied, change). Payments carry the cashier's open shift so the
    drawer expects the cash.
    """
    from app.pos.modules.cashier_shifts.service import require_open_shift

    amount = r2(to_decimal(amount))
    if amount <= 0:
        raise ActionError("Enter amount > 0")
    shift = require_open_shift(s, user)

    if ar_id:
        row = s.query(CustomerAr).filter(CustomerAr.id == ar_id, CustomerAr.customer_id == customer.id).one_or_none()
        if row is None:
            raise ActionError("A/R entry not found for this customer.")
        if r2(row.balance) <= MONEY_EPS:
            raise ActionError("Selected A/R entry is already settled.")
        targets = [row]
    else:
        targets = open_ar_entries(s, customer.id)
        if not targets:
            raise ActionError("No open A/R entries for this customer.")

    remaining = amount
    applied_total = ZERO
    now = datetime.utcnow()
    for row in targets:
        if remaining <= MONEY_EPS:
            break
        due = r2(max(ZERO, to_decimal(row.balance)))
        if due <= MONEY_EPS:
            continue
        apply = min(remaining, due)
        row.payments.append(
            CustomerArPayment(
                amount=apply,
                ref_no=(ref_no or "").strip() or None,
                shift_id=shift.id,
                cashier_id=user.id,
            )
        )
        row.balance = r2(due - apply)
        if row.balance <= MONEY_EPS:
            row.status = AR_SETTLED
            row.settled_at = now
        else:
            row.status = AR_PARTIALLY_SETTLED
        row.updated_at = now
        remaining = r2(remaining - apply)
        applied_total = r2(applied_total + apply)

    if applied_total <= MONEY_EPS:
        raise ActionError("No open A/R entries available for this payment.")

    change = max(ZERO, remaining)
    record_event(
        s,
        actor=user,
        action="ar.payment",
        entity_type="Customer",
        entity_id=customer.id,
        metadata={"applied": applied_total, "change": change, "shift_id": shift.id, "ar_id": ar_id},
    )
    return applied_total, change
