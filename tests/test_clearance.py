from decimal import Decimal

import pytest

from app.pos.errors import ActionError, ConflictError, ForbiddenError
from app.pos.modules.cashier_shifts.service import drawer_breakdown
from app.pos.modules.clearance.models import CustomerAr
from app.pos.modules.clearance.service import (
    decide_case,
    mark_voided,
    record_ar_payment,
    send_clearance,
)
from app.pos.modules.dispatch.service import dispatch_run, post_remit, rider_checkin


def _checked_in(db, users, planned, cash):
    """Dispatch the planned run and check it in with `cash` collected for the order."""
    run, order = planned
    dispatch_run(db, users["manager"], run)
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[],
        sold_rows=[],
        parent_payments=[{"order_id": order.id, "cash_collected": cash}],
    )
    db.commit()
    return next(rc for rc in run.receipts if rc.kind == "PARENT")


def _send(db, users, receipt, claim_type="OPEN_BALANCE"):
    case = send_clearance(db, users["rider"], receipt, claim_type=claim_type, message="Customer short, pays on Friday")
    db.commit()
    return case


def test_send_clearance(db, users, customer, planned):
    receipt = _checked_in(db, users, planned, "2000")
    with pytest.raises(ActionError, match="Message is required"):
        send_clearance(db, users["rider"], receipt, claim_type="OPEN_BALANCE", message=" ")
    with pytest.raises(ActionError, match="Invalid claim type"):
        send_clearance(db, users["rider"], receipt, claim_type="IOU", message="x")

    case = send_clearance(db, users["rider"], receipt, claim_type="open_balance", message="Customer short, pays on Friday")
    db.commit()
    assert case.status == "NEEDS_CLEARANCE"
    assert case.receipt_key == receipt.receipt_key
    assert case.customer_id == customer.id
    assert case.frozen_total == Decimal("2500.00")
    assert case.cash_collected == Decimal("2000.00")
    assert [c.type for c in case.claims] == ["OPEN_BALANCE"]

    with pytest.raises(ConflictError):
        send_clearance(db, users["rider"], receipt, claim_type="OTHER", message="again")


def test_fully_paid_receipt_has_nothing_to_clear(db, users, planned):
    receipt = _checked_in(db, users, planned, "2500")
    with pytest.raises(ActionError, match="no remaining balance"):
        _send(db, users, receipt)


def test_pending_case_blocks_remit(db, users, planned):
    run, _ = planned
    receipt = _checked_in(db, users, planned, "2000")
    _send(db, users, receipt)
    with pytest.raises(ActionError, match="pending clearance"):
        post_remit(db, users["manager"], run)


def test_hybrid_decision_opens_customer_ar(db, users, customer, planned, open_shift):
    run, order = planned
    manager = users["manager"]
    case = _send(db, users, _checked_in(db, users, planned, "2000"))

    with pytest.raises(ActionError, match="cannot exceed"):
        decide_case(db, manager, case, decision="APPROVE", approved_discount="600", note="Too much")
    with pytest.raises(ActionError, match="note is required"):
        decide_case(db, manager, case, decision="APPROVE", approved_discount="200", note="")

    d = decide_case(db, manager, case, decision="approve", approved_discount="200", note="Loyal customer")
    db.commit()
    assert d.kind == "APPROVE_HYBRID"
    assert d.override_discount_approved == Decimal("200.00")
    assert d.ar_balance == Decimal("300.00")
    assert case.status == "DECIDED"

    ar = db.query(CustomerAr).one()
    assert (ar.customer_id, ar.order_id, ar.run_id) == (customer.id, order.id, run.id)
    assert ar.principal == Decimal("300.00")
    assert ar.status == "OPEN"

    with pytest.raises(ActionError, match="no longer pending"):
        decide_case(db, manager, case, decision="REJECT", note="Changed my mind")

    # Decided cases no longer hold up the run.
    post_remit(db, manager, run)
    db.commit()
    assert run.status == "CLOSED"

    applied, change = record_ar_payment(db, users["cashier"], customer, amount="500", ref_no="OR-1187")
    db.commit()
    assert (applied, change) == (Decimal("300.00"), Decimal("200.00"))
    assert ar.balance == Decimal("0.00")
    assert ar.status == "SETTLED"
    assert drawer_breakdown(db, open_shift)["ar_cash"] == Decimal("300.00")


def test_discount_covering_the_balance_needs_no_ar(db, users, planned):
    case = _send(db, users, _checked_in(db, users, planned, "2000"), claim_type="PRICE_BARGAIN")
    d = decide_case(db, users["manager"], case, decision="APPROVE", approved_discount="500", note="Bulk buyer")
    db.commit()
    assert d.kind == "APPROVE_DISCOUNT_OVERRIDE"
    assert d.ar_balance is None
    assert db.query(CustomerAr).count() == 0


def test_zero_discount_is_an_open_balance(db, users, planned):
    case = _send(db, users, _checked_in(db, users, planned, "2000"))
    d = decide_case(db, users["manager"], case, decision="APPROVE", approved_discount="0", note="Collect next week")
    db.commit()
    assert d.kind == "APPROVE_OPEN_BALANCE"
    assert db.query(CustomerAr).one().balance == Decimal("500.00")


def test_rejected_case_can_void_the_receipt(db, users, planned):
    manager = users["manager"]
    receipt = _checked_in(db, users, planned, "2000")
    case = _send(db, users, receipt, claim_type="OTHER")

    with pytest.raises(ActionError, match="Only rejected"):
        mark_voided(db, manager, case, reason="Refused")
    decide_case(db, manager, case, decision="REJECT", note="No approval for this")
    mark_voided(db, manager, case, reason="Customer refused the goods")
    db.commit()
    assert receipt.voided_at is not None
    assert receipt.void_reason == "Customer refused the goods"
    assert receipt.note == "VOIDED: Customer refused the goods"


def test_ar_payment_needs_an_open_shift(db, users, customer):
    with pytest.raises(ForbiddenError):
        record_ar_payment(db, users["cashier"], customer, amount="100")


def test_ar_payment_without_open_entries(db, users, customer, open_shift):
    with pytest.raises(ActionError, match="No open A/R"):
        record_ar_payment(db, users["cashier"], customer, amount="100")
    with pytest.raises(ActionError, match="amount > 0"):
        record_ar_payment(db, users["cashier"], customer, amount="0")


def test_ar_ledger_page(client, login, customer):
    login("cashier@example.com")
    r = client.get(f"/ar/customers/{customer.id}")
    assert r.status_code == 200
    assert b"Maria Cruz" in r.data
