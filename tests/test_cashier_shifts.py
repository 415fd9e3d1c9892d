from decimal import Decimal

import pytest

from app.pos.errors import ActionError, ConflictError, ForbiddenError
from app.pos.modules.cashier_shifts import service as shift_service
from app.pos.modules.cashier_shifts.models import CashDrawerTxn, CashierCharge, CashierShift, CashierShiftVariance
from app.pos.modules.cashier_shifts.service import (
    cashier_ack_variance,
    cashier_submit_count,
    drawer_breakdown,
    manager_close_shift,
    manager_open_shift,
    manager_request_recount,
    manager_resend_opening,
    parse_denominations,
    post_drawer_txn,
    record_charge_payment,
    respond_to_opening,
    waive_charge,
)
from app.pos.modules.orders.service import create_order, settle_payment


def _close_short(db, users, shift, resolution="CHARGE_CASHIER"):
    cashier_submit_count(db, users["cashier"], shift, counted="900")
    manager_close_shift(db, users["manager"], shift, manager_counted="900", resolution=resolution, paper_ref="PR-0142")
    db.commit()


def test_open_dispute_and_resend(db, users):
    manager, cashier = users["manager"], users["cashier"]
    with pytest.raises(ActionError, match="active cashier"):
        manager_open_shift(db, manager, cashier_id=users["rider"].id, opening_float="1000")

    shift, created = manager_open_shift(db, manager, cashier_id=cashier.id, opening_float="1000")
    assert created is True
    assert shift.status == "PENDING_ACCEPT"
    again, created = manager_open_shift(db, manager, cashier_id=cashier.id, opening_float="500")
    assert again.id == shift.id
    assert created is False

    with pytest.raises(ActionError, match="Dispute note"):
        respond_to_opening(db, cashier, shift, accept=False, counted="900")
    respond_to_opening(db, cashier, shift, accept=False, counted="900", note="Short one 100 bill")
    assert shift.status == "OPENING_DISPUTED"
    assert shift.opening_dispute_note == "Short one 100 bill"

    manager_resend_opening(db, manager, shift, opening_float="900")
    assert shift.status == "PENDING_ACCEPT"
    assert shift.opening_float == Decimal("900.00")
    respond_to_opening(db, cashier, shift, accept=True, counted="900")
    assert shift.status == "OPEN"


def test_only_the_shift_owner_may_respond(db, users):
    shift, _ = manager_open_shift(db, users["manager"], cashier_id=users["cashier"].id, opening_float="1000")
    with pytest.raises(ForbiddenError):
        respond_to_opening(db, users["admin"], shift, accept=True, counted="1000")


def test_drawer_breakdown(db, users, rice, open_shift):
    cashier = users["cashier"]
    order = create_order(
        db,
        {"channel": "PICKUP", "items": [{"product_id": rice.id, "qty": "1", "unit_price": "1250", "mode": "pack"}]},
        cashier,
    )
    settle_payment(db, order, cashier, cash_given="1300")
    post_drawer_txn(db, cashier, open_shift, withdraw=False, amount="200", note="Change fund")
    post_drawer_txn(db, cashier, open_shift, withdraw=True, amount="300", note="Ice and water")
    db.commit()

    assert drawer_breakdown(db, open_shift) == {
        "opening_float": Decimal("1000.00"),
        "cash_sales": Decimal("1250.00"),
        "ar_cash": Decimal("0.00"),
        "deposits": Decimal("200.00"),
        "withdrawals": Decimal("300.00"),
        "expected": Decimal("2150.00"),
    }

    with pytest.raises(ActionError, match="Withdraw exceeds"):
        post_drawer_txn(db, cashier, open_shift, withdraw=True, amount="2200")
    with pytest.raises(ActionError, match="valid amount"):
        post_drawer_txn(db, cashier, open_shift, withdraw=False, amount="0")


def test_submit_count_locks_the_drawer(db, users, open_shift):
    cashier = users["cashier"]
    cashier_submit_count(db, cashier, open_shift, denominations={"500": 1, "100": 3, "50": 1}, notes="End of day")
    assert open_shift.status == "SUBMITTED"
    assert open_shift.closing_total == Decimal("850.00")
    assert open_shift.closing_denoms["bills"]["500"] == 1
    assert open_shift.closing_denoms["coins"]["25"] == 0

    with pytest.raises(ActionError, match="already submitted"):
        cashier_submit_count(db, cashier, open_shift, counted="850")
    with pytest.raises(ActionError, match="Drawer is locked"):
        post_drawer_txn(db, cashier, open_shift, withdraw=False, amount="100")


def test_parse_denominations_floors_bad_counts():
    counts, total = parse_denominations({"d_1000": "2", "d_25": "4", "500": "-3", "100": "x"})
    assert total == Decimal("2001.00")
    assert counts["bills"]["1000"] == 2
    assert counts["bills"]["500"] == 0
    assert counts["coins"]["25"] == 4


def test_close_before_submit_is_rejected(db, users, open_shift):
    with pytest.raises(ActionError, match="has not submitted"):
        manager_close_shift(db, users["manager"], open_shift, manager_counted="1000")


def test_short_drawer_needs_decision_and_paper_ref(db, users, open_shift):
    manager = users["manager"]
    cashier_submit_count(db, users["cashier"], open_shift, counted="900")

    with pytest.raises(ActionError, match="Manager decision is required"):
        manager_close_shift(db, manager, open_shift, manager_counted="900")
    with pytest.raises(ActionError, match="Paper reference"):
        manager_close_shift(db, manager, open_shift, manager_counted="900", resolution="CHARGE_CASHIER")

    manager_close_shift(
        db,
        manager,
        open_shift,
        manager_counted="900",
        resolution="charge_cashier",
        paper_ref="PR-0142",
        note="Counted twice",
    )
    db.commit()
    assert open_shift.status == "FINAL_CLOSED"
    assert open_shift.closed_at is not None
    assert "[MANAGER_RECOUNT]" in open_shift.notes

    variance = db.query(CashierShiftVariance).one()
    assert variance.expected == Decimal("1000.00")
    assert variance.variance == Decimal("-100.00")
    assert variance.status == "MANAGER_APPROVED"
    assert variance.paper_ref_no == "PR-0142"
    charge = db.query(CashierCharge).one()
    assert charge.amount == Decimal("100.00")
    assert charge.status == "OPEN"
    assert charge.cashier_id == users["cashier"].id

    # Closing twice leaves the shift alone.
    manager_close_shift(db, manager, open_shift, manager_counted="0")
    assert db.query(CashierShiftVariance).count() == 1


def test_charge_payments_settle_the_charge(db, users, open_shift):
    manager = users["manager"]
    _close_short(db, users, open_shift)
    charge = db.query(CashierCharge).one()

    record_charge_payment(db, manager, charge, amount="40", method="cash")
    assert charge.status == "PARTIALLY_SETTLED"
    with pytest.raises(ActionError, match="exceeds"):
        record_charge_payment(db, manager, charge, amount="100")
    payment = record_charge_payment(db, manager, charge, amount="60", ref_no="PAY-0315")
    db.commit()
    assert payment.method == "PAYROLL_DEDUCTION"
    assert charge.status == "SETTLED"
    assert charge.settled_at is not None


def test_cashier_acknowledges_approved_variance(db, users, open_shift):
    _close_short(db, users, open_shift)
    variance = db.query(CashierShiftVariance).one()

    with pytest.raises(ForbiddenError):
        cashier_ack_variance(db, users["admin"], variance)
    cashier_ack_variance(db, users["cashier"], variance)
    assert variance.status == "CLOSED"
    with pytest.raises(ActionError, match="manager-approved"):
        cashier_ack_variance(db, users["cashier"], variance)


def test_waived_shortage_has_no_charge(db, users, open_shift):
    _close_short(db, users, open_shift, resolution="WAIVE")
    variance = db.query(CashierShiftVariance).one()
    assert variance.status == "WAIVED"
    assert variance.resolved_at is not None
    assert db.query(CashierCharge).count() == 0


def test_waived_charge_takes_no_payments(db, users, open_shift):
    _close_short(db, users, open_shift)
    charge = db.query(CashierCharge).one()
    waive_charge(db, users["manager"], charge, note="First offense")
    assert charge.status == "WAIVED"
    assert "[WAIVED] First offense" in charge.note
    with pytest.raises(ActionError, match="already waived"):
        record_charge_payment(db, users["manager"], charge, amount="10")


def test_over_drawer_is_recorded_for_information(db, users, open_shift):
    manager = users["manager"]
    cashier_submit_count(db, users["cashier"], open_shift, counted="1050")
    with pytest.raises(ActionError, match="only allowed for shortage"):
        manager_close_shift(db, manager, open_shift, manager_counted="1050", resolution="CHARGE_CASHIER")

    manager_close_shift(db, manager, open_shift, manager_counted="1050")
    db.commit()
    variance = db.query(CashierShiftVariance).one()
    assert variance.variance == Decimal("50.00")
    assert variance.resolution == "INFO_ONLY"
    assert variance.status == "OPEN"
    with pytest.raises(ActionError, match="manager-approved"):
        cashier_ack_variance(db, users["cashier"], variance)


def test_balanced_drawer_closes_without_variance(db, users, open_shift):
    cashier_submit_count(db, users["cashier"], open_shift, counted="1000")
    manager_close_shift(db, users["manager"], open_shift, manager_counted="1000")
    db.commit()
    assert open_shift.status == "FINAL_CLOSED"
    assert db.query(CashierShiftVariance).count() == 0


def test_cashier_posts_deposit_from_shift_page(client, login, db, open_shift):
    token = login("cashier@example.com")
    assert client.get("/cashier/shift").status_code == 200

    r = client.post(
        "/cashier/shift",
        data={"csrf_token": token, "intent": "drawer:deposit", "shift_id": str(open_shift.id), "amount": "250"},
    )
    assert r.status_code == 302
    txn = db.query(CashDrawerTxn).one()
    assert txn.type == "CASH_IN"
    assert txn.amount == Decimal("250.00")


def test_manager_shift_board_renders(client, login, open_shift):
    login("manager@example.com")
    r = client.get("/store/cashier-shifts")
    assert r.status_code == 200


def test_concurrent_open_hits_the_active_shift_index(db, users, open_shift, monkeypatch):
    # Simulate a second manager whose lookup ran before the first shift was saved.
    monkeypatch.setattr(shift_service, "active_shift_for", lambda s, cashier_id: None)
    with pytest.raises(ConflictError, match="already has an active shift"):
        manager_open_shift(db, users["manager"], cashier_id=users["cashier"].id, opening_float="500")
    db.rollback()
    assert db.query(CashierShift).count() == 1


def test_new_shift_opens_after_final_close(db, users, open_shift):
    cashier_submit_count(db, users["cashier"], open_shift, counted="1000")
    manager_close_shift(db, users["manager"], open_shift, manager_counted="1000")
    db.commit()

    shift, created = manager_open_shift(db, users["manager"], cashier_id=users["cashier"].id, opening_float="1000")
    db.commit()
    assert created is True
    assert shift.id != open_shift.id
    assert shift.status == "PENDING_ACCEPT"


def test_manager_sends_count_back_for_recount(db, users, open_shift):
    cashier, manager = users["cashier"], users["manager"]
    with pytest.raises(ActionError, match="submitted count"):
        manager_request_recount(db, manager, open_shift, note="Count the coins again")

    cashier_submit_count(db, cashier, open_shift, counted="900", notes="Short?")
    with pytest.raises(ActionError, match="what to recount"):
        manager_request_recount(db, manager, open_shift, note=" ")
    manager_request_recount(db, manager, open_shift, note="Count the coins again")
    db.commit()
    assert open_shift.status == "RECOUNT_REQUIRED"
    with pytest.raises(ActionError, match="Drawer is locked"):
        post_drawer_txn(db, cashier, open_shift, withdraw=False, amount="100")
    with pytest.raises(ActionError, match="has not submitted"):
        manager_close_shift(db, manager, open_shift, manager_counted="1000")

    cashier_submit_count(db, cashier, open_shift, counted="1000", notes="Found 100 in the coin tray")
    db.commit()
    assert open_shift.status == "SUBMITTED"
    assert "[RECOUNT_REQUESTED] cashier=900.00 | note=Count the coins again" in open_shift.notes
    assert open_shift.notes.endswith("Found 100 in the coin tray")

    manager_close_shift(db, manager, open_shift, manager_counted="1000")
    db.commit()
    assert open_shift.status == "FINAL_CLOSED"
    assert db.query(CashierShiftVariance).count() == 0


def test_recount_request_from_the_shift_board(client, login, db, users, open_shift):
    cashier_submit_count(db, users["cashier"], open_shift, counted="900")
    db.commit()
    token = login("manager@example.com")
    r = client.post(
        "/store/cashier-shifts",
        data={"csrf_token": token, "intent": "recount", "shift_id": str(open_shift.id), "note": "Recount the 100s"},
    )
    assert r.status_code == 302
    db.expire_all()
    assert db.get(CashierShift, open_shift.id).status == "RECOUNT_REQUIRED"

    login("cashier@example.com")
    r = client.get("/cashier/shift")
    assert r.status_code == 200
    assert b"Count the drawer again" in r.data
