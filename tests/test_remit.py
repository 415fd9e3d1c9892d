from decimal import Decimal

import pytest

from app.pos.errors import ActionError, ForbiddenError
from app.pos.modules.cashier_shifts.service import drawer_breakdown
from app.pos.modules.dispatch.service import attach_order, create_run, dispatch_run, rider_checkin
from app.pos.modules.orders.service import create_order
from app.pos.modules.remit.models import RiderCharge, RiderRunVariance
from app.pos.modules.remit.service import (
    manager_decide_variance,
    record_rider_charge_payment,
    remit_delivery,
    remit_figures,
    rider_accept_variance,
    rider_charge_balance,
)

TTL = 300


def _check_in(db, users, run, order, cash):
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


@pytest.fixture()
def short_remit(db, users, planned, open_shift):
    """The rider collected the full 2,500 but hands the cashier only 2,400."""
    run, order = planned
    _check_in(db, users, run, order, "2500")
    remit_delivery(db, users["cashier"], order, cash_given="2400", lock_ttl_seconds=TTL)
    db.commit()
    return db.query(RiderRunVariance).one()


def test_remit_figures_after_checkin(db, users, planned):
    run, order = planned
    _check_in(db, users, run, order, "2000")
    f = remit_figures(db, order)
    assert f["frozen"] is True
    assert f["final_total"] == Decimal("2500.00")
    assert f["rider_cash"] == Decimal("2000.00")
    assert f["due"] == Decimal("2000.00")
    assert f["run_id"] == run.id


def test_remit_needs_frozen_totals(db, users, planned, open_shift):
    _, order = planned
    with pytest.raises(ActionError, match="not frozen"):
        remit_delivery(db, users["cashier"], order, cash_given="2500", lock_ttl_seconds=TTL)


def test_remit_needs_open_shift(db, users, planned):
    run, order = planned
    _check_in(db, users, run, order, "2500")
    with pytest.raises(ForbiddenError):
        remit_delivery(db, users["cashier"], order, cash_given="2500", lock_ttl_seconds=TTL)


def test_full_remit_pays_the_order(db, users, planned, open_shift):
    run, order = planned
    _check_in(db, users, run, order, "2500")
    result = remit_delivery(db, users["cashier"], order, cash_given="3000", lock_ttl_seconds=TTL)
    db.commit()

    assert (result.applied, result.change, result.bridged, result.remaining) == (
        Decimal("2500.00"),
        Decimal("500.00"),
        Decimal("0"),
        Decimal("0"),
    )
    assert order.status == "PAID"
    assert order.fulfillment_status == "DELIVERED"
    assert order.receipt_no
    assert result.payment.ref_no == "MAIN-DELIVERY"
    assert drawer_breakdown(db, open_shift)["cash_sales"] == Decimal("2500.00")
    assert db.query(RiderRunVariance).count() == 0

    with pytest.raises(ActionError, match="already settled"):
        remit_delivery(db, users["cashier"], order, cash_given="1", lock_ttl_seconds=TTL)


def test_partial_remit_keeps_balance_on_customer(db, users, planned, open_shift):
    run, order = planned
    _check_in(db, users, run, order, "2000")
    result = remit_delivery(db, users["cashier"], order, cash_given="2000", lock_ttl_seconds=TTL)
    db.commit()
    assert result.bridged == Decimal("0")
    assert result.remaining == Decimal("500.00")
    assert order.status == "PARTIALLY_PAID"
    assert order.is_on_credit is True


def test_partial_remit_needs_a_customer(db, users, rice, rider, open_shift):
    order = create_order(
        db,
        {
            "channel": "DELIVERY",
            "deliver_to": "Sitio Malinis",
            "items": [{"product_id": rice.id, "qty": "2", "unit_price": "1250", "mode": "pack"}],
        },
        users["cashier"],
    )
    run = create_run(db, users["manager"], rider_id=rider.id)
    attach_order(db, users["manager"], run, order)
    _check_in(db, users, run, order, "2000")
    with pytest.raises(ActionError, match="Link a customer"):
        remit_delivery(db, users["cashier"], order, cash_given="2000", lock_ttl_seconds=TTL)


def test_short_handover_is_bridged_onto_the_rider(db, users, rider, planned, short_remit):
    run, order = planned
    v = short_remit
    assert order.status == "PAID"
    bridge = [p for p in order.payments if p.method == "INTERNAL_CREDIT"]
    assert len(bridge) == 1
    assert bridge[0].amount == Decimal("100.00")
    assert bridge[0].ref_no == f"RIDER-SHORTAGE:RR:{v.receipt_id}"

    assert v.rider_id == rider.id
    assert v.run_id == run.id
    assert (v.expected, v.actual, v.variance) == (Decimal("2500.00"), Decimal("2400.00"), Decimal("-100.00"))
    assert v.status == "OPEN"
    assert v.is_shortage


def test_rider_charge_lifecycle(db, users, short_remit):
    manager, rider_user = users["manager"], users["rider"]
    v = short_remit

    with pytest.raises(ActionError, match="not eligible"):
        rider_accept_variance(db, rider_user, v)

    manager_decide_variance(db, manager, v, resolution="charge_rider", note="Payroll, two cutoffs")
    db.commit()
    assert v.status == "MANAGER_APPROVED"
    charge = db.query(RiderCharge).one()
    assert charge.amount == Decimal("100.00")
    assert charge.status == "OPEN"

    with pytest.raises(ForbiddenError):
        rider_accept_variance(db, users["cashier"], v)
    rider_accept_variance(db, rider_user, v)
    assert v.status == "RIDER_ACCEPTED"
    assert "[PLAN:PAYROLL_DEDUCTION]" in charge.note

    record_rider_charge_payment(db, manager, charge, amount="40")
    assert charge.status == "PARTIALLY_SETTLED"
    assert rider_charge_balance(charge) == Decimal("60.00")
    with pytest.raises(ActionError, match="exceeds"):
        record_rider_charge_payment(db, manager, charge, amount="100")
    record_rider_charge_payment(db, manager, charge, amount="60")
    db.commit()
    assert charge.status == "SETTLED"
    assert v.status == "CLOSED"


def test_waived_variance_is_final(db, users, short_remit):
    v = short_remit
    manager_decide_variance(db, users["manager"], v, resolution="WAIVE")
    assert v.status == "WAIVED"
    assert v.resolved_at is not None
    assert db.query(RiderCharge).count() == 0
    with pytest.raises(ActionError, match="not editable"):
        manager_decide_variance(db, users["manager"], v, resolution="CHARGE_RIDER")


def test_waive_after_charge_cancels_the_charge(db, users, short_remit):
    v = short_remit
    manager_decide_variance(db, users["manager"], v, resolution="CHARGE_RIDER")
    manager_decide_variance(db, users["manager"], v, resolution="WAIVE", note="Customer paid the rest")
    db.commit()
    assert db.query(RiderCharge).one().status == "WAIVED"


def test_remit_over_http(client, login, db, users, planned, open_shift):
    run, order = planned
    _check_in(db, users, run, order, "2500")
    token = login("cashier@example.com")

    assert client.get(f"/delivery-remit/{order.id}").status_code == 200
    r = client.post(
        f"/delivery-remit/{order.id}",
        data={"csrf_token": token, "cash_given": "2400"},
        headers={"Accept": "application/json"},
    )
    assert r.status_code == 200
    assert r.json == {
        "ok": True,
        "status": "PAID",
        "applied": 2400.0,
        "change": 0.0,
        "bridged": 100.0,
        "remaining": 0.0,
    }

    client.get("/auth/logout")
    login("manager@example.com")
    r = client.get("/store/rider-variances")
    assert r.status_code == 200
    assert b"Rey Santos" in r.data

    client.get("/auth/logout")
    login("rider@example.com")
    r = client.get("/rider")
    assert r.status_code == 200
