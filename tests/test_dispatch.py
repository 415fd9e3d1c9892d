from decimal import Decimal

import pytest

from app.pos.errors import ActionError, ConflictError
from app.pos.modules.clearance.service import send_clearance
from app.pos.modules.catalog.models import StockMovement
from app.pos.modules.dispatch.models import OverrideLog
from app.pos.modules.dispatch.service import (
    CAPACITY_ERROR,
    attach_order,
    create_run,
    detach_order,
    dispatch_run,
    post_remit,
    revert_to_dispatched,
    revert_to_planned,
    rider_checkin,
    run_load_kg,
    run_recap,
    save_loadout,
)
from app.pos.modules.fleet.service import save_employee
from app.pos.modules.orders.models import Order
from app.pos.modules.orders.service import create_order, settle_payment


def test_create_run_needs_an_active_rider(db, users):
    staff = save_employee(db, {"first_name": "Ana", "role": "STAFF"}, users["admin"])
    with pytest.raises(ActionError, match="active rider"):
        create_run(db, users["manager"], rider_id=staff.id)
    with pytest.raises(ActionError, match="active rider"):
        create_run(db, users["manager"], rider_id=None)


def test_new_run_uses_rider_default_vehicle(db, users, rider):
    run = create_run(db, users["manager"], rider_id=rider.id)
    assert run.status == "PLANNED"
    assert run.run_code.startswith("RN-")
    assert run.vehicle_id == rider.default_vehicle_id


def test_only_open_delivery_orders_attach(db, users, rice, rider, planned):
    run, order = planned
    pickup = create_order(
        db,
        {"channel": "PICKUP", "items": [{"product_id": rice.id, "qty": "1", "unit_price": "1250", "mode": "pack"}]},
        users["cashier"],
    )
    with pytest.raises(ActionError, match="Only delivery orders"):
        attach_order(db, users["manager"], run, pickup)

    other = create_run(db, users["manager"], rider_id=rider.id)
    with pytest.raises(ConflictError):
        attach_order(db, users["manager"], other, order)
    # Attaching twice to the same run is a no-op.
    attach_order(db, users["manager"], run, order)
    assert len(run.run_orders) == 1
    assert order.fulfillment_status == "STAGED"


def test_detach_order(db, users, planned):
    run, order = planned
    detach_order(db, users["manager"], run, order.id)
    db.commit()
    assert run.run_orders == []
    assert order.fulfillment_status == "NEW"


def test_loadout_is_merged_by_product(db, users, rice, feeds, planned):
    run, _ = planned
    save_loadout(
        db,
        users["manager"],
        run,
        [
            {"product_id": rice.id, "qty": "1"},
            {"product_id": feeds.id, "qty": "2"},
            {"product_id": rice.id, "qty": "2"},
            {"product_id": "", "qty": "0"},
        ],
    )
    assert run.loadout_snapshot == [
        {"product_id": rice.id, "name": "Rice 25kg", "qty": "3.00"},
        {"product_id": feeds.id, "name": "Hog Feeds 50kg", "qty": "2.00"},
    ]
    # 2 ordered + 3 extra rice sacks at 25 kg, 2 feed sacks at 50 kg.
    assert run_load_kg(db, run, run.loadout_snapshot) == Decimal("225")

    with pytest.raises(ActionError, match="no product"):
        save_loadout(db, users["manager"], run, [{"product_id": "", "qty": "1"}])


def test_empty_run_cannot_dispatch(db, users, rider):
    run = create_run(db, users["manager"], rider_id=rider.id)
    with pytest.raises(ActionError, match="Nothing to dispatch"):
        dispatch_run(db, users["manager"], run)


def test_capacity_needs_override(db, users, feeds, planned):
    run, _ = planned
    # 2 x 25 kg ordered + 10 x 50 kg extra = 550 kg on a 500 kg trike.
    rows = [{"product_id": feeds.id, "qty": "10"}]
    with pytest.raises(ActionError) as exc:
        dispatch_run(db, users["manager"], run, loadout_rows=rows)
    assert exc.value.message == CAPACITY_ERROR

    dispatch_run(db, users["manager"], run, loadout_rows=rows, capacity_override_by="Mgr. Lopez")
    db.commit()
    log = db.query(OverrideLog).filter(OverrideLog.run_id == run.id).one()
    assert log.kind == "CAPACITY_EXCEED"
    assert log.approved_by == "Mgr. Lopez"
    assert feeds.stock == Decimal("0")


def test_dispatch_is_all_or_nothing_on_stock(db, users, rice, feeds, planned):
    run, order = planned
    with pytest.raises(ActionError, match="Insufficient stock for dispatch"):
        dispatch_run(
            db,
            users["manager"],
            run,
            loadout_rows=[{"product_id": feeds.id, "qty": "11"}],
            capacity_override_by="Mgr. Lopez",
        )
    db.rollback()
    assert rice.stock == Decimal("20")
    assert run.status == "PLANNED"


def test_dispatch_takes_stock_and_opens_parent_receipts(db, users, rice, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "3"}])
    db.commit()

    assert run.status == "DISPATCHED"
    assert rice.stock == Decimal("15")
    assert order.fulfillment_status == "DISPATCHED"
    assert order.stock_deducted_at is not None
    [rc] = run.receipts
    assert rc.kind == "PARENT"
    assert rc.receipt_key == f"PARENT:{order.id}"
    assert rc.customer_name == "Maria Cruz"

    with pytest.raises(ActionError, match="locked"):
        save_loadout(db, users["manager"], run, [])


def test_revert_to_planned_puts_stock_back(db, users, rice, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "3"}])
    db.commit()

    revert_to_planned(db, users["manager"], run)
    db.commit()
    assert run.status == "PLANNED"
    assert rice.stock == Decimal("20")
    assert run.receipts == []
    assert order.dispatched_at is None


def test_full_run_with_roadside_sale(db, users, rice, planned):
    run, order = planned
    manager = users["manager"]
    dispatch_run(db, manager, run, loadout_rows=[{"product_id": rice.id, "qty": "3"}])
    db.commit()

    with pytest.raises(ActionError, match="CHECKED_IN"):
        post_remit(db, manager, run)

    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[{"product_id": rice.id, "returned": "2"}],
        sold_rows=[{"product_id": rice.id, "qty": "1", "unit_price": "1250", "cash_amount": "1250", "customer_name": "Walk-in"}],
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    db.commit()
    assert run.status == "CHECKED_IN"

    recap = run_recap(db, run)
    [row] = recap["rows"]
    assert (row["loaded"], row["sold"], row["returned"], row["diff"]) == (
        Decimal("5"),
        Decimal("3"),
        Decimal("2"),
        Decimal("0"),
    )
    assert recap["has_issues"] is False

    # Parent prices are frozen onto the order at check-in.
    assert order.items[0].line_total == Decimal("2500.00")
    parent = next(rc for rc in run.receipts if rc.kind == "PARENT")
    assert parent.cash_collected == Decimal("2500.00")
    assert parent.is_on_credit is False

    post_remit(db, manager, run)
    db.commit()
    assert run.status == "CLOSED"
    assert rice.stock == Decimal("17")
    assert order.fulfillment_status == "DELIVERED"

    roadside = db.query(Order).filter(Order.order_code.like(f"RS-RUN{run.id}-RR%")).one()
    assert roadside.subtotal == Decimal("1250.00")
    assert roadside.receipt_no
    assert roadside.is_on_credit is False
    returns = db.query(StockMovement).filter(StockMovement.type == "RETURN_IN", StockMovement.ref_id == run.id).all()
    assert len(returns) == 1

    # A second post is a no-op.
    post_remit(db, manager, run)
    assert db.query(Order).filter(Order.order_code.like("RS-%")).count() == 1


def test_recap_mismatch_blocks_remit(db, users, rice, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "3"}])
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[{"product_id": rice.id, "returned": "1"}],
        sold_rows=[],
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    db.commit()

    recap = run_recap(db, run)
    assert recap["has_issues"] is True
    with pytest.raises(ActionError, match="Stock recap mismatch"):
        post_remit(db, users["manager"], run)

    revert_to_dispatched(db, users["manager"], run)
    assert run.status == "DISPATCHED"


def test_short_roadside_cash_becomes_credit(db, users, rice, customer, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "1"}])
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[],
        sold_rows=[{"product_id": rice.id, "qty": "1", "unit_price": "1250", "cash_amount": "500"}],
        parent_payments=[{"order_id": order.id, "cash_collected": "2000"}],
    )
    db.commit()

    road = next(rc for rc in run.receipts if rc.kind == "ROAD")
    parent = next(rc for rc in run.receipts if rc.kind == "PARENT")
    # 500 < 80% of 1,250 and 2,000 < 90% of 2,500.
    assert road.is_on_credit is True
    assert parent.is_on_credit is True

    with pytest.raises(ActionError, match="requires a customer"):
        post_remit(db, users["manager"], run)


def test_prepaid_delivery_goes_out_without_a_second_deduction(db, users, rice, customer, rider, open_shift):
    manager = users["manager"]
    order = create_order(
        db,
        {
            "channel": "DELIVERY",
            "deliver_to": "Purok 3, Brgy. San Isidro",
            "customer_id": customer.id,
            "items": [{"product_id": rice.id, "qty": "2", "unit_price": "1250", "mode": "pack"}],
        },
        users["cashier"],
    )
    settle_payment(db, order, users["cashier"], cash_given="2500")
    db.commit()
    assert rice.stock == Decimal("18")

    run = create_run(db, manager, rider_id=rider.id)
    attach_order(db, manager, run, order)
    dispatch_run(db, manager, run)
    db.commit()
    assert rice.stock == Decimal("18")
    assert run.dispatch_snapshot["deducted_order_ids"] == []

    # Reverting must not hand back stock the counter sale already took.
    revert_to_planned(db, manager, run)
    db.commit()
    assert rice.stock == Decimal("18")
    assert order.stock_deducted_at is not None
    dispatch_run(db, manager, run)
    db.commit()

    rider_checkin(db, users["rider"], run, stock_rows=[], sold_rows=[], parent_payments=[])
    db.commit()
    parent = next(rc for rc in run.receipts if rc.kind == "PARENT")
    assert parent.cash_collected == Decimal("0")
    assert parent.is_on_credit is False
    assert run_recap(db, run)["has_issues"] is False

    post_remit(db, manager, run)
    db.commit()
    assert order.fulfillment_status == "DELIVERED"
    assert rice.stock == Decimal("18")


def test_recheckin_keeps_roadside_receipt_under_clearance(db, users, rice, customer, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "3"}])
    sold = [
        {"product_id": rice.id, "qty": "1", "unit_price": "1250", "cash_amount": "500", "customer_id": customer.id},
    ]
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[{"product_id": rice.id, "returned": "2"}],
        sold_rows=sold,
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    db.commit()
    road = next(rc for rc in run.receipts if rc.kind == "ROAD")
    assert road.receipt_key == "ROAD:1"
    send_clearance(db, users["rider"], road, claim_type="OPEN_BALANCE", message="Pays on Friday")
    db.commit()

    revert_to_dispatched(db, users["manager"], run)
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[{"product_id": rice.id, "returned": "2"}],
        sold_rows=sold,
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    db.commit()
    roads = [rc for rc in run.receipts if rc.kind == "ROAD"]
    assert [rc.receipt_key for rc in roads] == ["ROAD:1"]
    assert roads[0].id == road.id
    assert run.checkin_snapshot["soldRows"][0]["key"] == "ROAD:1"
    recap = run_recap(db, run)
    assert recap["has_issues"] is False
    assert recap["rows"][0]["sold"] == Decimal("3")

    # Naming the receipt does not let the rider rewrite it here.
    revert_to_dispatched(db, users["manager"], run)
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[{"product_id": rice.id, "returned": "1"}],
        sold_rows=[dict(sold[0], key="ROAD:1", qty="2")],
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    db.commit()
    assert road.lines[0].qty == Decimal("1")
    revert_to_dispatched(db, users["manager"], run)
    with pytest.raises(ActionError, match="listed twice"):
        rider_checkin(
            db,
            users["rider"],
            run,
            stock_rows=[],
            sold_rows=[dict(sold[0], key="ROAD:1"), dict(sold[0], key="ROAD:1")],
            parent_payments=[],
        )


def test_zero_capacity_vehicle_still_limits_load(db, users, planned):
    run, _ = planned
    run.vehicle.capacity_units = Decimal("0")
    db.commit()
    with pytest.raises(ActionError) as exc:
        dispatch_run(db, users["manager"], run)
    assert exc.value.message == CAPACITY_ERROR


def test_checkin_below_allowed_price_needs_named_approver(db, users, rice, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run)
    rice.srp = Decimal("1300")
    db.commit()
    args = dict(stock_rows=[], sold_rows=[], parent_payments=[{"order_id": order.id, "cash_collected": "2500"}])

    with pytest.raises(ActionError, match="Manager approval required"):
        rider_checkin(db, users["rider"], run, **args)
    db.rollback()

    rider_checkin(db, users["rider"], run, price_override_by="Mgr. Lopez", **args)
    db.commit()
    log = db.query(OverrideLog).filter(OverrideLog.order_id == order.id).one()
    assert log.kind == "PRICE_BELOW_ALLOWED"
    assert log.approved_by == "Mgr. Lopez"
    assert order.items[0].line_total == Decimal("2500.00")


def test_checkin_page_prefills_sales_and_locks_flagged_rows(client, login, db, users, rice, customer, planned):
    run, order = planned
    dispatch_run(db, users["manager"], run, loadout_rows=[{"product_id": rice.id, "qty": "1"}])
    rider_checkin(
        db,
        users["rider"],
        run,
        stock_rows=[],
        sold_rows=[{"product_id": rice.id, "qty": "1", "unit_price": "1250", "cash_amount": "0", "customer_id": customer.id}],
        parent_payments=[{"order_id": order.id, "cash_collected": "2500"}],
    )
    road = next(rc for rc in run.receipts if rc.kind == "ROAD")
    send_clearance(db, users["rider"], road, claim_type="OPEN_BALANCE", message="Pays on Friday")
    revert_to_dispatched(db, users["manager"], run)
    db.commit()

    login("manager@example.com")
    r = client.get(f"/runs/{run.id}/checkin")
    assert r.status_code == 200
    assert b'data-key="ROAD:1"' in r.data
    assert b"under clearance" in r.data
