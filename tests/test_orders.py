import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.pos.errors import ActionError, ConflictError, ForbiddenError
from app.pos.modules.catalog.models import StockMovement
from app.pos.modules.customers.service import create_price_rule
from app.pos.modules.orders.models import STATUS_CANCELLED, STATUS_PAID, STATUS_PARTIALLY_PAID, STATUS_VOIDED, Order
from app.pos.modules.orders.service import (
    acquire_lock,
    cancel_order,
    create_order,
    ensure_not_locked_by_other,
    expire_stale_orders,
    order_balance,
    record_credit,
    settle_payment,
    void_order,
)


def _pickup(db, user, product, qty="2", price="1250", mode="pack", **extra):
    payload = {"channel": "PICKUP", "items": [{"product_id": product.id, "qty": qty, "unit_price": price, "mode": mode}]}
    payload.update(extra)
    order = create_order(db, payload, user)
    db.commit()
    return order


def test_create_pickup_order(db, users, rice):
    order = _pickup(db, users["cashier"], rice)
    assert re.fullmatch(r"OS-\d{6}-[A-Z2-9]{6}", order.order_code)
    assert order.status == "UNPAID"
    assert order.subtotal == Decimal("2500.00")
    assert order.items[0].unit_kind == "PACK"
    assert order.expiry_at is not None


def test_retail_quantities_move_in_quarters(db, users, rice):
    order = _pickup(db, users["cashier"], rice, qty="1.5", price="52", mode="retail")
    assert order.subtotal == Decimal("78.00")
    assert order.items[0].unit_kind == "RETAIL"
    with pytest.raises(ActionError, match="steps of 0.25"):
        _pickup(db, users["cashier"], rice, qty="1.3", price="52", mode="retail")


def test_retail_needs_product_opt_in(db, users, feeds):
    with pytest.raises(ActionError, match="retail sale is not allowed"):
        _pickup(db, users["cashier"], feeds, qty="1", price="30", mode="retail")


def test_stale_pack_price_is_rejected(db, users, rice):
    with pytest.raises(ActionError, match="pack price changed"):
        _pickup(db, users["cashier"], rice, price="1100")


def test_pack_quantity_limited_by_stock(db, users, feeds):
    with pytest.raises(ActionError, match="only 10"):
        _pickup(db, users["cashier"], feeds, qty="11", price="1500")


def test_delivery_needs_address(db, users, rice):
    with pytest.raises(ActionError, match="Delivery address"):
        _pickup(db, users["cashier"], rice, channel="DELIVERY")


def test_settle_requires_open_shift(db, users, rice):
    order = _pickup(db, users["cashier"], rice)
    with pytest.raises(ForbiddenError):
        settle_payment(db, order, users["cashier"], cash_given="2500")


def test_full_payment_issues_receipt_and_takes_stock(db, users, rice, open_shift):
    order = _pickup(db, users["cashier"], rice)
    payment = settle_payment(db, order, users["cashier"], cash_given="3000")
    db.commit()

    assert payment.amount == Decimal("2500.00")
    assert payment.change == Decimal("500.00")
    assert payment.shift_id == open_shift.id
    assert order.status == STATUS_PAID
    assert re.fullmatch(r"\d{8}-000001", order.receipt_no)
    assert rice.stock == Decimal("18")
    moves = db.query(StockMovement).filter(StockMovement.ref_id == order.id).all()
    assert [(m.type, m.qty) for m in moves] == [("ADHOC_SALE_OUT", Decimal("2"))]

    second = _pickup(db, users["cashier"], rice, qty="1")
    settle_payment(db, second, users["cashier"], cash_given="1250")
    assert second.receipt_no.endswith("-000002")


def test_balance_needs_a_customer(db, users, rice, customer, open_shift):
    order = _pickup(db, users["cashier"], rice)
    with pytest.raises(ActionError, match="customer"):
        settle_payment(db, order, users["cashier"], cash_given="1000")

    settle_payment(db, order, users["cashier"], cash_given="1000", customer_id=customer.id)
    db.commit()
    assert order.status == STATUS_PARTIALLY_PAID
    assert order.is_on_credit is True
    assert order.customer_id == customer.id
    assert order_balance(db, order) == Decimal("1500.00")
    # Goods stay in the store until paid or released.
    assert rice.stock == Decimal("20")


def test_release_with_balance_needs_approver(db, users, rice, customer, open_shift):
    order = _pickup(db, users["cashier"], rice, customer_id=customer.id)
    with pytest.raises(ActionError, match="Manager name"):
        settle_payment(db, order, users["cashier"], cash_given="1000", release_with_balance=True)

    settle_payment(
        db,
        order,
        users["cashier"],
        cash_given="1000",
        release_with_balance=True,
        release_approved_by="Mgr. Lopez",
    )
    db.commit()
    assert order.released_approved_by == "Mgr. Lopez"
    assert order.stock_deducted_at is not None
    assert rice.stock == Decimal("18")


def test_customer_price_applies_at_settlement(db, users, rice, customer, open_shift):
    create_price_rule(
        db,
        customer,
        {"product_id": rice.id, "unit_kind": "PACK", "mode": "FIXED_PRICE", "value": "1200"},
        users["admin"],
    )
    order = _pickup(db, users["cashier"], rice, customer_id=customer.id)
    settle_payment(db, order, users["cashier"], cash_given="2400")
    db.commit()

    assert order.status == STATUS_PAID
    item = order.items[0]
    assert item.allowed_unit_price == Decimal("1200.00")
    assert item.line_total == Decimal("2400.00")
    assert item.price_policy == "PER_ITEM"


def test_record_credit_without_cash(db, users, rice, customer):
    order = _pickup(db, users["cashier"], rice)
    with pytest.raises(ActionError, match="Customer is required"):
        record_credit(db, order, users["cashier"], customer_id=None)
    with pytest.raises(ActionError, match="Manager name"):
        record_credit(db, order, users["cashier"], customer_id=customer.id, release_now=True)

    record_credit(db, order, users["cashier"], customer_id=customer.id, release_now=True, release_approved_by="Mgr. Lopez")
    db.commit()
    assert order.is_on_credit is True
    assert order.status == "UNPAID"
    assert rice.stock == Decimal("18")


def test_cancel_only_unpaid(db, users, rice, open_shift):
    order = _pickup(db, users["cashier"], rice)
    cancel_order(db, order, users["manager"], reason="Customer left")
    assert order.status == STATUS_CANCELLED

    paid = _pickup(db, users["cashier"], rice, qty="1")
    settle_payment(db, paid, users["cashier"], cash_given="1250")
    with pytest.raises(ActionError):
        cancel_order(db, paid, users["manager"])


def test_void_restores_pickup_stock(db, users, rice, open_shift):
    order = _pickup(db, users["cashier"], rice)
    settle_payment(db, order, users["cashier"], cash_given="2500")
    db.commit()
    assert rice.stock == Decimal("18")

    with pytest.raises(ActionError, match="Reason is required"):
        void_order(db, order, users["manager"], reason="  ")
    void_order(db, order, users["manager"], reason="Wrong item rung up")
    db.commit()
    assert order.status == STATUS_VOIDED
    assert rice.stock == Decimal("20")


def test_order_lock_blocks_second_cashier(db, users, rice):
    order = _pickup(db, users["cashier"], rice)
    assert acquire_lock(db, order, users["cashier"], ttl_seconds=300) is True
    assert acquire_lock(db, order, users["admin"], ttl_seconds=300) is False
    with pytest.raises(ConflictError):
        ensure_not_locked_by_other(order, users["admin"], ttl_seconds=300)
    # Same cashier keeps going; a zero TTL means the lock already went stale.
    ensure_not_locked_by_other(order, users["cashier"], ttl_seconds=300)
    assert acquire_lock(db, order, users["admin"], ttl_seconds=0) is True


def test_cashier_settles_through_the_counter(client, login, db, users, rice, open_shift):
    token = login("cashier@example.com")
    r = client.post(
        "/orders/new",
        json={
            "csrf_token": token,
            "channel": "PICKUP",
            "items": [{"product_id": rice.id, "qty": 1, "unit_price": 1250, "mode": "pack"}],
        },
    )
    assert r.status_code == 200
    order_id = r.json["id"]

    r = client.get(f"/cashier/orders/{order_id}")
    assert r.status_code == 200

    r = client.post(
        f"/cashier/orders/{order_id}",
        data={"csrf_token": token, "intent": "settle", "cash_given": "1300"},
        headers={"Accept": "application/json"},
    )
    assert r.status_code == 200
    assert r.json == {"ok": True, "status": "PAID", "change": 50.0}

    order = db.get(Order, order_id)
    assert order.status == STATUS_PAID
    assert order.receipt_no


def test_action_errors_come_back_as_json(client, login, rice):
    token = login("cashier@example.com")
    r = client.post(
        "/orders/new",
        json={"csrf_token": token, "channel": "PICKUP", "items": []},
    )
    assert r.status_code == 400
    assert r.json == {"ok": False, "error": "Add at least one item."}


def test_paid_delivery_order_takes_stock_at_the_counter(db, users, rice, customer, open_shift):
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
    assert order.status == STATUS_PAID
    assert order.stock_deducted_at is not None
    assert rice.stock == Decimal("18")

    void_order(db, order, users["manager"], reason="Customer moved the delivery")
    db.commit()
    assert rice.stock == Decimal("20")


def test_staged_order_must_leave_its_run_before_void(db, users, planned, open_shift):
    run, order = planned
    settle_payment(db, order, users["cashier"], cash_given="2500")
    db.commit()
    with pytest.raises(ActionError, match="Detach the order"):
        void_order(db, order, users["manager"], reason="Wrong address")


def test_expired_slips_are_cancelled_unless_someone_holds_them(db, users, rice, planned):
    _, staged = planned
    first = _pickup(db, users["cashier"], rice)
    second = _pickup(db, users["cashier"], rice, qty="1")
    held = _pickup(db, users["cashier"], rice, qty="1")
    later = datetime.utcnow() + timedelta(hours=25)
    held.locked_by_user_id = users["cashier"].id
    held.locked_at = later - timedelta(seconds=30)
    db.commit()

    assert expire_stale_orders(db, later, lock_ttl_seconds=300) == (2, 0)
    db.commit()
    assert first.status == STATUS_CANCELLED
    assert first.void_reason == "Auto-cancel: slip expired"
    assert second.status == STATUS_CANCELLED
    assert held.status == "UNPAID"
    # Orders on a delivery run belong to the run.
    assert staged.status == "UNPAID"

    # A day on, the stale lock no longer protects the slip and the old cancellations go.
    assert expire_stale_orders(db, later + timedelta(hours=25), lock_ttl_seconds=300) == (1, 2)
    db.commit()
    assert held.status == STATUS_CANCELLED
    assert {o.id for o in db.query(Order).all()} == {staged.id, held.id}


def test_queue_cancels_expired_slips(client, login, db, users, rice, open_shift):
    order = _pickup(db, users["cashier"], rice)
    order.expiry_at = datetime.utcnow() - timedelta(minutes=5)
    db.commit()
    login("cashier@example.com")
    r = client.get("/cashier")
    assert r.status_code == 200
    assert b"Auto-cancelled 1 expired slip" in r.data
    db.expire_all()
    assert db.get(Order, order.id).status == STATUS_CANCELLED
