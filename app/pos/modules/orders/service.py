from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from sqlalchemy import func, select

from app.pos.audit import record_event
from app.pos.errors import ActionError, ConflictError, ForbiddenError
from app.pos.modules.catalog.models import MOVE_ADHOC_SALE_OUT, MOVE_RETURN_IN, REF_ORDER, UNIT_PACK, UNIT_RETAIL, Product
from app.pos.modules.catalog.service import StockDeltas, add_delta, deduct_stock, restore_stock
from app.pos.modules.customers.models import Customer
from app.pos.modules.dispatch.models import OVERRIDE_PRICE_BELOW_ALLOWED, OverrideLog
from app.pos.modules.orders.models import (
    CHANNEL_DELIVERY,
    CHANNEL_PICKUP,
    CHANNELS,
    FULFILLMENT_STAGED,
    OPEN_STATUSES,
    PAY_CASH,
    PAY_INTERNAL_CREDIT,
    POLICY_BASE,
    POLICY_PER_ITEM,
    STATUS_CANCELLED,
    STATUS_PAID,
    STATUS_PARTIALLY_PAID,
    STATUS_UNPAID,
    STATUS_VOIDED,
    Order,
    OrderItem,
    Payment,
    ReceiptCounter,
)
from app.pos.modules.pricing.service import PricedItem, base_unit_price, quote_for_customer
from app.pos.money import MONEY_EPS, ZERO, r2, to_decimal
from app.pos.utils import order_code, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User

logger = logging.getLogger(__name__)

QUARTER = Decimal("0.25")
PRICE_TOLERANCE = Decimal("0.01")

# Payment ref prefix for the internal credit that bridges a rider's cash shortage.
RIDER_SHORTAGE_PREFIX = "RIDER-SHORTAGE"
MAIN_DELIVERY_REF = "MAIN-DELIVERY"
# Cancelled slips are kept this long for reference, then deleted.
CANCELLED_PURGE_HOURS = 24


# ---------- Receipt numbers ----------
def allocate_receipt_no(s: "Session", now: datetime | None = None) -> str:
    """Next YYYYMMDD-000123 receipt number from the singleton counter row."""
    now = now or datetime.now()
    row = s.query(ReceiptCounter).filter(ReceiptCounter.id == 1).with_for_update().one_or_none()
    if row is None:
        row = ReceiptCounter(id=1, counter=0)
        s.add(row)
    row.counter = (row.counter or 0) + 1
    s.flush()
    return f"{now:%Y%m%d}-{row.counter:06d}"


# ---------- Order entry ----------
def _is_multiple(qty: Decimal, step: Decimal) -> bool:
    return (qty / step) == (qty / step).to_integral_value()


def _validate_item(s: "Session", raw: dict, index: int) -> dict:
    label = f"Item #{index}"
    product_id = parse_int(raw.get("product_id"))
    product = s.get(Product, product_id) if product_id else None
    if product is None or not product.is_active:
        raise ActionError(f"{label}: product not found or inactive.")
    label = product.name
    qty = to_decimal(raw.get("qty"), default=None)
    unit_price = to_decimal(raw.get("unit_price"), default=None)
    if qty is None or qty <= 0:
        raise ActionError(f"{label}: quantity must be greater than 0.")
    if unit_price is None or unit_price <= 0:
        raise ActionError(f"{label}: unit price must be greater than 0.")

    mode = (raw.get("mode") or "").strip().lower()
    if mode not in ("retail", "pack"):
        retail_price = r2(product.price)
        is_retail = product.allow_pack_sale and retail_price > 0 and abs(r2(unit_price) - retail_price) <= PRICE_TOLERANCE
        mode = "retail" if is_retail else "pack"

    if mode == "retail":
        if not product.allow_pack_sale or (product.price or 0) <= 0:
            raise ActionError(f"{label}: retail sale is not allowed for this product.")
        if not _is_multiple(qty, QUARTER):
            raise ActionError(f"{label}: retail quantity must be in steps of 0.25.")
        if qty > (product.packing_stock or 0):
            raise ActionError(f"{label}: only {product.packing_stock} retail unit(s) in stock.")
        if abs(r2(unit_price) - r2(product.price)) > PRICE_TOLERANCE:
            raise ActionError(f"{label}: retail price changed to {r2(product.price)}. Refresh the order.")
        unit_kind = UNIT_RETAIL
        price = r2(product.price)
    else:
        if (product.srp or 0) <= 0:
            raise ActionError(f"{label}: pack price is not set for this product.")
        if qty != qty.to_integral_value():
            raise ActionError(f"{label}: pack quantity must be a whole number.")
        if qty > (product.stock or 0):
            raise ActionError(f"{label}: only {product.stock} pack(s) in stock.")
        if abs(r2(unit_price) - r2(product.srp)) > PRICE_TOLERANCE:
            raise ActionError(f"{label}: pack price changed to {r2(product.srp)}. Refresh the order.")
        unit_kind = UNIT_PACK
        price = r2(product.srp)

    return {"product": product, "qty": qty, "unit_kind": unit_kind, "unit_price": price}


def validate_order_payload(s: "Session", payload: dict) -> list[dict]:
    """Check header fields and items; returns the cleaned item rows."""
    channel = (payload.get("channel") or CHANNEL_PICKUP).strip().upper()
    if channel not in CHANNELS:
        raise ActionError(f"Invalid channel. Must be one of: {', '.join(CHANNELS)}")
    if channel == CHANNEL_DELIVERY and not (payload.get("deliver_to") or "").strip():
        raise ActionError("Delivery address is required for delivery orders.")
    lat = to_decimal(payload.get("deliver_lat"), default=None)
    lng = to_decimal(payload.get("deliver_lng"), default=None)
    if (lat is None) != (lng is None):
        raise ActionError("Latitude and longitude must both be set or both be blank.")

    items = payload.get("items") or []
    if not items:
        raise ActionError("Add at least one item.")
    return [_validate_item(s, raw, i) for i, raw in enumerate(items, start=1)]


def create_order(s: "Session", payload: dict, user: "User", *, expiry_hours: int = 24) -> Order:
    rows = validate_order_payload(s, payload)
    customer = None
    customer_id = parse_int(payload.get("customer_id"))
    if customer_id:
        customer = s.get(Customer, customer_id)
        if customer is None:
            raise ActionError("Customer not found.")

    now = datetime.utcnow()
    code = order_code()
    while s.query(Order.id).filter(Order.order_code == code).first():
        code = order_code()

    subtotal = r2(sum((r["unit_price"] * r["qty"] for r in rows), ZERO))
    channel = (payload.get("channel") or CHANNEL_PICKUP).strip().upper()
    order = Order(
        order_code=code,
        channel=channel,
        status=STATUS_UNPAID,
        customer_id=customer.id if customer else None,
        customer_name=(customer.full_name if customer else (payload.get("customer_name") or "").strip() or None),
        deliver_to=(payload.get("deliver_to") or "").strip() or None,
        deliver_phone=(payload.get("deliver_phone") or "").strip() or None,
        deliver_landmark=(payload.get("deliver_landmark") or "").strip() or None,
        deliver_lat=to_decimal(payload.get("deliver_lat"), default=None),
        deliver_lng=to_decimal(payload.get("deliver_lng"), default=None),
        subtotal=subtotal,
        total_before_discount=subtotal,
        expiry_at=now + timedelta(hours=expiry_hours),
        notes=(payload.get("notes") or "").strip() or None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    for r in rows:
        order.items.append(
            OrderItem(
                product_id=r["product"].id,
                name=r["product"].name,
                qty=r["qty"],
                unit_kind=r["unit_kind"],
                unit_price=r["unit_price"],
            )
        )
    s.add(order)
    s.flush()
    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=order.id,
        metadata={"order_code": order.order_code, "channel": channel, "subtotal": subtotal, "items": len(rows)},
    )
    return order


# ---------- Totals & settlement helpers ----------
def has_all_frozen_line_totals(items: Iterable[OrderItem]) -> bool:
    items = list(items)
    return bool(items) and all(it.line_total is not None for it in items)


def sum_frozen_line_totals(items: Iterable[OrderItem]) -> Decimal:
    return r2(sum((to_decimal(it.line_total) for it in items), ZERO))


def is_rider_shortage_ref(ref_no: str | None) -> bool:
    return (ref_no or "").startswith(RIDER_SHORTAGE_PREFIX + ":")


def rider_shortage_ref(receipt_id: int) -> str:
    return f"{RIDER_SHORTAGE_PREFIX}:RR:{receipt_id}"


def sum_cash_payments(payments: Iterable[Payment]) -> Decimal:
    return r2(sum((to_decimal(p.amount) for p in payments if p.method == PAY_CASH), ZERO))


def sum_shortage_bridge_payments(payments: Iterable[Payment]) -> Decimal:
    return r2(
        sum(
            (to_decimal(p.amount) for p in payments if p.method == PAY_INTERNAL_CREDIT and is_rider_shortage_ref(p.ref_no)),
            ZERO,
        )
    )


def sum_settlement_credits(payments: Iterable[Payment]) -> Decimal:
    """Everything that reduces the balance: cash plus internal credits."""
    return r2(sum((to_decimal(p.amount) for p in payments), ZERO))


def item_unit_kind(item: OrderItem, product: Product | None) -> str:
    """Stored unit kind, or for legacy lines: fractional qty of a retail-able product means RETAIL."""
    if item.unit_kind in (UNIT_RETAIL, UNIT_PACK):
        return item.unit_kind
    qty = to_decimal(item.qty)
    if product is not None and product.allow_pack_sale and qty != qty.to_integral_value():
        return UNIT_RETAIL
    return UNIT_PACK


def item_stock_deltas(s: "Session", items: Iterable[OrderItem]) -> StockDeltas:
    deltas: StockDeltas = {}
    for it in items:
        add_delta(deltas, it.product_id, item_unit_kind(it, s.get(Product, it.product_id)), to_decimal(it.qty))
    return deltas


def quote_order(s: "Session", order: Order, customer_id: int | None = None):
    cid = customer_id if customer_id is not None else order.customer_id
    priced = []
    for it in order.items:
        product = s.get(Product, it.product_id)
        kind = item_unit_kind(it, product)
        base = base_unit_price(product, kind) if product is not None else r2(it.unit_price)
        priced.append(PricedItem(product_id=it.product_id, qty=to_decimal(it.qty), unit_price=base, unit_kind=kind, name=it.name))
    return quote_for_customer(s, cid, priced)


def order_total(s: "Session", order: Order) -> Decimal:
    """Frozen line totals first, then the stored pre-discount total, then a fresh quote."""
    if has_all_frozen_line_totals(order.items):
        return sum_frozen_line_totals(order.items)
    if order.total_before_discount is not None:
        return r2(order.total_before_discount)
    return quote_order(s, order).total


def order_balance(s: "Session", order: Order) -> Decimal:
    return max(ZERO, r2(order_total(s, order) - sum_settlement_credits(order.payments)))


# ---------- Cashier lock ----------
def lock_is_fresh(order: Order, ttl_seconds: int, now: datetime | None = None) -> bool:
    if order.locked_at is None or order.locked_by_user_id is None:
        return False
    now = now or datetime.utcnow()
    return now - order.locked_at <= timedelta(seconds=ttl_seconds)


def acquire_lock(s: "Session", order: Order, user: "User", *, ttl_seconds: int) -> bool:
    """Claim the order for this cashier. False when another cashier holds a fresh lock."""
    if lock_is_fresh(order, ttl_seconds) and order.locked_by_user_id != user.id:
        return False
    order.locked_at = datetime.utcnow()
    order.locked_by_user_id = user.id
    return True


def release_lock(order: Order) -> None:
    order.locked_at = None
    order.locked_by_user_id = None


def ensure_not_locked_by_other(order: Order, user: "User", *, ttl_seconds: int) -> None:
    if lock_is_fresh(order, ttl_seconds) and order.locked_by_user_id != user.id:
        raise ConflictError("Order is being handled by another cashier.")


def expire_stale_orders(
    s: "Session",
    now: datetime | None = None,
    *,
    lock_ttl_seconds: int,
    purge_after_hours: int = CANCELLED_PURGE_HOURS,
) -> tuple[int, int]:
    """
    Cancel expired UNPAID slips nobody is working on, and purge old cancelled ones.

    A slip with a fresh cashier lock, a credit tab, released goods or a place on a
    delivery run is left alone. Returns (cancelled, purged).
    """
    from app.pos.modules.dispatch.models import DeliveryRunOrder

    now = now or datetime.utcnow()
    on_run = select(DeliveryRunOrder.order_id)
    expired = (
        s.query(Order)
        .filter(
            Order.status == STATUS_UNPAID,
            Order.expiry_at.is_not(None),
            Order.expiry_at < now,
            Order.is_on_credit.is_(False),
            Order.stock_deducted_at.is_(None),
            Order.dispatched_at.is_(None),
            Order.id.notin_(on_run),
        )
        .all()
    )
    cancelled = 0
    for order in expired:
        if order.payments or lock_is_fresh(order, lock_ttl_seconds, now):
            continue
        order.status = STATUS_CANCELLED
        order.cancelled_at = now
        order.updated_at = now
        order.void_reason = "Auto-cancel: slip expired"
        release_lock(order)
        record_event(
            s,
            actor=None,
            action="order.auto_cancel",
            entity_type="Order",
            entity_id=order.id,
            reason=order.void_reason,
            metadata={"order_code": order.order_code, "expiry_at": order.expiry_at},
        )
        cancelled += 1

    cutoff = now - timedelta(hours=purge_after_hours)
    doomed = (
        s.query(Order)
        .filter(
            Order.status == STATUS_CANCELLED,
            func.coalesce(Order.cancelled_at, Order.updated_at) < cutoff,
            Order.id.notin_(on_run),
        )
        .all()
    )
    purged = 0
    for order in doomed:
        if order.payments:
            continue
        s.delete(order)
        purged += 1
    if purged:
        record_event(s, actor=None, action="order.purge_cancelled", entity_type="Order", entity_id=None, metadata={"count": purged})
    s.flush()
    if cancelled or purged:
        logger.info("queue cleanup: %s expired slips cancelled, %s cancelled orders purged", cancelled, purged)
    return cancelled, purged


# ---------- Stock on release ----------
def _deduct_order_stock(s: "Session", order: Order, user: "User") -> None:
    # Once a delivery order is on a dispatched run, the run's loadout owns its stock.
    if order.stock_deducted_at is not None or order.dispatched_at is not None:
        return
    deduct_stock(
        s,
        item_stock_deltas(s, order.items),
        movement_type=MOVE_ADHOC_SALE_OUT,
        ref_kind=REF_ORDER,
        ref_id=order.id,
        user_id=user.id,
        error_message="Insufficient stock to release this order.",
    )
    order.stock_deducted_at = datetime.utcnow()


def _attach_customer(s: "Session", order: Order, customer_id: int | None) -> None:
    if not customer_id or customer_id == order.customer_id:
        return
    customer = s.get(Customer, customer_id)
    if customer is None:
        raise ActionError("Customer not found.")
    order.customer_id = customer.id
    order.customer = customer
    order.customer_name = customer.full_name


def freeze_order_lines(s: "Session", order: Order, discount_approved_by: str | None) -> None:
    """Stamp allowed price, policy and line total on every item (first settlement only)."""
    if has_all_frozen_line_totals(order.items):
        return
    quote = quote_order(s, order)
    violations = []
    for it, adj in zip(order.items, quote.items):
        allowed = adj.effective_unit_price
        charged = r2(it.unit_price)
        if charged + Decimal("0.000001") < allowed:
            violations.append(f"{it.name}: allowed {allowed}, actual {charged}")
            price = charged
        else:
            price = min(charged, allowed)
        it.allowed_unit_price = allowed
        it.price_policy = POLICY_BASE if abs(allowed - adj.base_unit_price) <= Decimal("0.009") else POLICY_PER_ITEM
        it.unit_price = price
        it.line_total = r2(price * to_decimal(it.qty))
        if charged < allowed and discount_approved_by:
            it.discount_approved_by = discount_approved_by
    if violations and not discount_approved_by:
        raise ActionError("Price below allowed. Manager approval required. " + "; ".join(violations))
    if violations:
        s.add(
            OverrideLog(
                kind=OVERRIDE_PRICE_BELOW_ALLOWED,
                order_id=order.id,
                approved_by=discount_approved_by,
                reason="; ".join(violations),
            )
        )


def settle_payment(
    s: "Session",
    order: Order,
    user: "User",
    *,
    cash_given,
    customer_id: int | None = None,
    release_with_balance: bool = False,
    release_approved_by: str | None = None,
    discount_approved_by: str | None = None,
) -> Payment:
    """
    Take cash for an order at the cashier.

    Fully paid orders end PAID with a receipt number; anything left stays on credit
    as PARTIALLY_PAID. Stock leaves the store on full payment or on an approved release,
    unless the order already went out on a dispatched run. A prepaid delivery order
    can still be attached to a run afterwards.
    """
    from app.pos.modules.cashier_shifts.service import open_shift_for

    cash_given = r2(to_decimal(cash_given))
    if cash_given <= 0:
        raise ActionError("Enter cash > 0. For full credit, use Record as Credit.")
    if order.status not in OPEN_STATUSES:
        raise ActionError("Order is already settled or voided.")
    shift = open_shift_for(s, user.id)
    if shift is None:
        raise ForbiddenError("Open your cashier shift before taking payments.")

    _attach_customer(s, order, customer_id)
    release_approved_by = (release_approved_by or "").strip() or None
    discount_approved_by = (discount_approved_by or "").strip() or None

    freeze_order_lines(s, order, discount_approved_by)
    total = sum_frozen_line_totals(order.items)
    balance = max(ZERO, r2(total - sum_settlement_credits(order.payments)))
    if balance <= MONEY_EPS:
        raise ActionError("Order has no balance due.")

    applied = min(cash_given, balance)
    change = r2(cash_given - applied)
    remaining = r2(balance - applied)

    if remaining > MONEY_EPS and order.customer_id is None:
        raise ActionError("Select or create a customer before allowing a balance on credit.")
    if remaining > MONEY_EPS and release_with_balance and not release_approved_by:
        raise ActionError("Manager name is required to release with balance.")

    payment = Payment(
        method=PAY_CASH,
        amount=applied,
        tendered=cash_given,
        change=change,
        shift_id=shift.id,
        cashier_id=user.id,
    )
    order.payments.append(payment)
    now = datetime.utcnow()

    if remaining <= MONEY_EPS:
        _deduct_order_stock(s, order, user)
        order.status = STATUS_PAID
        order.paid_at = now
        order.is_on_credit = False
        if not order.receipt_no:
            order.receipt_no = allocate_receipt_no(s)
    else:
        order.status = STATUS_PARTIALLY_PAID
        order.is_on_credit = True
        if release_with_balance and order.released_at is None:
            _deduct_order_stock(s, order, user)
            order.released_at = now
            order.released_approved_by = release_approved_by
    release_lock(order)
    order.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="order.settle",
        entity_type="Order",
        entity_id=order.id,
        metadata={
            "order_code": order.order_code,
            "applied": applied,
            "tendered": cash_given,
            "change": change,
            "remaining": remaining,
            "shift_id": shift.id,
            "status": order.status,
        },
    )
    logger.info("order %s settled: applied=%s remaining=%s", order.order_code, applied, remaining)
    return payment


def record_credit(
    s: "Session",
    order: Order,
    user: "User",
    *,
    customer_id: int | None,
    due_date: datetime | None = None,
    release_now: bool = False,
    release_approved_by: str | None = None,
) -> Order:
    """Put the whole balance on the customer's tab. No cash changes hands."""
    if order.status not in OPEN_STATUSES:
        raise ActionError("Order is already settled or voided.")
    if not customer_id and order.customer_id is None:
        raise ActionError("Customer is required for full credit.")
    release_approved_by = (release_approved_by or "").strip() or None
    if release_now and not release_approved_by:
        raise ActionError("Manager name is required to release goods.")

    _attach_customer(s, order, customer_id)
    order.is_on_credit = True
    order.due_date = due_date
    if release_now and order.released_at is None:
        _deduct_order_stock(s, order, user)
        order.released_at = datetime.utcnow()
        order.released_approved_by = release_approved_by
    release_lock(order)
    order.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="order.credit",
        entity_type="Order",
        entity_id=order.id,
        metadata={"order_code": order.order_code, "customer_id": order.customer_id, "released": bool(order.released_at)},
    )
    return order


# ---------- Cancel / void / print ----------
def cancel_order(s: "Session", order: Order, user: "User", *, reason: str | None = None) -> Order:
    if order.status != STATUS_UNPAID or order.payments:
        raise ActionError("Only unpaid orders without payments can be cancelled.")
    if order.stock_deducted_at is not None:
        raise ActionError("Goods were already released for this order; void it instead.")
    order.status = STATUS_CANCELLED
    order.cancelled_at = datetime.utcnow()
    order.void_reason = (reason or "").strip() or None
    release_lock(order)
    record_event(s, actor=user, action="order.cancel", entity_type="Order", entity_id=order.id, reason=order.void_reason)
    return order


def void_order(s: "Session", order: Order, user: "User", *, reason: str) -> Order:
    reason = (reason or "").strip()
    if order.status != STATUS_PAID:
        raise ActionError("Only paid orders can be voided.")
    if not reason:
        raise ActionError("Reason is required to void an order.")
    if order.fulfillment_status == FULFILLMENT_STAGED:
        raise ActionError("Detach the order from its delivery run before voiding.")
    if order.stock_deducted_at is not None and order.dispatched_at is None:
        restore_stock(
            s,
            item_stock_deltas(s, order.items),
            movement_type=MOVE_RETURN_IN,
            ref_kind=REF_ORDER,
            ref_id=order.id,
            user_id=user.id,
        )
        order.stock_deducted_at = None
    order.status = STATUS_VOIDED
    order.void_reason = reason
    order.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="order.void", entity_type="Order", entity_id=order.id, reason=reason)
    return order


def reprint(s: "Session", order: Order, user: "User") -> Order:
    order.print_count = (order.print_count or 0) + 1
    order.printed_at = datetime.utcnow()
    record_event(s, actor=user, action="order.reprint", entity_type="Order", entity_id=order.id, metadata={"print_count": order.print_count})
    return order
