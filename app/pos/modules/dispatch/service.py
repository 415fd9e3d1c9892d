"""
Delivery runs: plan, dispatch, rider check-in, recap and remit.

PLANNED -> DISPATCHED -> CHECKED_IN -> CLOSED. Dispatch takes stock out of the store
(linked delivery orders plus extra loadout for roadside sales); check-in records what
the rider sold, collected and brought back; remit turns roadside sales into orders,
puts returns back into stock and closes the run.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.pos.audit import record_event
from app.pos.errors import ActionError, ConflictError
from app.pos.modules.catalog.models import (
    MOVE_ADJUST,
    MOVE_LOADOUT_OUT,
    MOVE_RETURN_IN,
    REF_RUN,
    UNIT_PACK,
    Product,
    StockMovement,
)
from app.pos.modules.catalog.service import StockDeltas, add_delta, deduct_stock, restore_stock, unit_kg
from app.pos.modules.clearance.models import CASE_NEEDS_CLEARANCE, ClearanceCase
from app.pos.modules.customers.models import Customer
from app.pos.modules.dispatch.models import (
    OVERRIDE_CAPACITY_EXCEED,
    RECEIPT_PARENT,
    RECEIPT_ROAD,
    RUN_CHECKED_IN,
    RUN_CLOSED,
    RUN_DISPATCHED,
    RUN_PLANNED,
    DeliveryRun,
    DeliveryRunOrder,
    OverrideLog,
    RunReceipt,
    RunReceiptLine,
    parent_receipt_key,
)
from app.pos.modules.fleet.models import EMPLOYEE_RIDER, Employee, Vehicle
from app.pos.modules.orders.models import (
    CHANNEL_DELIVERY,
    FULFILLMENT_DELIVERED,
    FULFILLMENT_DISPATCHED,
    FULFILLMENT_STAGED,
    OPEN_STATUSES,
    POLICY_FROZEN_RUN_RECEIPT,
    STATUS_PAID,
    STATUS_UNPAID,
    Order,
    OrderItem,
)
from app.pos.modules.orders.service import allocate_receipt_no, freeze_order_lines, item_stock_deltas
from app.pos.modules.pricing.service import allowed_unit_price
from app.pos.money import MONEY_EPS, ZERO, clamp, r2, to_decimal
from app.pos.utils import parse_int, run_code

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.pos.models import User

logger = logging.getLogger(__name__)

CAPACITY_ERROR = "Capacity exceeded (kg). Adjust loadout or change vehicle."
ROAD_CREDIT_RATIO = Decimal("0.8")
PARENT_CREDIT_RATIO = Decimal("0.9")
RECAP_EPS = Decimal("0.0001")
ROADSIDE_ORDER_PREFIX = "RS-"
ROADSIDE_EXPIRY_DAYS = 7


def roadside_order_code(run_id: int, receipt_id: int) -> str:
    return f"{ROADSIDE_ORDER_PREFIX}RUN{run_id}-RR{receipt_id}"


def _deltas_to_json(deltas: StockDeltas) -> dict[str, dict[str, str]]:
    return {str(pid): {k: str(v) for k, v in d.items()} for pid, d in deltas.items()}


def _deltas_from_json(raw: dict | None) -> StockDeltas:
    out: StockDeltas = {}
    for pid, d in (raw or {}).items():
        out[int(pid)] = {"pack": to_decimal(d.get("pack")), "retail": to_decimal(d.get("retail"))}
    return out


# ---------- Planning ----------
def create_run(
    s: "Session",
    user: "User",
    *,
    rider_id: int | None,
    vehicle_id: int | None = None,
    notes: str | None = None,
) -> DeliveryRun:
    rider = s.get(Employee, rider_id) if rider_id else None
    if rider is None or not rider.active or rider.role != EMPLOYEE_RIDER:
        raise ActionError("Select an active rider.")
    vehicle = None
    if vehicle_id:
        vehicle = s.get(Vehicle, vehicle_id)
        if vehicle is None or not vehicle.active:
            raise ActionError("Vehicle not found or inactive.")
    else:
        vehicle = rider.default_vehicle

    code = run_code()
    while s.query(DeliveryRun.id).filter(DeliveryRun.run_code == code).first():
        code = run_code()

    run = DeliveryRun(
        run_code=code,
        status=RUN_PLANNED,
        rider_id=rider.id,
        vehicle_id=vehicle.id if vehicle else None,
        loadout_snapshot=[],
        notes=(notes or "").strip() or None,
        created_by_user_id=user.id,
    )
    s.add(run)
    s.flush()
    record_event(
        s,
        actor=user,
        action="run.create",
        entity_type="DeliveryRun",
        entity_id=run.id,
        metadata={"run_code": code, "rider_id": rider.id, "vehicle_id": run.vehicle_id},
    )
    return run


def _require_planned(run: DeliveryRun) -> None:
    if run.status != RUN_PLANNED:
        raise ActionError("Run is already dispatched; changes are locked.")


def attach_order(s: "Session", user: "User", run: DeliveryRun, order: Order) -> DeliveryRunOrder:
    _require_planned(run)
    if order.channel != CHANNEL_DELIVERY:
        raise ActionError("Only delivery orders can be attached to a run.")
    # Prepaid delivery orders (settled at the counter) still go out on a run.
    if order.status not in OPEN_STATUSES + (STATUS_PAID,) or order.dispatched_at is not None:
        raise ActionError("Order is not open for dispatch.")
    existing = s.query(DeliveryRunOrder).filter(DeliveryRunOrder.order_id == order.id).one_or_none()
    if existing is not None:
        if existing.run_id == run.id:
            return existing
        raise ConflictError("Order is already on another run.")
    link = DeliveryRunOrder(order_id=order.id, order=order, sequence=len(run.run_orders) + 1)
    run.run_orders.append(link)
    order.fulfillment_status = FULFILLMENT_STAGED
    order.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="run.attach_order", entity_type="DeliveryRun", entity_id=run.id, metadata={"order_id": order.id})
    return link


def detach_order(s: "Session", user: "User", run: DeliveryRun, order_id: int) -> None:
    _require_planned(run)
    link = next((ro for ro in run.run_orders if ro.order_id == order_id), None)
    if link is None:
        raise ActionError("Order is not on this run.")
    link.order.fulfillment_status = "NEW"
    run.run_orders.remove(link)
    record_event(s, actor=user, action="run.detach_order", entity_type="DeliveryRun", entity_id=run.id, metadata={"order_id": order_id})


def normalize_loadout(s: "Session", rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Aggregate [{product_id, name, qty}] by product.

    Zero rows are dropped, names come from the catalog, and a quantity without a
    product is rejected.
    """
    totals: dict[int, Decimal] = {}
    order: list[int] = []
    for row in rows:
        qty = to_decimal(row.get("qty"), default=ZERO)
        pid = parse_int(row.get("product_id"))
        if qty <= 0:
            continue
        if not pid:
            raise ActionError("Loadout row has a quantity but no product.")
        if pid not in totals:
            order.append(pid)
            totals[pid] = ZERO
        totals[pid] += qty

    out = []
    for pid in order:
        product = s.get(Product, pid)
        if product is None:
            raise ActionError(f"Product #{pid} not found.")
        out.append({"product_id": pid, "name": product.name, "qty": str(totals[pid])})
    return out


def save_loadout(s: "Session", user: "User", run: DeliveryRun, rows: list[dict[str, Any]], *, vehicle_id: int | None = None) -> DeliveryRun:
    _require_planned(run)
    run.loadout_snapshot = normalize_loadout(s, rows)
    if vehicle_id:
        vehicle = s.get(Vehicle, vehicle_id)
        if vehicle is None or not vehicle.active:
            raise ActionError("Vehicle not found or inactive.")
        run.vehicle_id = vehicle.id
        run.vehicle = vehicle
    record_event(s, actor=user, action="run.save_loadout", entity_type="DeliveryRun", entity_id=run.id, metadata={"rows": len(run.loadout_snapshot)})
    return run


# ---------- Dispatch ----------
def run_load_kg(s: "Session", run: DeliveryRun, loadout: list[dict[str, Any]]) -> Decimal:
    """Weight of linked order items plus extra loadout."""
    kg = ZERO
    for order in run.orders:
        for it in order.items:
            product = s.get(Product, it.product_id)
            if product is not None:
                kg += unit_kg(product) * to_decimal(it.qty)
    for row in loadout:
        product = s.get(Product, int(row["product_id"]))
        if product is not None:
            kg += unit_kg(product) * to_decimal(row["qty"])
    return kg


def dispatch_stock_deltas(s: "Session", run: DeliveryRun, loadout: list[dict[str, Any]]) -> StockDeltas:
    """Extra loadout plus the items of linked orders whose stock has not left the store yet."""
    deltas = item_stock_deltas(s, [it for o in run.orders if o.stock_deducted_at is None for it in o.items])
    for row in loadout:
        add_delta(deltas, int(row["product_id"]), UNIT_PACK, to_decimal(row["qty"]))
    return deltas


def dispatch_run(
    s: "Session",
    user: "User",
    run: DeliveryRun,
    *,
    loadout_rows: list[dict[str, Any]] | None = None,
    capacity_override_by: str | None = None,
) -> DeliveryRun:
    """Check capacity and stock, take the stock out and mark run and orders DISPATCHED."""
    if run.status != RUN_PLANNED:
        raise ActionError("Only planned runs can be dispatched.")
    loadout = normalize_loadout(s, loadout_rows) if loadout_rows is not None else (run.loadout_snapshot or [])

    rider = run.rider
    if rider is None or not rider.active:
        raise ActionError("Rider is missing or inactive.")

    order_qty = sum((to_decimal(it.qty) for o in run.orders for it in o.items), ZERO)
    extra_qty = sum((to_decimal(r["qty"]) for r in loadout), ZERO)
    if order_qty <= 0 and extra_qty <= 0:
        raise ActionError("Nothing to dispatch. Attach orders or add loadout.")

    capacity_override_by = (capacity_override_by or "").strip() or None
    load = run_load_kg(s, run, loadout)
    capacity = to_decimal(run.vehicle.capacity_units) if run.vehicle is not None else None
    if capacity is not None and load > capacity:
        if not capacity_override_by:
            raise ActionError(CAPACITY_ERROR)
        s.add(
            OverrideLog(
                kind=OVERRIDE_CAPACITY_EXCEED,
                run_id=run.id,
                approved_by=capacity_override_by,
                reason=f"load {load} kg > capacity {capacity} kg",
            )
        )

    deducted_ids = [o.id for o in run.orders if o.stock_deducted_at is None]
    deltas = dispatch_stock_deltas(s, run, loadout)
    deduct_stock(
        s,
        deltas,
        movement_type=MOVE_LOADOUT_OUT,
        ref_kind=REF_RUN,
        ref_id=run.id,
        user_id=user.id,
        error_message="Insufficient stock for dispatch.",
    )

    now = datetime.utcnow()
    existing = {rc.receipt_key: rc for rc in run.receipts}
    for order in run.orders:
        key = parent_receipt_key(order.id)
        rc = existing.get(key)
        if rc is None:
            rc = RunReceipt(kind=RECEIPT_PARENT, receipt_key=key, cash_collected=ZERO)
            run.receipts.append(rc)
        rc.parent_order_id = order.id
        rc.parent_order = order
        rc.customer_id = order.customer_id
        rc.customer_name = order.customer_label
        rc.customer_phone = order.customer.phone if order.customer is not None else order.deliver_phone
        rc.is_on_credit = bool(order.is_on_credit)
        rc.updated_at = now
        order.fulfillment_status = FULFILLMENT_DISPATCHED
        order.dispatched_at = now
        if order.id in deducted_ids:
            order.stock_deducted_at = now
        order.updated_at = now

    run.loadout_snapshot = loadout
    run.dispatch_snapshot = {
        "order_ids": [o.id for o in run.orders],
        "deducted_order_ids": deducted_ids,
        "deltas": _deltas_to_json(deltas),
    }
    run.checkin_snapshot = None
    run.checked_in_at = None
    run.status = RUN_DISPATCHED
    run.dispatched_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="run.dispatch",
        entity_type="DeliveryRun",
        entity_id=run.id,
        metadata={"run_code": run.run_code, "orders": len(run.orders), "load_kg": load, "override": capacity_override_by},
    )
    logger.info("run %s dispatched: %s orders, %s kg", run.run_code, len(run.orders), load)
    return run


def revert_to_planned(s: "Session", user: "User", run: DeliveryRun) -> DeliveryRun:
    """Undo a dispatch: put back exactly what dispatch took and drop the run's receipts."""
    from app.pos.modules.remit.models import RiderRunVariance

    if run.status != RUN_DISPATCHED:
        raise ActionError("Only dispatched runs can be reverted to planned.")
    snap = run.dispatch_snapshot or {}
    restore_stock(
        s,
        _deltas_from_json(snap.get("deltas")),
        movement_type=MOVE_ADJUST,
        ref_kind=REF_RUN,
        ref_id=run.id,
        user_id=user.id,
    )
    s.query(ClearanceCase).filter(ClearanceCase.run_id == run.id).delete(synchronize_session=False)
    s.query(RiderRunVariance).filter(RiderRunVariance.run_id == run.id).delete(synchronize_session=False)
    run.receipts.clear()
    deducted_ids = set(snap.get("deducted_order_ids") or [])
    for order in run.orders:
        order.fulfillment_status = FULFILLMENT_STAGED
        order.dispatched_at = None
        if order.id in deducted_ids:
            order.stock_deducted_at = None
    run.status = RUN_PLANNED
    run.dispatched_at = None
    run.dispatch_snapshot = None
    run.checkin_snapshot = None
    record_event(s, actor=user, action="run.revert_planned", entity_type="DeliveryRun", entity_id=run.id)
    return run


# ---------- Rider check-in ----------
def _freeze_parent_receipt(
    s: "Session", rc: RunReceipt, order: Order, price_override_by: str | None
) -> Decimal:
    """Freeze the parent order's prices and copy them onto its run receipt lines."""
    freeze_order_lines(s, order, price_override_by)
    rc.lines.clear()
    for it in order.items:
        rc.lines.append(
            RunReceiptLine(
                product_id=it.product_id,
                name=it.name,
                qty=to_decimal(it.qty),
                unit_kind=it.unit_kind,
                unit_price=r2(it.unit_price),
                line_total=r2(it.line_total),
            )
        )
    return r2(sum((to_decimal(it.line_total) for it in order.items), ZERO))


def _road_snapshot_row(s: "Session", rc: RunReceipt) -> dict[str, Any]:
    ln = rc.lines[0]
    product = s.get(Product, ln.product_id)
    allowed = allowed_unit_price(s, rc.customer_id, product, UNIT_PACK) if product is not None else r2(ln.unit_price)
    return {
        "key": rc.receipt_key,
        "product_id": ln.product_id,
        "qty": str(to_decimal(ln.qty)),
        "unit_price": str(r2(ln.unit_price)),
        "allowed_unit_price": str(allowed),
        "cash_amount": str(r2(rc.cash_collected)),
        "customer_id": rc.customer_id,
        "is_credit": bool(rc.is_on_credit),
    }


def _match_flagged(flagged: dict[str, RunReceipt], key: str, explicit: bool, product_id: int, customer_id: int | None):
    """
    The flagged ROAD receipt an incoming sold row refers to.

    An explicit key decides on its own. Without one, the receipt must be for the same
    product and must not name a different customer; the positional key is tried first.
    """
    def same_sale(rc: RunReceipt) -> bool:
        if not rc.lines or rc.lines[0].product_id != product_id:
            return False
        return rc.customer_id is None or customer_id is None or rc.customer_id == customer_id

    if explicit:
        return flagged.pop(key, None)
    if key in flagged and same_sale(flagged[key]):
        return flagged.pop(key)
    for k, rc in flagged.items():
        if same_sale(rc):
            return flagged.pop(k)
    return None


def rider_checkin(
    s: "Session",
    user: "User",
    run: DeliveryRun,
    *,
    stock_rows: list[dict[str, Any]],
    sold_rows: list[dict[str, Any]],
    parent_payments: list[dict[str, Any]],
    parent_overrides: list[dict[str, Any]] | None = None,
    price_override_by: str | None = None,
) -> DeliveryRun:
    """
    Record returns, roadside sales and cash collected on parent orders.

    Roadside sales paying less than 80% of the allowed total are forced to credit;
    parent orders paying less than 90% of their total likewise. Parent prices below
    the allowed price need `price_override_by`, which is logged as an override.
    Roadside receipts already under clearance are kept as sent: a sold row with the
    same key (or the same product and customer) refers to that receipt.
    """
    if run.status != RUN_DISPATCHED:
        raise ActionError("Run must be DISPATCHED to check in.")
    now = datetime.utcnow()
    price_override_by = (price_override_by or "").strip() or None

    returns = []
    for row in stock_rows:
        pid = parse_int(row.get("product_id"))
        if not pid:
            continue
        returns.append({"product_id": pid, "returned": str(max(ZERO, to_decimal(row.get("returned"))))})

    # Roadside receipts are rebuilt from scratch, except ones already under clearance.
    flagged_ids = {
        rid
        for (rid,) in s.query(ClearanceCase.run_receipt_id).filter(ClearanceCase.run_id == run.id).all()
        if rid is not None
    }
    for rc in [rc for rc in run.receipts if rc.kind == RECEIPT_ROAD and rc.id not in flagged_ids]:
        run.receipts.remove(rc)
    s.flush()
    flagged = {rc.receipt_key: rc for rc in run.receipts if rc.kind == RECEIPT_ROAD}

    sold_snapshot = []
    seen_keys: set[str] = set()
    for i, row in enumerate(sold_rows, start=1):
        pid = parse_int(row.get("product_id"))
        qty = to_decimal(row.get("qty"), default=ZERO)
        if not pid or qty <= 0:
            continue
        product = s.get(Product, pid)
        if product is None:
            raise ActionError(f"Product #{pid} not found.")
        customer_id = parse_int(row.get("customer_id"))
        customer = s.get(Customer, customer_id) if customer_id else None
        if customer_id and customer is None:
            raise ActionError("Customer not found.")

        explicit_key = (row.get("key") or "").strip()
        if explicit_key and explicit_key in seen_keys:
            raise ActionError(f"Roadside sale {explicit_key} is listed twice.")
        key = explicit_key or f"ROAD:{i}"

        kept = _match_flagged(flagged, key, bool(explicit_key), pid, customer.id if customer else None)
        if kept is not None:
            seen_keys.add(kept.receipt_key)
            sold_snapshot.append(_road_snapshot_row(s, kept))
            continue
        taken = seen_keys | {rc.receipt_key for rc in run.receipts}
        if key in taken:
            if explicit_key:
                raise ActionError(f"Roadside receipt {key} is under clearance; edit it from the clearance case.")
            n = i
            while f"ROAD:{n}" in taken:
                n += 1
            key = f"ROAD:{n}"
        seen_keys.add(key)

        allowed = allowed_unit_price(s, customer.id if customer else None, product, UNIT_PACK)
        unit_price = r2(to_decimal(row.get("unit_price"), default=allowed))
        if unit_price <= 0:
            unit_price = allowed
        line_total = r2(unit_price * qty)
        cash = r2(clamp(to_decimal(row.get("cash_amount"), default=line_total), ZERO, line_total))
        is_credit = bool(row.get("is_credit"))
        if not is_credit and allowed * qty > 0 and cash < allowed * qty * ROAD_CREDIT_RATIO:
            is_credit = True

        rc = RunReceipt(
            kind=RECEIPT_ROAD,
            receipt_key=key,
            customer_id=customer.id if customer else None,
            customer_name=customer.label if customer else (row.get("customer_name") or "").strip() or None,
            customer_phone=customer.phone if customer else (row.get("customer_phone") or "").strip() or None,
            cash_collected=cash,
            is_on_credit=is_credit,
            created_at=now,
            updated_at=now,
        )
        rc.lines.append(
            RunReceiptLine(
                product_id=product.id,
                name=product.name,
                qty=qty,
                unit_kind=UNIT_PACK,
                unit_price=unit_price,
                line_total=line_total,
            )
        )
        run.receipts.append(rc)
        sold_snapshot.append(
            {
                "key": key,
                "product_id": pid,
                "qty": str(qty),
                "unit_price": str(unit_price),
                "allowed_unit_price": str(allowed),
                "cash_amount": str(cash),
                "customer_id": customer.id if customer else None,
                "is_credit": is_credit,
            }
        )
    # Flagged receipts the rider left off the form still stand.
    for rc in flagged.values():
        if rc.lines:
            sold_snapshot.append(_road_snapshot_row(s, rc))

    paid_by_order = {parse_int(p.get("order_id")): to_decimal(p.get("cash_collected")) for p in parent_payments}
    credit_by_order = {parse_int(o.get("order_id")): bool(o.get("is_credit")) for o in (parent_overrides or [])}
    payments_snapshot = []
    overrides_snapshot = []
    for rc in run.receipts:
        if rc.kind != RECEIPT_PARENT or rc.parent_order is None:
            continue
        order = rc.parent_order
        total = _freeze_parent_receipt(s, rc, order, price_override_by)
        if order.status == STATUS_PAID:
            # Prepaid at the counter; the rider collects nothing.
            cash, is_credit = ZERO, False
        else:
            cash = r2(clamp(paid_by_order.get(order.id, ZERO), ZERO, total))
            is_credit = credit_by_order.get(order.id, bool(order.is_on_credit))
            if total > 0 and cash < total * PARENT_CREDIT_RATIO:
                is_credit = True
        rc.cash_collected = cash
        rc.is_on_credit = is_credit
        rc.updated_at = now
        payments_snapshot.append({"order_id": order.id, "cash_collected": str(cash)})
        overrides_snapshot.append({"order_id": order.id, "is_credit": is_credit})

    run.checkin_snapshot = {
        "stockRows": returns,
        "soldRows": sold_snapshot,
        "parentOverrides": overrides_snapshot,
        "parentPayments": payments_snapshot,
    }
    run.status = RUN_CHECKED_IN
    run.checked_in_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="run.checkin",
        entity_type="DeliveryRun",
        entity_id=run.id,
        metadata={"road_sales": len(sold_snapshot), "parents": len(payments_snapshot), "price_override": price_override_by},
    )
    return run


# ---------- Recap ----------
def run_recap(s: "Session", run: DeliveryRun) -> dict[str, Any]:
    """Per product loaded / sold / returned and the difference; any non-zero diff is an issue."""
    names: dict[int, str] = {}
    loaded: dict[int, Decimal] = {}
    for row in run.loadout_snapshot or []:
        pid = int(row["product_id"])
        loaded[pid] = loaded.get(pid, ZERO) + to_decimal(row["qty"])
        names.setdefault(pid, row.get("name") or f"#{pid}")

    parent_sold: dict[int, Decimal] = {}
    for order in run.orders:
        if order.order_code.startswith(ROADSIDE_ORDER_PREFIX):
            continue
        for it in order.items:
            parent_sold[it.product_id] = parent_sold.get(it.product_id, ZERO) + to_decimal(it.qty)
            names.setdefault(it.product_id, it.name)
    # Dispatch took the order items out on top of the extra loadout.
    for pid, qty in parent_sold.items():
        loaded[pid] = loaded.get(pid, ZERO) + qty

    road_sold: dict[int, Decimal] = {}
    for rc in run.receipts:
        if rc.kind != RECEIPT_ROAD:
            continue
        for ln in rc.lines:
            road_sold[ln.product_id] = road_sold.get(ln.product_id, ZERO) + to_decimal(ln.qty)
            names.setdefault(ln.product_id, ln.name)

    returned: dict[int, Decimal] = {}
    moves = (
        s.query(StockMovement)
        .filter(StockMovement.ref_kind == REF_RUN, StockMovement.ref_id == run.id, StockMovement.type == MOVE_RETURN_IN)
        .all()
    )
    if moves:
        for m in moves:
            returned[m.product_id] = returned.get(m.product_id, ZERO) + to_decimal(m.qty)
    else:
        for row in (run.checkin_snapshot or {}).get("stockRows", []):
            pid = int(row["product_id"])
            returned[pid] = returned.get(pid, ZERO) + max(ZERO, to_decimal(row.get("returned")))

    rows = []
    issues = []
    for pid in sorted(set(loaded) | set(parent_sold) | set(road_sold) | set(returned)):
        ld = loaded.get(pid, ZERO)
        sold = parent_sold.get(pid, ZERO) + road_sold.get(pid, ZERO)
        ret = returned.get(pid, ZERO)
        diff = ld - sold - ret
        name = names.get(pid) or f"#{pid}"
        rows.append({"product_id": pid, "name": name, "loaded": ld, "sold": sold, "returned": ret, "diff": diff})
        if abs(diff) > RECAP_EPS:
            issues.append(f"{name} (#{pid}): loaded {ld}, sold {sold}, returned {ret} (diff {diff})")
    return {"rows": rows, "issues": issues, "has_issues": bool(issues)}


# ---------- Remit ----------
def revert_to_dispatched(s: "Session", user: "User", run: DeliveryRun) -> DeliveryRun:
    """Hand the run back to the rider for editing; receipts and snapshot are kept."""
    if run.status != RUN_CHECKED_IN:
        raise ActionError("Only CHECKED_IN runs can be reverted.")
    run.status = RUN_DISPATCHED
    record_event(s, actor=user, action="run.revert_dispatched", entity_type="DeliveryRun", entity_id=run.id)
    return run


def _roadside_order(s: "Session", run: DeliveryRun, rc: RunReceipt, now: datetime, user: "User") -> Order:
    subtotal = r2(rc.frozen_total)
    is_credit = rc.is_on_credit or r2(rc.cash_collected) + MONEY_EPS < subtotal
    order = Order(
        order_code=roadside_order_code(run.id, rc.id),
        channel=CHANNEL_DELIVERY,
        status=STATUS_UNPAID,
        fulfillment_status=FULFILLMENT_DELIVERED,
        customer_id=rc.customer_id,
        customer_name=rc.customer_name,
        deliver_phone=None if rc.customer_id else rc.customer_phone,
        subtotal=subtotal,
        total_before_discount=subtotal,
        is_on_credit=is_credit,
        origin_run_receipt_id=rc.id,
        stock_deducted_at=now,
        dispatched_at=run.dispatched_at or now,
        delivered_at=now,
        printed_at=now,
        expiry_at=now + timedelta(days=ROADSIDE_EXPIRY_DAYS),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    if is_credit:
        order.released_at = now
        order.released_approved_by = user.display_name
    for ln in rc.lines:
        order.items.append(
            OrderItem(
                product_id=ln.product_id,
                name=ln.name,
                qty=to_decimal(ln.qty),
                unit_kind=ln.unit_kind or UNIT_PACK,
                unit_price=r2(ln.unit_price),
                allowed_unit_price=r2(ln.unit_price),
                line_total=r2(ln.line_total),
                price_policy=POLICY_FROZEN_RUN_RECEIPT,
            )
        )
    s.add(order)
    s.flush()
    order.receipt_no = allocate_receipt_no(s)
    run.run_orders.append(DeliveryRunOrder(order_id=order.id, order=order, sequence=len(run.run_orders) + 1))
    return order


def post_remit(s: "Session", user: "User", run: DeliveryRun) -> DeliveryRun:
    """Create roadside orders, return leftover stock and close the run. Safe to repeat."""
    if run.status == RUN_CLOSED:
        return run
    if run.status != RUN_CHECKED_IN:
        raise ActionError("Run must be CHECKED_IN before remit.")
    pending = (
        s.query(ClearanceCase.id)
        .filter(ClearanceCase.run_id == run.id, ClearanceCase.status == CASE_NEEDS_CLEARANCE)
        .count()
    )
    if pending:
        raise ActionError("Cannot post remit: there are pending clearance cases (NEEDS_CLEARANCE).")

    recap = run_recap(s, run)
    if recap["has_issues"]:
        raise ActionError(
            "Cannot post remit: Stock recap mismatch. Revert to Dispatched and re-check rider check-in. "
            + "; ".join(recap["issues"])
        )
    over = [f"{r['name']}: sold {r['sold']} > loaded {r['loaded']}" for r in recap["rows"] if r["sold"] > r["loaded"]]
    if over:
        raise ActionError("Cannot post remit: Sold quantity exceeds loaded. " + "; ".join(over))

    road = [rc for rc in run.receipts if rc.kind == RECEIPT_ROAD and rc.lines and rc.voided_at is None]
    for rc in road:
        has_balance = r2(rc.cash_collected) + MONEY_EPS < r2(rc.frozen_total)
        if (rc.is_on_credit or has_balance) and not rc.customer_id:
            raise ActionError("On-credit / partial payment requires a customer.")

    s.refresh(run, with_for_update=True)
    if run.status != RUN_CHECKED_IN:
        raise ConflictError("Run status changed. Refresh the page.")

    now = datetime.utcnow()
    existing_codes = {
        code
        for (code,) in s.query(Order.order_code)
        .filter(Order.order_code.like(f"{ROADSIDE_ORDER_PREFIX}RUN{run.id}-RR%"))
        .all()
    }
    created = 0
    for rc in road:
        if roadside_order_code(run.id, rc.id) in existing_codes:
            continue
        _roadside_order(s, run, rc, now, user)
        created += 1

    already_returned = (
        s.query(StockMovement.id)
        .filter(StockMovement.ref_kind == REF_RUN, StockMovement.ref_id == run.id, StockMovement.type == MOVE_RETURN_IN)
        .first()
    )
    if not already_returned:
        deltas: StockDeltas = {}
        for row in recap["rows"]:
            if row["returned"] > 0:
                add_delta(deltas, row["product_id"], UNIT_PACK, row["returned"])
        restore_stock(s, deltas, movement_type=MOVE_RETURN_IN, ref_kind=REF_RUN, ref_id=run.id, user_id=user.id)

    for order in run.orders:
        if order.fulfillment_status == FULFILLMENT_DISPATCHED:
            order.fulfillment_status = FULFILLMENT_DELIVERED
            order.delivered_at = now
    run.status = RUN_CLOSED
    run.closed_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="run.remit",
        entity_type="DeliveryRun",
        entity_id=run.id,
        metadata={"run_code": run.run_code, "roadside_orders": created},
    )
    logger.info("run %s closed: %s roadside orders", run.run_code, created)
    return run
