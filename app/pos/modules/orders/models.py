from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

if TYPE_CHECKING:
    from app.pos.modules.customers.models import Customer

CHANNEL_PICKUP = "PICKUP"
CHANNEL_DELIVERY = "DELIVERY"
CHANNELS = (CHANNEL_PICKUP, CHANNEL_DELIVERY)

STATUS_DRAFT = "DRAFT"
STATUS_UNPAID = "UNPAID"
STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
STATUS_PAID = "PAID"
STATUS_CANCELLED = "CANCELLED"
STATUS_VOIDED = "VOIDED"
OPEN_STATUSES = (STATUS_UNPAID, STATUS_PARTIALLY_PAID)

FULFILLMENT_NEW = "NEW"
FULFILLMENT_PICKING = "PICKING"
FULFILLMENT_PACKING = "PACKING"
FULFILLMENT_STAGED = "STAGED"
FULFILLMENT_DISPATCHED = "DISPATCHED"
FULFILLMENT_DELIVERED = "DELIVERED"
FULFILLMENT_ON_HOLD = "ON_HOLD"

PAY_CASH = "CASH"
PAY_FUND_TRANSFER = "FUND_TRANSFER"
PAY_CARD = "CARD"
PAY_SPLIT = "SPLIT"
PAY_INTERNAL_CREDIT = "INTERNAL_CREDIT"

POLICY_BASE = "BASE"
POLICY_PER_ITEM = "PER_ITEM"
POLICY_FROZEN_RUN_RECEIPT = "FROZEN:RUN_RECEIPT_LINE"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_status", "status"),
        Index("idx_orders_customer", "customer_id"),
        Index("idx_orders_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default=CHANNEL_PICKUP)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_UNPAID)
    fulfillment_status: Mapped[str] = mapped_column(String(16), nullable=False, default=FULFILLMENT_NEW)

    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)  # walk-in / snapshot label

    deliver_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliver_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    deliver_landmark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deliver_lat: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    deliver_lng: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_before_discount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    is_on_credit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    receipt_no: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    print_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    printed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Cashier claim on the order while it is on someone's screen.
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    locked_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    released_approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stock_deducted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Roadside orders are materialized from a run's ROAD receipt at remit time.
    # Plain id (no FK): run_receipts already points back at orders.
    origin_run_receipt_id: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)

    expiry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer: Mapped["Customer | None"] = relationship("Customer", lazy="selectin")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Payment.id",
    )

    @property
    def customer_label(self) -> str:
        if self.customer is not None:
            return self.customer.label
        return self.customer_name or "Walk-in"


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    unit_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)  # RETAIL, PACK; null on legacy rows
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Frozen at settlement (or at remit for roadside orders).
    line_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    allowed_unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    price_policy: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    order: Mapped[Order] = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_order", "order_id"),
        Index("idx_payments_shift", "shift_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default=PAY_CASH)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tendered: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    change: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    ref_no: Mapped[str | None] = mapped_column(String(128), nullable=True)

    shift_id: Mapped[int | None] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True)
    cashier_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    order: Mapped[Order] = relationship("Order", back_populates="payments")


class ReceiptCounter(Base):
    """Singleton row (id=1) holding the last receipt sequence number."""

    __tablename__ = "receipt_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
