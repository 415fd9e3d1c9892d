from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

if TYPE_CHECKING:
    from app.pos.modules.fleet.models import Employee, Vehicle
    from app.pos.modules.orders.models import Order

RUN_PLANNED = "PLANNED"
RUN_DISPATCHED = "DISPATCHED"
RUN_CHECKED_IN = "CHECKED_IN"
RUN_CLOSED = "CLOSED"
RUN_CANCELLED = "CANCELLED"
RUN_STATUSES = (RUN_PLANNED, RUN_DISPATCHED, RUN_CHECKED_IN, RUN_CLOSED, RUN_CANCELLED)

RECEIPT_ROAD = "ROAD"
RECEIPT_PARENT = "PARENT"

OVERRIDE_CAPACITY_EXCEED = "CAPACITY_EXCEED"
OVERRIDE_PRICE_BELOW_ALLOWED = "PRICE_BELOW_ALLOWED"
OVERRIDE_MANUAL_RETURN_ADJUST = "MANUAL_RETURN_ADJUST"


def parent_receipt_key(order_id: int) -> str:
    return f"PARENT:{order_id}"


class DeliveryRun(Base):
    __tablename__ = "delivery_runs"
    __table_args__ = (Index("idx_delivery_runs_status", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RUN_PLANNED)
    rider_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id", ondelete="SET NULL"), nullable=True)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)

    # [{product_id, name, qty}] extra stock carried for roadside sales.
    loadout_snapshot: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # What dispatch deducted: {"order_ids": [...], "deltas": {pid: {pack, retail}}}
    dispatch_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # Rider's returns / road sales / parent payments as submitted at check-in.
    checkin_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    rider: Mapped["Employee | None"] = relationship("Employee", lazy="selectin")
    vehicle: Mapped["Vehicle | None"] = relationship("Vehicle", lazy="selectin")
    run_orders: Mapped[list["DeliveryRunOrder"]] = relationship(
        "DeliveryRunOrder",
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DeliveryRunOrder.sequence",
    )
    receipts: Mapped[list["RunReceipt"]] = relationship(
        "RunReceipt", back_populates="run", cascade="all, delete-orphan", lazy="selectin", order_by="RunReceipt.id"
    )

    @property
    def orders(self) -> list["Order"]:
        return [ro.order for ro in self.run_orders]


class DeliveryRunOrder(Base):
    __tablename__ = "delivery_run_orders"

    run_id: Mapped[int] = mapped_column(ForeignKey("delivery_runs.id", ondelete="CASCADE"), primary_key=True)
    # An order rides on one run at a time.
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True, unique=True)
    sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)

    run: Mapped[DeliveryRun] = relationship("DeliveryRun", back_populates="run_orders")
    order: Mapped["Order"] = relationship("Order", lazy="selectin")


class RunReceipt(Base):
    __tablename__ = "run_receipts"
    __table_args__ = (
        UniqueConstraint("run_id", "receipt_key", name="uq_run_receipts_run_key"),
        Index("idx_run_receipts_parent_order", "parent_order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False, default=RECEIPT_ROAD)
    receipt_key: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cash_collected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    is_on_credit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    voided_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    run: Mapped[DeliveryRun] = relationship("DeliveryRun", back_populates="receipts")
    parent_order: Mapped["Order | None"] = relationship("Order", lazy="selectin")
    lines: Mapped[list["RunReceiptLine"]] = relationship(
        "RunReceiptLine", back_populates="receipt", cascade="all, delete-orphan", lazy="selectin", order_by="RunReceiptLine.id"
    )

    @property
    def frozen_total(self) -> Decimal:
        return sum((ln.line_total or Decimal("0") for ln in self.lines), Decimal("0"))


class RunReceiptLine(Base):
    __tablename__ = "run_receipt_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    receipt_id: Mapped[int] = mapped_column(ForeignKey("run_receipts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    receipt: Mapped[RunReceipt] = relationship("RunReceipt", back_populates="lines")


class OverrideLog(Base):
    """Manager overrides that let an action through a guard (price floor, capacity)."""

    __tablename__ = "override_logs"
    __table_args__ = (Index("idx_override_logs_kind_created", "kind", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True, index=True)
    approved_by: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
