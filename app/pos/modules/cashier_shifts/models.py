from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

SHIFT_PENDING_ACCEPT = "PENDING_ACCEPT"
SHIFT_OPEN = "OPEN"
SHIFT_OPENING_DISPUTED = "OPENING_DISPUTED"
SHIFT_SUBMITTED = "SUBMITTED"
SHIFT_RECOUNT_REQUIRED = "RECOUNT_REQUIRED"
SHIFT_FINAL_CLOSED = "FINAL_CLOSED"
# Every status except FINAL_CLOSED keeps the cashier's single shift slot busy.
SHIFT_ACTIVE_STATUSES = (
    SHIFT_PENDING_ACCEPT,
    SHIFT_OPEN,
    SHIFT_OPENING_DISPUTED,
    SHIFT_SUBMITTED,
    SHIFT_RECOUNT_REQUIRED,
)

TXN_CASH_IN = "CASH_IN"
TXN_CASH_OUT = "CASH_OUT"
TXN_DROP = "DROP"

VARIANCE_OPEN = "OPEN"
VARIANCE_MANAGER_APPROVED = "MANAGER_APPROVED"
VARIANCE_WAIVED = "WAIVED"
VARIANCE_CLOSED = "CLOSED"

RESOLUTION_CHARGE_CASHIER = "CHARGE_CASHIER"
RESOLUTION_WAIVE = "WAIVE"
RESOLUTION_INFO_ONLY = "INFO_ONLY"
RESOLUTIONS = (RESOLUTION_CHARGE_CASHIER, RESOLUTION_INFO_ONLY, RESOLUTION_WAIVE)

CHARGE_OPEN = "OPEN"
CHARGE_PARTIALLY_SETTLED = "PARTIALLY_SETTLED"
CHARGE_SETTLED = "SETTLED"
CHARGE_WAIVED = "WAIVED"


class CashierShift(Base):
    __tablename__ = "cashier_shifts"
    __table_args__ = (
        Index("idx_cashier_shifts_cashier_status", "cashier_id", "status"),
        Index(
            "uq_cashier_shifts_active_cashier",
            "cashier_id",
            unique=True,
            postgresql_where=text("status <> 'FINAL_CLOSED'"),
            sqlite_where=text("status <> 'FINAL_CLOSED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cashier_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=SHIFT_PENDING_ACCEPT)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    opened_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    opening_float: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    opening_counted: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    opening_dispute_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    opening_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    opening_verified_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    closing_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    closing_denoms: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    cashier_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    final_closed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cashier = relationship("User", foreign_keys=[cashier_id], lazy="selectin")
    drawer_txns: Mapped[list["CashDrawerTxn"]] = relationship(
        "CashDrawerTxn",
        back_populates="shift",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CashDrawerTxn.id",
    )
    variance: Mapped["CashierShiftVariance | None"] = relationship(
        "CashierShiftVariance", back_populates="shift", uselist=False, lazy="selectin"
    )


class CashDrawerTxn(Base):
    __tablename__ = "cash_drawer_txns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # CASH_IN, CASH_OUT, DROP
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    note: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    shift: Mapped[CashierShift] = relationship("CashierShift", back_populates="drawer_txns")


class CashierShiftVariance(Base):
    __tablename__ = "cashier_shift_variances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shift_id: Mapped[int] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="CASCADE"), nullable=False, unique=True)
    expected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    counted: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # counted - expected; negative = short
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=VARIANCE_OPEN)
    resolution: Mapped[str | None] = mapped_column(String(24), nullable=True)
    paper_ref_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    manager_approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    shift: Mapped[CashierShift] = relationship("CashierShift", back_populates="variance", lazy="selectin")
    charge: Mapped["CashierCharge | None"] = relationship(
        "CashierCharge", back_populates="variance", uselist=False, lazy="selectin"
    )


class CashierCharge(Base):
    __tablename__ = "cashier_charges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    variance_id: Mapped[int] = mapped_column(
        ForeignKey("cashier_shift_variances.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    shift_id: Mapped[int] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="CASCADE"), nullable=False)
    cashier_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=CHARGE_OPEN)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    variance: Mapped[CashierShiftVariance] = relationship("CashierShiftVariance", back_populates="charge")
    payments: Mapped[list["CashierChargePayment"]] = relationship(
        "CashierChargePayment",
        back_populates="charge",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CashierChargePayment.id",
    )


class CashierChargePayment(Base):
    __tablename__ = "cashier_charge_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    charge_id: Mapped[int] = mapped_column(ForeignKey("cashier_charges.id", ondelete="CASCADE"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default="PAYROLL_DEDUCTION")
    ref_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recorded_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    charge: Mapped[CashierCharge] = relationship("CashierCharge", back_populates="payments")
