from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

if TYPE_CHECKING:
    from app.pos.modules.dispatch.models import DeliveryRun
    from app.pos.modules.fleet.models import Employee

RV_OPEN = "OPEN"
RV_MANAGER_APPROVED = "MANAGER_APPROVED"
RV_RIDER_ACCEPTED = "RIDER_ACCEPTED"
RV_WAIVED = "WAIVED"
RV_CLOSED = "CLOSED"
RV_DECIDABLE = (RV_OPEN, RV_MANAGER_APPROVED)

RESOLUTION_CHARGE_RIDER = "CHARGE_RIDER"
RESOLUTION_WAIVE = "WAIVE"
RESOLUTION_INFO_ONLY = "INFO_ONLY"
RESOLUTIONS = (RESOLUTION_CHARGE_RIDER, RESOLUTION_WAIVE, RESOLUTION_INFO_ONLY)

RC_OPEN = "OPEN"
RC_PARTIALLY_SETTLED = "PARTIALLY_SETTLED"
RC_SETTLED = "SETTLED"
RC_WAIVED = "WAIVED"
RC_OPEN_STATUSES = (RC_OPEN, RC_PARTIALLY_SETTLED)


class RiderRunVariance(Base):
    """Cash the rider should have handed over for one receipt vs. what the cashier got."""

    __tablename__ = "rider_run_variances"
    __table_args__ = (Index("idx_rider_run_variances_rider_status", "rider_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # One variance per run receipt; remit re-posts update it in place.
    receipt_id: Mapped[int | None] = mapped_column(
        ForeignKey("run_receipts.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    run_id: Mapped[int] = mapped_column(ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    rider_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    shift_id: Mapped[int | None] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True)

    expected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    actual: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # actual - expected
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=RV_OPEN)
    resolution: Mapped[str | None] = mapped_column(String(24), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    manager_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    manager_approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rider_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rider_accepted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    run: Mapped["DeliveryRun"] = relationship("DeliveryRun", lazy="selectin")
    rider: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    charge: Mapped["RiderCharge | None"] = relationship(
        "RiderCharge", back_populates="variance", uselist=False, lazy="selectin"
    )

    @property
    def is_shortage(self) -> bool:
        return (self.variance or 0) < 0


class RiderCharge(Base):
    __tablename__ = "rider_charges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    variance_id: Mapped[int] = mapped_column(
        ForeignKey("rider_run_variances.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    run_id: Mapped[int | None] = mapped_column(ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True)
    rider_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=RC_OPEN)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    variance: Mapped[RiderRunVariance] = relationship("RiderRunVariance", back_populates="charge")
    payments: Mapped[list["RiderChargePayment"]] = relationship(
        "RiderChargePayment",
        back_populates="charge",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="RiderChargePayment.id",
    )


class RiderChargePayment(Base):
    __tablename__ = "rider_charge_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    charge_id: Mapped[int] = mapped_column(ForeignKey("rider_charges.id", ondelete="CASCADE"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default="PAYROLL_DEDUCTION")
    ref_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recorded_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    charge: Mapped[RiderCharge] = relationship("RiderCharge", back_populates="payments")
