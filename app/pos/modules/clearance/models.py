from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

if TYPE_CHECKING:
    from app.pos.modules.customers.models import Customer
    from app.pos.modules.dispatch.models import RunReceipt

CASE_NEEDS_CLEARANCE = "NEEDS_CLEARANCE"
CASE_DECIDED = "DECIDED"

ORIGIN_CASHIER = "CASHIER"
ORIGIN_RIDER = "RIDER"

CLAIM_OPEN_BALANCE = "OPEN_BALANCE"
CLAIM_PRICE_BARGAIN = "PRICE_BARGAIN"
CLAIM_OTHER = "OTHER"
CLAIM_TYPES = (CLAIM_OPEN_BALANCE, CLAIM_PRICE_BARGAIN, CLAIM_OTHER)

DECISION_APPROVE = "APPROVE"
DECISION_REJECT = "REJECT"

KIND_APPROVE_OPEN_BALANCE = "APPROVE_OPEN_BALANCE"
KIND_APPROVE_DISCOUNT_OVERRIDE = "APPROVE_DISCOUNT_OVERRIDE"
KIND_APPROVE_HYBRID = "APPROVE_HYBRID"
KIND_REJECT = "REJECT"

AR_OPEN = "OPEN"
AR_PARTIALLY_SETTLED = "PARTIALLY_SETTLED"
AR_SETTLED = "SETTLED"
AR_WAIVED = "WAIVED"
AR_OPEN_STATUSES = (AR_OPEN, AR_PARTIALLY_SETTLED)


class ClearanceCase(Base):
    __tablename__ = "clearance_cases"
    __table_args__ = (
        Index("idx_clearance_cases_status", "status"),
        Index("idx_clearance_cases_run", "run_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # PARENT:<order_id> or ROAD:<receipt_id>; one case per receipt.
    receipt_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=CASE_NEEDS_CLEARANCE)
    origin: Mapped[str] = mapped_column(String(16), nullable=False, default=ORIGIN_RIDER)

    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("delivery_runs.id", ondelete="CASCADE"), nullable=True)
    run_receipt_id: Mapped[int | None] = mapped_column(ForeignKey("run_receipts.id", ondelete="SET NULL"), nullable=True)

    frozen_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    cash_collected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    flagged_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    flagged_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped["Customer | None"] = relationship("Customer", lazy="selectin")
    run_receipt: Mapped["RunReceipt | None"] = relationship("RunReceipt", lazy="selectin")
    claims: Mapped[list["ClearanceClaim"]] = relationship(
        "ClearanceClaim", back_populates="case", cascade="all, delete-orphan", lazy="selectin", order_by="ClearanceClaim.id"
    )
    decisions: Mapped[list["ClearanceDecision"]] = relationship(
        "ClearanceDecision",
        back_populates="case",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ClearanceDecision.id",
    )

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), (self.frozen_total or 0) - (self.cash_collected or 0))

    @property
    def last_decision(self) -> "ClearanceDecision | None":
        return self.decisions[-1] if self.decisions else None


class ClearanceClaim(Base):
    __tablename__ = "clearance_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("clearance_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(24), nullable=False)
    requested_payable: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cash_available: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    case: Mapped[ClearanceCase] = relationship("ClearanceCase", back_populates="claims")


class ClearanceDecision(Base):
    __tablename__ = "clearance_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("clearance_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    override_discount_approved: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    approved_payable: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    ar_balance: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    decided_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    case: Mapped[ClearanceCase] = relationship("ClearanceCase", back_populates="decisions")


class CustomerAr(Base):
    __tablename__ = "customer_ars"
    __table_args__ = (Index("idx_customer_ars_customer_status", "customer_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    clearance_decision_id: Mapped[int | None] = mapped_column(
        ForeignKey("clearance_decisions.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("delivery_runs.id", ondelete="SET NULL"), nullable=True)
    principal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=AR_OPEN)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    payments: Mapped[list["CustomerArPayment"]] = relationship(
        "CustomerArPayment", back_populates="ar", cascade="all, delete-orphan", lazy="selectin", order_by="CustomerArPayment.id"
    )


class CustomerArPayment(Base):
    __tablename__ = "customer_ar_payments"
    __table_args__ = (Index("idx_customer_ar_payments_shift", "shift_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ar_id: Mapped[int] = mapped_column(ForeignKey("customer_ars.id", ondelete="CASCADE"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    ref_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    shift_id: Mapped[int | None] = mapped_column(ForeignKey("cashier_shifts.id", ondelete="SET NULL"), nullable=True)
    cashier_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    ar: Mapped[CustomerAr] = relationship("CustomerAr", back_populates="payments")
