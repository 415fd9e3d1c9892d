from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from app.pos.modules.fleet.models import Employee


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Riders log in as "employee" users linked to their Employee row.
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, unique=True)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )
    employee: Mapped["Employee | None"] = relationship("Employee", foreign_keys=[employee_id], lazy="selectin")

    @property
    def role_keys(self) -> set[str]:
        return {r.key for r in self.roles or []}

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # admin, store_manager, cashier, employee
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class UserBranch(Base):
    __tablename__ = "user_branches"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True)


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module tables refer to entities by type + id string.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "order.settle"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Order"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.pos.modules.catalog.models import Product, StockMovement  # noqa: E402,F401
from app.pos.modules.customers.models import Customer, CustomerAddress, CustomerItemPrice  # noqa: E402,F401
from app.pos.modules.fleet.models import Employee, Vehicle  # noqa: E402,F401
from app.pos.modules.orders.models import Order, OrderItem, Payment, ReceiptCounter  # noqa: E402,F401
from app.pos.modules.dispatch.models import (  # noqa: E402,F401
    DeliveryRun,
    DeliveryRunOrder,
    OverrideLog,
    RunReceipt,
    RunReceiptLine,
)
from app.pos.modules.clearance.models import (  # noqa: E402,F401
    ClearanceCase,
    ClearanceClaim,
    ClearanceDecision,
    CustomerAr,
    CustomerArPayment,
)
from app.pos.modules.cashier_shifts.models import (  # noqa: E402,F401
    CashDrawerTxn,
    CashierCharge,
    CashierChargePayment,
    CashierShift,
    CashierShiftVariance,
)
from app.pos.modules.remit.models import RiderCharge, RiderChargePayment, RiderRunVariance  # noqa: E402,F401
