from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

if TYPE_CHECKING:
    from app.pos.modules.catalog.models import Product

PRICE_MODE_FIXED_PRICE = "FIXED_PRICE"
PRICE_MODE_FIXED_DISCOUNT = "FIXED_DISCOUNT"
PRICE_MODE_PERCENT_DISCOUNT = "PERCENT_DISCOUNT"
PRICE_MODES = (PRICE_MODE_FIXED_PRICE, PRICE_MODE_FIXED_DISCOUNT, PRICE_MODE_PERCENT_DISCOUNT)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_last_name", "last_name"),
        Index("idx_customers_phone", "phone"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    alias: Mapped[str | None] = mapped_column(String(128), nullable=True)

    phone: Mapped[str | None] = mapped_column(String(20), nullable=True, unique=True)  # E.164 (+639XXXXXXXXX)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    addresses: Mapped[list["CustomerAddress"]] = relationship(
        "CustomerAddress",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CustomerAddress.id",
    )
    item_prices: Mapped[list["CustomerItemPrice"]] = relationship(
        "CustomerItemPrice",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CustomerItemPrice.id",
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p).strip()

    @property
    def label(self) -> str:
        if self.alias:
            return f"{self.full_name} ({self.alias})"
        return self.full_name


class CustomerAddress(Base):
    __tablename__ = "customer_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(String(64), nullable=True)  # Home, Store, ...
    line1: Mapped[str] = mapped_column(String(255), nullable=False)
    barangay: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    province: Mapped[str | None] = mapped_column(String(128), nullable=True)
    landmark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lat: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    lng: Mapped[Decimal | None] = mapped_column(Numeric(9, 6), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="addresses")

    @property
    def one_line(self) -> str:
        parts = [self.line1, self.barangay, self.city, self.province]
        return ", ".join(p for p in parts if p)


class CustomerItemPrice(Base):
    """Per-customer price rule for one product and unit kind, optionally time-boxed."""

    __tablename__ = "customer_item_prices"
    __table_args__ = (
        UniqueConstraint(
            "customer_id", "product_id", "unit_kind", "starts_at", "ends_at", name="uq_customer_item_price_window"
        ),
        Index("idx_customer_item_prices_lookup", "customer_id", "product_id", "unit_kind", "active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    unit_kind: Mapped[str] = mapped_column(String(16), nullable=False)  # RETAIL, PACK
    mode: Mapped[str] = mapped_column(String(32), nullable=False)  # FIXED_PRICE, FIXED_DISCOUNT, PERCENT_DISCOUNT
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="item_prices")
    product: Mapped["Product"] = relationship("Product", lazy="selectin")
