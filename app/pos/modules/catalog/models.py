from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.pos.models import Base

UNIT_RETAIL = "RETAIL"
UNIT_PACK = "PACK"
UNIT_KINDS = (UNIT_RETAIL, UNIT_PACK)

MOVE_LOADOUT_OUT = "LOADOUT_OUT"
MOVE_RETURN_IN = "RETURN_IN"
MOVE_ADHOC_SALE_OUT = "ADHOC_SALE_OUT"
MOVE_ADJUST = "ADJUST"
MOVEMENT_TYPES = (MOVE_LOADOUT_OUT, MOVE_RETURN_IN, MOVE_ADHOC_SALE_OUT, MOVE_ADJUST)

REF_ORDER = "ORDER"
REF_RUN = "RUN"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        Index("idx_products_name", "name"),
        Index("idx_products_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)

    # price = per retail unit (e.g. per kg scooped), srp = per sealed pack/sack
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    srp: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    dealer_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    stock: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))  # packs
    packing_stock: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))  # retail units

    packing_size: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, default=Decimal("0"))
    packing_unit: Mapped[str | None] = mapped_column(String(32), nullable=True)  # kg, g, pc ...

    allow_pack_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)  # retail (opened pack) sale allowed
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("idx_stock_movements_ref", "ref_kind", "ref_id"),
        Index("idx_stock_movements_product", "product_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    unit_kind: Mapped[str] = mapped_column(String(16), nullable=False, default=UNIT_PACK)

    ref_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    ref_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
