from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pos.models import Base

EMPLOYEE_STAFF = "STAFF"
EMPLOYEE_RIDER = "RIDER"
EMPLOYEE_MANAGER = "MANAGER"
EMPLOYEE_ROLES = (EMPLOYEE_STAFF, EMPLOYEE_RIDER, EMPLOYEE_MANAGER)

VEHICLE_TYPES = ("TRICYCLE", "MOTORCYCLE", "SIDECAR", "MULTICAB", "VAN", "OTHER")


class Vehicle(Base):
    __tablename__ = "vehicles"
    __table_args__ = (UniqueConstraint("name", "type", name="uq_vehicle_name_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="OTHER")
    capacity_units: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))  # kg
    plate_no: Mapped[str | None] = mapped_column(String(32), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.type}, {self.capacity_units:g} kg)"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    alias: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True, unique=True)  # E.164
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=EMPLOYEE_STAFF)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    default_vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    default_vehicle: Mapped[Vehicle | None] = relationship("Vehicle", lazy="selectin")

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return f"{name} ({self.alias})" if self.alias else name
