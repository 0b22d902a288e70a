"""
MODULE: WAREHOUSE NETWORK
Regional FlexVolt warehouses, their staff, and the operations run against them
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, DateTime, Integer, ForeignKey, JSON, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

REGIONS = ("US_WEST", "JAPAN", "EU_GERMANY", "AUSTRALIA")

# Short region codes used in order numbers and access grants.
REGION_CODES = {
    "US_WEST": "US",
    "JAPAN": "JP",
    "EU_GERMANY": "EU",
    "AUSTRALIA": "AU",
}


class Warehouse(Base, HasId, HasCreatedAt):
    __tablename__ = "wh_warehouse"

    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    region: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # US_WEST|JAPAN|EU_GERMANY|AUSTRALIA
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    location: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE", index=True)
    # ACTIVE|INACTIVE|MAINTENANCE

    operations_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    staff = relationship("WarehouseStaff", back_populates="warehouse", cascade="all, delete-orphan")
    operations = relationship("WarehouseOperation", back_populates="warehouse", cascade="all, delete-orphan")

    @property
    def region_code(self) -> str:
        return REGION_CODES.get(self.region, "US")


class WarehouseStaff(Base, HasId, HasCreatedAt):
    __tablename__ = "wh_staff"

    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False, default="ASSOCIATE")
    shift: Mapped[str] = mapped_column(String(16), nullable=False, default="DAY")  # DAY|SWING|NIGHT
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE|ON_LEAVE|INACTIVE
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    warehouse = relationship("Warehouse", back_populates="staff")


class WarehouseOperation(Base, HasId, HasCreatedAt):
    __tablename__ = "wh_operation"

    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # INVENTORY_UPDATE|INVENTORY_SYNC|CROSS_REGION_TRANSFER|RECEIVING|SHIPPING|CYCLE_COUNT|MAINTENANCE
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    # PENDING|IN_PROGRESS|COMPLETED|FAILED
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="NORMAL")
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    warehouse = relationship("Warehouse", back_populates="operations")


Index("ix_wh_operation_wh_time", WarehouseOperation.warehouse_id, WarehouseOperation.created_at)
