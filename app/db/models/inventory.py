"""
MODULE: INVENTORY
Per-warehouse stock rows, the movement ledger, threshold alerts and transfers
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

PRODUCT_TYPES = ("FLEXVOLT_6AH", "FLEXVOLT_9AH", "FLEXVOLT_15AH", "ACCESSORIES", "CHARGERS")


class Product(Base, HasId, HasCreatedAt):
    __tablename__ = "inv_product"

    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="BATTERIES", index=True)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False, default="FLEXVOLT_6AH")
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    weight_kg: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class InventoryItem(Base, HasId, HasCreatedAt):
    """Stock of one product in one warehouse.

    available_quantity is derived from quantity and reserved_quantity and is
    never stored.
    """
    __tablename__ = "inv_item"

    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("inv_product.id"), nullable=False, index=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    min_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_point: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    location: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="IN_STOCK", index=True)
    # IN_STOCK|LOW_STOCK|OUT_OF_STOCK|OVERSTOCK
    last_movement: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    warehouse = relationship("Warehouse")
    product = relationship("Product")

    __table_args__ = (
        Index("uq_inv_item_wh_product", "warehouse_id", "product_id", unique=True),
    )

    @property
    def available_quantity(self) -> int:
        return (self.quantity or 0) - (self.reserved_quantity or 0)


class InventoryMovement(Base, HasId, HasCreatedAt):
    """Append-only ledger; quantity is the signed delta."""
    __tablename__ = "inv_movement"

    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("inv_product.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    # ADJUSTMENT|CYCLE_COUNT|DAMAGE|SHRINKAGE|RETURN|TRANSFER|RECEIVING|SHIPPING|SYNC|IMPORT|MANUAL
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    reference: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    product = relationship("Product")


Index("ix_inv_movement_wh_time", InventoryMovement.warehouse_id, InventoryMovement.created_at)


class InventoryAlert(Base, HasId, HasCreatedAt):
    __tablename__ = "inv_alert"

    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("inv_product.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # LOW_STOCK|OUT_OF_STOCK|OVERSTOCK|REORDER
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # LOW|MEDIUM|HIGH|CRITICAL
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    current_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    threshold_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suggested_order_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    product = relationship("Product")


class InventoryTransfer(Base, HasId, HasCreatedAt):
    __tablename__ = "inv_transfer"

    from_warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    to_warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("inv_product.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="NORMAL")  # LOW|NORMAL|HIGH|URGENT
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    # PENDING|IN_TRANSIT|COMPLETED|CANCELLED
    expected_delivery: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
