"""
MODULE: ORDER MANAGEMENT
Customers, orders with their pricing breakdown, and the tracking timeline
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, utcnow

ORDER_STATUSES = ("PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")


class Customer(Base, HasId, HasCreatedAt):
    __tablename__ = "ord_customer"

    email: Mapped[str] = mapped_column(String(256), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    company: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_type: Mapped[str] = mapped_column(String(32), nullable=False, default="CONTRACTOR")
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Order(Base, HasId, HasCreatedAt):
    __tablename__ = "ord_order"

    order_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("ord_customer.id"), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(36), ForeignKey("wh_warehouse.id"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="NORMAL")
    shipping_method: Mapped[str] = mapped_column(String(16), nullable=False, default="STANDARD")
    # STANDARD|EXPEDITED|EXPRESS|OVERNIGHT|PICKUP
    shipping_address: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Pricing breakdown
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    discount_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    discount_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    customer = relationship("Customer")
    warehouse = relationship("Warehouse")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    events = relationship(
        "OrderTrackingEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderTrackingEvent.occurred_at",
    )


Index("ix_ord_order_status_time", Order.status, Order.created_at)


class OrderItem(Base, HasId, HasCreatedAt):
    __tablename__ = "ord_order_item"

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("ord_order.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("inv_product.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class OrderTrackingEvent(Base, HasId, HasCreatedAt):
    """Append-only order timeline."""
    __tablename__ = "ord_tracking_event"

    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("ord_order.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    description: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="SYSTEM")  # SYSTEM|CARRIER|USER
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="events")
