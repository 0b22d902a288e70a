from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, utcnow


class Supplier(Base, HasId, HasCreatedAt):
    __tablename__ = "auth_supplier"

    email: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    company_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    contact_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")  # ACTIVE|PENDING|SUSPENDED
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="STANDARD")  # STANDARD|PREMIUM|ENTERPRISE

    mfa_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failed_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    warehouse_access = relationship("WarehouseAccess", back_populates="supplier", cascade="all, delete-orphan")


class WarehouseAccess(Base, HasId, HasCreatedAt):
    """Region-scoped grant.

    warehouse is a region (US_WEST, JAPAN, ...) or ALL.
    """
    __tablename__ = "auth_warehouse_access"

    supplier_id: Mapped[str] = mapped_column(String(36), ForeignKey("auth_supplier.id"), index=True, nullable=False)
    warehouse: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="VIEWER")  # ADMIN|MANAGER|OPERATOR|VIEWER
    permissions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    supplier = relationship("Supplier", back_populates="warehouse_access")

    __table_args__ = (
        Index("uq_auth_warehouse_access", "supplier_id", "warehouse", unique=True),
    )


class SupplierSession(Base, HasId, HasCreatedAt):
    __tablename__ = "auth_session"

    supplier_id: Mapped[str] = mapped_column(String(36), ForeignKey("auth_supplier.id"), index=True, nullable=False)
    warehouse: Mapped[str | None] = mapped_column(String(16), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class MfaSecret(Base, HasId, HasCreatedAt):
    __tablename__ = "auth_mfa_secret"

    supplier_id: Mapped[str] = mapped_column(String(36), ForeignKey("auth_supplier.id"), unique=True, index=True, nullable=False)
    secret: Mapped[str] = mapped_column(String(64), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backup_code_hashes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
