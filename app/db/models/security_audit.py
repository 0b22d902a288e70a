from __future__ import annotations

from sqlalchemy import String, JSON, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class AuditLogEntry(Base, HasId, HasCreatedAt):
    """Append-only audit trail shared by HTTP, auth, warehouse and compliance events."""

    __tablename__ = "sys_audit_log"

    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(16), nullable=False, default="OPERATIONAL", index=True)
    # COMPLIANCE|SECURITY|OPERATIONAL|ADMINISTRATIVE
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="INFO", index=True)
    # INFO|WARNING|ERROR|CRITICAL
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False, default="system", index=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    warehouse: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    jurisdictions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    frameworks: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    result: Mapped[str] = mapped_column(String(16), nullable=False, default="SUCCESS")  # SUCCESS|FAILURE|PENDING|PARTIAL
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    compliance_flags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=365)

    # Request context
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)


Index("ix_audit_category_time", AuditLogEntry.category, AuditLogEntry.created_at)
