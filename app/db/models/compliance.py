"""
MODULE: COMPLIANCE
Regulation check results, the violations they raise, reports and certifications
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class ComplianceCheck(Base, HasId, HasCreatedAt):
    __tablename__ = "cmp_check"

    warehouse: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # INVENTORY|SHIPPING|HANDLING|DOCUMENTATION|SAFETY|DATA_PROCESSING
    product_type: Mapped[str] = mapped_column(String(32), nullable=False)
    supplier_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False)  # COMPLIANT|NON_COMPLIANT
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)  # LOW|MEDIUM|HIGH|CRITICAL
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    next_review_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    violations = relationship("ComplianceViolation", back_populates="check", cascade="all, delete-orphan")


Index("ix_cmp_check_wh_time", ComplianceCheck.warehouse, ComplianceCheck.created_at)


class ComplianceViolation(Base, HasId, HasCreatedAt):
    __tablename__ = "cmp_violation"

    check_id: Mapped[str] = mapped_column(String(36), ForeignKey("cmp_check.id"), nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    warehouse: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    regulation: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # INFO|WARNING|CRITICAL|BLOCKING
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolution: Mapped[str] = mapped_column(Text, nullable=False, default="")
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    responsible_party: Mapped[str] = mapped_column(String(128), nullable=False)
    estimated_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    automatic_fix: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN", index=True)  # OPEN|RESOLVED
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_method: Mapped[str | None] = mapped_column(String(16), nullable=True)  # AUTOMATIC|MANUAL

    check = relationship("ComplianceCheck", back_populates="violations")


class ComplianceReport(Base, HasId, HasCreatedAt):
    __tablename__ = "cmp_report"

    report_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    warehouse: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    score: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=0)
    body: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class Certification(Base, HasId, HasCreatedAt):
    __tablename__ = "cmp_certification"

    supplier_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    warehouse: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
