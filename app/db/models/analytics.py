from __future__ import annotations

from sqlalchemy import String, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class AnalyticsReport(Base, HasId, HasCreatedAt):
    __tablename__ = "ana_report"

    report_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # INVENTORY_SUMMARY|ORDER_SUMMARY|WAREHOUSE_COMPARISON|EXECUTIVE_SUMMARY|COMPLIANCE_SUMMARY
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    format: Mapped[str] = mapped_column(String(8), nullable=False, default="JSON")  # JSON|CSV
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="COMPLETED")
    parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    content: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    rendered: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
