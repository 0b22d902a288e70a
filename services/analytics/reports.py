from __future__ import annotations

import csv
import io
import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.audit import json_safe
from app.core.errors import NotFound, ValidationFailed, service_operation
from app.db.models.analytics import AnalyticsReport
from app.db.models.common import naive_utc, utcnow
from app.db.models.compliance import ComplianceCheck, ComplianceViolation
from app.db.models.inventory import InventoryItem
from app.db.models.orders import Order
from app.db.models.warehouse import REGIONS, Warehouse
from services.analytics.engine import warehouse_snapshot
from services.compliance.audit_logger import audit_logger
from services.inventory.service import derive_status

logger = logging.getLogger(__name__)

REPORT_TYPES = (
    "INVENTORY_SUMMARY",
    "ORDER_SUMMARY",
    "WAREHOUSE_COMPARISON",
    "EXECUTIVE_SUMMARY",
    "COMPLIANCE_SUMMARY",
)
FORMATS = ("JSON", "CSV")
FINANCIAL_REPORTS = ("ORDER_SUMMARY", "EXECUTIVE_SUMMARY")

TITLES = {
    "INVENTORY_SUMMARY": "Inventory Summary",
    "ORDER_SUMMARY": "Order Summary",
    "WAREHOUSE_COMPARISON": "Warehouse Comparison",
    "EXECUTIVE_SUMMARY": "Executive Summary",
    "COMPLIANCE_SUMMARY": "Compliance Summary",
}


def _period(parameters: dict) -> tuple[datetime, datetime]:
    end, start = parameters.get("end"), parameters.get("start")
    if isinstance(end, str):
        end = datetime.fromisoformat(end)
    if isinstance(start, str):
        start = datetime.fromisoformat(start)
    end = naive_utc(end) or utcnow()
    start = naive_utc(start) or end - timedelta(days=30)
    if start >= end:
        raise ValidationFailed("start must be before end")
    return start, end


def _warehouses(db: Session, parameters: dict) -> list[Warehouse]:
    q = db.query(Warehouse)
    if parameters.get("warehouse_ids"):
        q = q.filter(Warehouse.id.in_(parameters["warehouse_ids"]))
    return q.order_by(Warehouse.code).all()


def inventory_summary(db: Session, parameters: dict) -> dict:
    rows = []
    statuses: Counter = Counter()
    total_value = 0.0
    for wh in _warehouses(db, parameters):
        for it in db.query(InventoryItem).filter(InventoryItem.warehouse_id == wh.id).all():
            status = derive_status(it.quantity, it.min_stock_level, it.max_stock_level)
            value = round(it.quantity * float(it.unit_cost or 0), 2)
            statuses[status] += 1
            total_value += value
            rows.append({
                "warehouse": wh.code,
                "sku": it.product.sku if it.product else it.product_id,
                "quantity": it.quantity,
                "reserved": it.reserved_quantity,
                "available": it.available_quantity,
                "status": status,
                "value": value,
            })
    return {
        "summary": {
            "total_items": len(rows),
            "total_units": sum(r["quantity"] for r in rows),
            "total_value": round(total_value, 2),
            "by_status": dict(statuses),
        },
        "rows": rows,
    }


def order_summary(db: Session, parameters: dict) -> dict:
    start, end = _period(parameters)
    q = db.query(Order).filter(Order.created_at >= start, Order.created_at <= end)
    if parameters.get("warehouse_ids"):
        q = q.filter(Order.warehouse_id.in_(parameters["warehouse_ids"]))
    orders = q.all()

    by_status: dict[str, dict] = {}
    for o in orders:
        row = by_status.setdefault(o.status, {"status": o.status, "orders": 0, "revenue": 0.0})
        row["orders"] += 1
        row["revenue"] = round(row["revenue"] + float(o.total), 2)
    billable = [o for o in orders if o.status != "CANCELLED"]
    revenue = round(sum(float(o.total) for o in billable), 2)
    return {
        "summary": {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_orders": len(orders),
            "revenue": revenue,
            "average_order_value": round(revenue / len(billable), 2) if billable else 0.0,
            "by_discount_tier": dict(Counter(o.discount_tier or "NONE" for o in orders)),
        },
        "rows": sorted(by_status.values(), key=lambda r: r["status"]),
    }


def warehouse_comparison(db: Session, parameters: dict) -> dict:
    start, end = _period(parameters)
    rows = [warehouse_snapshot(db, wh, start, end) for wh in _warehouses(db, parameters)]
    ranked = sorted(rows, key=lambda r: r["revenue"], reverse=True)
    return {
        "summary": {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "warehouses": len(rows),
            "top_performer": ranked[0]["code"] if ranked and ranked[0]["revenue"] else None,
            "average_utilization": round(sum(r["utilization"] for r in rows) / len(rows), 2) if rows else 0.0,
        },
        "rows": rows,
    }


def compliance_summary(db: Session, parameters: dict) -> dict:
    start, end = _period(parameters)
    rows = []
    for region in REGIONS:
        checks = (
            db.query(ComplianceCheck)
            .filter(ComplianceCheck.warehouse == region, ComplianceCheck.created_at >= start,
                    ComplianceCheck.created_at <= end)
            .all()
        )
        open_violations = (
            db.query(ComplianceViolation)
            .filter(ComplianceViolation.warehouse == region, ComplianceViolation.status == "OPEN")
            .count()
        )
        passed = sum(1 for c in checks if c.status == "COMPLIANT")
        rows.append({
            "region": region,
            "checks": len(checks),
            "passed": passed,
            "compliance_rate": round(passed / len(checks) * 100, 2) if checks else 100.0,
            "open_violations": open_violations,
        })
    total = sum(r["checks"] for r in rows)
    passed = sum(r["passed"] for r in rows)
    return {
        "summary": {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_checks": total,
            "compliance_rate": round(passed / total * 100, 2) if total else 100.0,
            "open_violations": sum(r["open_violations"] for r in rows),
        },
        "rows": rows,
    }


def executive_summary(db: Session, parameters: dict) -> dict:
    orders = order_summary(db, parameters)["summary"]
    inventory = inventory_summary(db, parameters)["summary"]
    compliance = compliance_summary(db, parameters)["summary"]
    kpis = {
        "revenue": orders["revenue"],
        "orders": orders["total_orders"],
        "average_order_value": orders["average_order_value"],
        "inventory_value": inventory["total_value"],
        "low_stock_items": inventory["by_status"].get("LOW_STOCK", 0),
        "out_of_stock_items": inventory["by_status"].get("OUT_OF_STOCK", 0),
        "compliance_rate": compliance["compliance_rate"],
        "open_violations": compliance["open_violations"],
    }
    highlights = []
    if kpis["out_of_stock_items"]:
        highlights.append(f"{kpis['out_of_stock_items']} items are out of stock")
    if kpis["open_violations"]:
        highlights.append(f"{kpis['open_violations']} compliance violations remain open")
    if compliance["compliance_rate"] < 90:
        highlights.append("Compliance rate is below 90%")
    return {
        "summary": {"period": orders["period"], "kpis": kpis, "highlights": highlights},
        "rows": [{"kpi": k, "value": v} for k, v in kpis.items()],
    }


BUILDERS = {
    "INVENTORY_SUMMARY": inventory_summary,
    "ORDER_SUMMARY": order_summary,
    "WAREHOUSE_COMPARISON": warehouse_comparison,
    "EXECUTIVE_SUMMARY": executive_summary,
    "COMPLIANCE_SUMMARY": compliance_summary,
}


def to_csv(rows: list[dict]) -> str:
    buf = io.StringIO()
    if rows:
        writer = csv.DictWriter(buf, fieldnames=list(rows[0].keys()), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    return buf.getvalue()


def report_out(r: AnalyticsReport, include_content: bool = True) -> dict:
    out = {
        "id": r.id,
        "report_type": r.report_type,
        "title": r.title,
        "format": r.format,
        "status": r.status,
        "parameters": r.parameters,
        "generated_by": r.generated_by,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }
    if include_content:
        out["content"] = r.content
        if r.format == "CSV":
            out["rendered"] = r.rendered
    return out


@service_operation("Failed to generate report")
def generate_report(db: Session, *, report_type: str, parameters: dict | None = None, format: str = "JSON",
                    user_id: str | None = None) -> dict:
    if report_type not in BUILDERS:
        raise ValidationFailed(f"Unknown report type: {report_type}")
    fmt = (format or "JSON").upper()
    if fmt not in FORMATS:
        raise ValidationFailed(f"Unsupported format: {format}")
    parameters = parameters or {}

    content = json_safe(BUILDERS[report_type](db, parameters))
    report = AnalyticsReport(
        report_type=report_type,
        title=parameters.get("title") or f"{TITLES[report_type]} {utcnow():%Y-%m-%d}",
        format=fmt,
        status="COMPLETED",
        parameters=json_safe(parameters),
        content=content,
        rendered=to_csv(content["rows"]) if fmt == "CSV" else None,
        generated_by=user_id,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info("report %s generated: %s (%s)", report.id, report_type, fmt)
    audit_logger.log_data_access(
        actor=user_id,
        data_type="FINANCIAL" if report_type in FINANCIAL_REPORTS else "OPERATIONAL",
        operation="EXPORT",
        record_count=len(content["rows"]),
        resource_id=report.id,
        details={"report_type": report_type, "format": fmt},
    )
    return report_out(report)


@service_operation("Failed to load report")
def get_report(db: Session, report_id: str) -> dict:
    report = db.query(AnalyticsReport).filter(AnalyticsReport.id == report_id).first()
    if not report:
        raise NotFound("Report not found")
    return report_out(report)


@service_operation("Failed to list reports")
def list_reports(db: Session, *, report_type: str | None = None, limit: int = 20) -> list[dict]:
    q = db.query(AnalyticsReport)
    if report_type:
        q = q.filter(AnalyticsReport.report_type == report_type)
    return [report_out(r, include_content=False) for r in q.order_by(AnalyticsReport.created_at.desc()).limit(limit)]
