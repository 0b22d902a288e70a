from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed, service_operation
from app.core.security import Grant, can
from app.db.models.common import naive_utc, utcnow
from app.db.models.compliance import ComplianceCheck
from app.db.models.inventory import InventoryItem
from app.db.models.warehouse import REGIONS, Warehouse, WarehouseOperation, WarehouseStaff
from app.events.bus import publish
from services.inventory.service import derive_status

logger = logging.getLogger(__name__)

WAREHOUSE_STATUSES = ("ACTIVE", "INACTIVE", "MAINTENANCE")
OPERATION_TYPES = (
    "INVENTORY_UPDATE",
    "INVENTORY_SYNC",
    "CROSS_REGION_TRANSFER",
    "RECEIVING",
    "SHIPPING",
    "CYCLE_COUNT",
    "MAINTENANCE",
)
# Handed to background processing through the outbox.
QUEUED_OPERATION_TYPES = ("INVENTORY_SYNC", "CROSS_REGION_TRANSFER")
OPERATION_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED", "FAILED")
STAFF_STATUSES = ("ACTIVE", "ON_LEAVE", "INACTIVE")
SORT_FIELDS = ("name", "code", "region", "capacity", "created_at")

SCORE_WEIGHTS = {
    "operations": 0.25,
    "inventory": 0.25,
    "staff": 0.2,
    "compliance": 0.2,
    "capacity": 0.1,
}


def current_capacity(db: Session, warehouse_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(InventoryItem.quantity), 0))
        .filter(InventoryItem.warehouse_id == warehouse_id)
        .scalar()
    )
    return int(total or 0)


def utilization(current: int, capacity: int) -> float:
    return round(current / capacity * 100, 2) if capacity else 0.0


def warehouse_out(wh: Warehouse) -> dict:
    return {
        "id": wh.id,
        "code": wh.code,
        "name": wh.name,
        "region": wh.region,
        "region_code": wh.region_code,
        "country": wh.country,
        "location": wh.location,
        "timezone": wh.timezone,
        "currency": wh.currency,
        "capacity": wh.capacity,
        "status": wh.status,
        "operations_count": wh.operations_count,
        "last_activity": wh.last_activity.isoformat() if wh.last_activity else None,
    }


def operation_out(op: WarehouseOperation) -> dict:
    return {
        "id": op.id,
        "warehouse_id": op.warehouse_id,
        "type": op.type,
        "status": op.status,
        "priority": op.priority,
        "user_id": op.user_id,
        "details": op.details or {},
        "error": op.error,
        "created_at": op.created_at.isoformat() if op.created_at else None,
        "completed_at": op.completed_at.isoformat() if op.completed_at else None,
    }


def staff_out(s: WarehouseStaff) -> dict:
    return {"id": s.id, "name": s.name, "role": s.role, "shift": s.shift, "status": s.status, "active": s.active}


def _get(db: Session, warehouse_id: str) -> Warehouse:
    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh:
        raise NotFound(f"Warehouse not found: {warehouse_id}")
    return wh


def _check(access: Iterable[Grant], perm: str, region: str) -> None:
    if not can(access, perm, region):
        raise PermissionDenied(f"{perm} not granted for {region}")


@service_operation("Failed to fetch warehouses")
def list_warehouses(
    db: Session,
    *,
    region: str | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "name",
    sort_order: str = "asc",
) -> dict:
    if page < 1:
        raise ValidationFailed("page must be >= 1")
    if not 1 <= limit <= 100:
        raise ValidationFailed("limit must be between 1 and 100")
    if region and region not in REGIONS:
        raise ValidationFailed(f"Unknown region: {region}")
    if sort_by not in SORT_FIELDS:
        raise ValidationFailed(f"Cannot sort by {sort_by}")

    q = db.query(Warehouse)
    if region:
        q = q.filter(Warehouse.region == region)
    if status:
        q = q.filter(Warehouse.status == status)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(
            func.lower(Warehouse.name).like(like),
            func.lower(Warehouse.location).like(like),
            func.lower(Warehouse.code).like(like),
        ))

    total = q.count()
    col = getattr(Warehouse, sort_by)
    rows = (
        q.order_by(col.desc() if sort_order == "desc" else col.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    stats = (
        db.query(Warehouse.region, func.count(Warehouse.id), func.coalesce(func.sum(Warehouse.capacity), 0))
        .filter(Warehouse.status == "ACTIVE")
        .group_by(Warehouse.region)
        .all()
    )
    logger.info("Fetched %s of %s warehouses", len(rows), total)
    return {
        "warehouses": [warehouse_out(w) for w in rows],
        "total": total,
        "page": page,
        "has_more": page * limit < total,
        "metadata": {
            "regions": sorted(r for r, _, _ in stats),
            "total_capacity": int(sum(cap for _, _, cap in stats)),
            "active_warehouses": int(sum(n for _, n, _ in stats)),
        },
    }


@service_operation("Failed to fetch warehouse")
def get_warehouse(db: Session, warehouse_id: str) -> dict:
    wh = _get(db, warehouse_id)
    since = utcnow() - timedelta(hours=24)
    ops = (
        db.query(WarehouseOperation)
        .filter(WarehouseOperation.warehouse_id == wh.id, WarehouseOperation.created_at >= since)
        .order_by(WarehouseOperation.created_at.desc())
        .limit(10)
        .all()
    )
    cur = current_capacity(db, wh.id)
    return {
        **warehouse_out(wh),
        "current_capacity": cur,
        "capacity_utilization": utilization(cur, wh.capacity),
        "staff": [staff_out(s) for s in wh.staff if s.active],
        "recent_operations": [operation_out(o) for o in ops],
    }


@service_operation("Failed to create warehouse")
def create_warehouse(db: Session, *, data: dict, access: Iterable[Grant], user_id: str | None) -> dict:
    if data.get("region") not in REGIONS:
        raise ValidationFailed(f"Unknown region: {data.get('region')}")
    _check(access, "MANAGE_WAREHOUSE", data["region"])
    if int(data.get("capacity") or 0) < 0:
        raise ValidationFailed("Capacity cannot be negative")
    if db.query(Warehouse).filter(Warehouse.code == data["code"]).first():
        raise Conflict(f"Warehouse code already exists: {data['code']}")

    wh = Warehouse(**data)
    db.add(wh)
    db.flush()
    audit(db, actor=user_id or "system", action="warehouse.create", resource_type="warehouse",
          resource_id=wh.id, details=data, category="ADMINISTRATIVE", warehouse=wh.region,
          retention_days=365, commit=False)
    db.commit()
    db.refresh(wh)
    logger.info("Created warehouse %s (%s)", wh.code, wh.region)
    return warehouse_out(wh)


@service_operation("Failed to update warehouse")
def update_warehouse(db: Session, warehouse_id: str, *, changes: dict, access: Iterable[Grant],
                     user_id: str | None) -> dict:
    wh = _get(db, warehouse_id)
    _check(access, "MANAGE_WAREHOUSE", wh.region)
    if "region" in changes and changes["region"] not in REGIONS:
        raise ValidationFailed(f"Unknown region: {changes['region']}")
    if changes.get("region", wh.region) != wh.region:
        _check(access, "MANAGE_WAREHOUSE", changes["region"])
    if "status" in changes and changes["status"] not in WAREHOUSE_STATUSES:
        raise ValidationFailed(f"Unknown status: {changes['status']}")
    if "code" in changes and changes["code"] != wh.code:
        if db.query(Warehouse).filter(Warehouse.code == changes["code"]).first():
            raise Conflict(f"Warehouse code already exists: {changes['code']}")

    diff = []
    for field, value in changes.items():
        old = getattr(wh, field)
        if old != value:
            diff.append({"field": field, "old": old, "new": value})
            setattr(wh, field, value)
    audit(db, actor=user_id or "system", action="warehouse.update", resource_type="warehouse",
          resource_id=wh.id, details={"changes": diff}, category="ADMINISTRATIVE", warehouse=wh.region,
          retention_days=365, commit=False)
    db.commit()
    db.refresh(wh)
    return warehouse_out(wh)


@service_operation("Failed to add staff")
def add_staff(db: Session, warehouse_id: str, *, name: str, access: Iterable[Grant], role: str = "ASSOCIATE",
              shift: str = "DAY", status: str = "ACTIVE") -> dict:
    if status not in STAFF_STATUSES:
        raise ValidationFailed(f"Unknown staff status: {status}")
    wh = _get(db, warehouse_id)
    _check(access, "MANAGE_WAREHOUSE", wh.region)
    s = WarehouseStaff(warehouse_id=wh.id, name=name, role=role, shift=shift, status=status,
                       active=status != "INACTIVE")
    db.add(s)
    db.commit()
    db.refresh(s)
    return staff_out(s)


@service_operation("Failed to list staff")
def list_staff(db: Session, warehouse_id: str) -> list[dict]:
    wh = _get(db, warehouse_id)
    return [staff_out(s) for s in sorted(wh.staff, key=lambda s: s.name)]


@service_operation("Failed to create warehouse operation")
def create_operation(
    db: Session,
    warehouse_id: str,
    *,
    type: str,
    access: Iterable[Grant],
    user_id: str | None,
    details: dict | None = None,
    priority: str = "NORMAL",
) -> dict:
    if type not in OPERATION_TYPES:
        raise ValidationFailed(f"Unknown operation type: {type}")
    wh = _get(db, warehouse_id)
    _check(access, "UPDATE_INVENTORY", wh.region)
    if wh.status != "ACTIVE":
        raise ValidationFailed(f"Cannot create operation in inactive warehouse: {warehouse_id}")

    now = utcnow()
    op = WarehouseOperation(
        warehouse_id=wh.id,
        type=type,
        status="PENDING",
        priority=priority,
        user_id=user_id,
        details={**(details or {}), "region": wh.region, "initiated_by": user_id, "initiated_at": now.isoformat()},
    )
    db.add(op)
    db.flush()
    wh.last_activity = now
    wh.operations_count = (wh.operations_count or 0) + 1

    audit(db, actor=user_id or "system", action="OPERATION_CREATED", resource_type="warehouse_operation",
          resource_id=op.id, details={"operation_type": type, "operation_id": op.id, "region": wh.region},
          warehouse=wh.region, commit=False)
    if type in QUEUED_OPERATION_TYPES:
        publish(db, "WarehouseOperationQueued", {"operation_id": op.id, "warehouse_id": wh.id, "type": type})
    db.commit()
    db.refresh(op)
    logger.info("Warehouse operation %s (%s) created in %s", op.id, type, wh.code)
    return operation_out(op)


@service_operation("Failed to update warehouse operation")
def update_operation_status(db: Session, operation_id: str, *, status: str, access: Iterable[Grant],
                            error: str | None = None, user_id: str | None = None) -> dict:
    if status not in OPERATION_STATUSES:
        raise ValidationFailed(f"Unknown operation status: {status}")
    op = db.query(WarehouseOperation).filter(WarehouseOperation.id == operation_id).first()
    if not op:
        raise NotFound("Operation not found")
    _check(access, "UPDATE_INVENTORY", op.warehouse.region)
    if op.status in ("COMPLETED", "FAILED"):
        raise ValidationFailed(f"Operation already {op.status.lower()}")

    op.status = status
    if status == "COMPLETED":
        op.completed_at = utcnow()
    if status == "FAILED":
        op.error = error or "Unknown error"
    audit(db, actor=user_id or "system", action="OPERATION_STATUS_CHANGED", resource_type="warehouse_operation",
          resource_id=op.id, details={"status": status, "error": error}, commit=False)
    db.commit()
    db.refresh(op)
    return operation_out(op)


def _operations_metrics(db: Session, warehouse_id: str, start: datetime, end: datetime) -> dict:
    ops = (
        db.query(WarehouseOperation)
        .filter(
            WarehouseOperation.warehouse_id == warehouse_id,
            WarehouseOperation.created_at >= start,
            WarehouseOperation.created_at <= end,
        )
        .all()
    )
    completed = [o for o in ops if o.status == "COMPLETED"]
    failed = [o for o in ops if o.status == "FAILED"]
    durations = [
        (o.completed_at - o.created_at).total_seconds() / 60
        for o in completed if o.completed_at and o.created_at
    ]
    total = len(ops)
    return {
        "total_operations": total,
        "completed_operations": len(completed),
        "failed_operations": len(failed),
        "success_rate": round(len(completed) / total * 100, 2) if total else 100.0,
        "average_completion_minutes": round(sum(durations) / len(durations), 2) if durations else 0.0,
        "score": max(0.0, 100 - len(failed) / total * 100) if total else 100.0,
    }


def _inventory_metrics(db: Session, warehouse_id: str) -> dict:
    items = db.query(InventoryItem).filter(InventoryItem.warehouse_id == warehouse_id).all()
    statuses = [derive_status(i.quantity, i.min_stock_level, i.max_stock_level) for i in items]
    total = len(items)
    low = statuses.count("LOW_STOCK")
    out = statuses.count("OUT_OF_STOCK")
    return {
        "total_items": total,
        "in_stock_items": statuses.count("IN_STOCK"),
        "low_stock_items": low,
        "out_of_stock_items": out,
        "overstock_items": statuses.count("OVERSTOCK"),
        "stock_accuracy": round((total - out) / total * 100, 2) if total else 100.0,
        "score": max(0.0, 100 - (low + out * 2) / total * 100) if total else 100.0,
    }


def _staff_metrics(db: Session, warehouse_id: str) -> dict:
    staff = db.query(WarehouseStaff).filter(WarehouseStaff.warehouse_id == warehouse_id, WarehouseStaff.active == True).all()  # noqa: E712
    total = len(staff)
    active = sum(1 for s in staff if s.status == "ACTIVE")
    return {
        "total_staff": total,
        "active_staff": active,
        "on_leave_staff": sum(1 for s in staff if s.status == "ON_LEAVE"),
        "score": active / total * 100 if total else 100.0,
    }


def _compliance_metrics(db: Session, region: str, start: datetime, end: datetime) -> dict:
    checks = (
        db.query(ComplianceCheck)
        .filter(ComplianceCheck.warehouse == region, ComplianceCheck.created_at >= start, ComplianceCheck.created_at <= end)
        .all()
    )
    total = len(checks)
    passed = sum(1 for c in checks if c.status == "COMPLIANT")
    rate = round(passed / total * 100, 2) if total else 100.0
    return {
        "total_checks": total,
        "passed_checks": passed,
        "failed_checks": total - passed,
        "compliance_rate": rate,
        "score": rate,
    }


def _capacity_metrics(db: Session, wh: Warehouse) -> dict:
    cur = current_capacity(db, wh.id)
    util = utilization(cur, wh.capacity)
    return {
        "total_capacity": wh.capacity,
        "current_capacity": cur,
        "available_capacity": wh.capacity - cur,
        "utilization_rate": util,
        "score": max(0.0, 100 - abs(util - 75)),
    }


def overall_score(scores: dict[str, float]) -> int:
    return round(sum(scores[k] * w for k, w in SCORE_WEIGHTS.items()))


def _trend(current: float, previous: float) -> str:
    if not previous:
        return "0%" if not current else "+100%"
    change = (current - previous) / previous * 100
    return f"{change:+.0f}%"


def recommendations_for(metrics: dict) -> list[dict]:
    recs = []
    if metrics["inventory"]["score"] < 80:
        recs.append({
            "type": "INVENTORY",
            "priority": "HIGH",
            "message": "Review inventory management practices to reduce low/out-of-stock items",
            "action": "OPTIMIZE_INVENTORY",
        })
    if metrics["capacity"]["utilization_rate"] > 90:
        recs.append({
            "type": "CAPACITY",
            "priority": "MEDIUM",
            "message": "Consider expanding warehouse capacity or optimizing storage layout",
            "action": "CAPACITY_PLANNING",
        })
    if metrics["operations"]["success_rate"] < 95:
        recs.append({
            "type": "OPERATIONS",
            "priority": "HIGH",
            "message": "Investigate and address recurring operation failures",
            "action": "PROCESS_IMPROVEMENT",
        })
    return recs


@service_operation("Failed to compute warehouse performance metrics")
def get_performance_metrics(db: Session, warehouse_id: str, *, start: datetime | None = None,
                            end: datetime | None = None) -> dict:
    wh = _get(db, warehouse_id)
    end = naive_utc(end) or utcnow()
    start = naive_utc(start) or end - timedelta(days=30)
    if start >= end:
        raise ValidationFailed("start must be before end")

    metrics = {
        "operations": _operations_metrics(db, wh.id, start, end),
        "inventory": _inventory_metrics(db, wh.id),
        "staff": _staff_metrics(db, wh.id),
        "compliance": _compliance_metrics(db, wh.region, start, end),
        "capacity": _capacity_metrics(db, wh),
    }
    overall = overall_score({k: v["score"] for k, v in metrics.items()})

    window = end - start
    prev_ops = _operations_metrics(db, wh.id, start - window, start)
    prev_cmp = _compliance_metrics(db, wh.region, start - window, start)

    return {
        "warehouse_id": wh.id,
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        **metrics,
        "overall_score": overall,
        "trends": {
            "operations_trend": _trend(metrics["operations"]["total_operations"], prev_ops["total_operations"]),
            "success_rate_trend": _trend(metrics["operations"]["success_rate"], prev_ops["success_rate"]),
            "compliance_trend": _trend(metrics["compliance"]["compliance_rate"], prev_cmp["compliance_rate"]),
        },
        "recommendations": recommendations_for(metrics),
    }
