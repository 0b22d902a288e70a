from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import NotFound, PermissionDenied, ServiceResult, ValidationFailed, service_operation
from app.core.security import Grant, can, can_view
from app.db.models.common import naive_utc, utcnow
from app.db.models.inventory import InventoryAlert, InventoryItem, InventoryMovement, InventoryTransfer, Product
from app.db.models.warehouse import Warehouse
from app.events.bus import publish

logger = logging.getLogger(__name__)

ADJUSTMENT_TYPES = ("MANUAL", "CYCLE_COUNT", "DAMAGE", "SHRINKAGE", "RETURN")
BULK_SOURCES = ("SYNC", "IMPORT", "MANUAL", "CYCLE_COUNT")
TRANSFER_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")

PERIOD_DAYS = {
    "DAILY": 1,
    "WEEKLY": 7,
    "MONTHLY": 30,
    "QUARTERLY": 90,
    "YEARLY": 365,
}


def derive_status(quantity: int, min_level: int, max_level: int) -> str:
    if quantity == 0:
        return "OUT_OF_STOCK"
    if quantity <= min_level:
        return "LOW_STOCK"
    if max_level and quantity > max_level:
        return "OVERSTOCK"
    return "IN_STOCK"


def _money(x) -> float:
    return float(Decimal(str(x or 0)).quantize(Decimal("0.01")))


def item_out(item: InventoryItem) -> dict:
    return {
        "id": item.id,
        "warehouse_id": item.warehouse_id,
        "product_id": item.product_id,
        "sku": item.product.sku if item.product else None,
        "name": item.product.name if item.product else None,
        "quantity": item.quantity,
        "reserved_quantity": item.reserved_quantity,
        "available_quantity": item.available_quantity,
        "min_stock_level": item.min_stock_level,
        "max_stock_level": item.max_stock_level,
        "reorder_point": item.reorder_point,
        "location": item.location,
        "unit_cost": _money(item.unit_cost),
        "status": item.status,
        "last_movement": item.last_movement.isoformat() if item.last_movement else None,
    }


def movement_out(m: InventoryMovement) -> dict:
    return {
        "id": m.id,
        "warehouse_id": m.warehouse_id,
        "product_id": m.product_id,
        "type": m.type,
        "quantity": m.quantity,
        "previous_quantity": m.previous_quantity,
        "new_quantity": m.new_quantity,
        "reason": m.reason,
        "reference": m.reference,
        "user_id": m.user_id,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def alert_out(a: InventoryAlert) -> dict:
    return {
        "id": a.id,
        "warehouse_id": a.warehouse_id,
        "product_id": a.product_id,
        "type": a.type,
        "severity": a.severity,
        "message": a.message,
        "current_quantity": a.current_quantity,
        "threshold_quantity": a.threshold_quantity,
        "suggested_order_quantity": a.suggested_order_quantity,
        "resolved": a.resolved,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def _get_item(db: Session, warehouse_id: str, product_id: str) -> InventoryItem:
    item = (
        db.query(InventoryItem)
        .filter(InventoryItem.warehouse_id == warehouse_id, InventoryItem.product_id == product_id)
        .first()
    )
    if not item:
        raise NotFound("Inventory item not found")
    return item


def _get_warehouse(db: Session, warehouse_id: str) -> Warehouse:
    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh:
        raise NotFound(f"Warehouse not found: {warehouse_id}")
    return wh


def _threshold_alerts(item: InventoryItem) -> list[InventoryAlert]:
    alerts: list[InventoryAlert] = []
    sku = item.product.sku if item.product else item.product_id
    if item.quantity < item.min_stock_level:
        alerts.append(InventoryAlert(
            warehouse_id=item.warehouse_id,
            product_id=item.product_id,
            type="LOW_STOCK",
            severity="HIGH",
            message=f"{sku} is below minimum stock level ({item.quantity} < {item.min_stock_level})",
            current_quantity=item.quantity,
            threshold_quantity=item.min_stock_level,
            suggested_order_quantity=item.reorder_point * 2,
        ))
    if item.quantity == 0:
        alerts.append(InventoryAlert(
            warehouse_id=item.warehouse_id,
            product_id=item.product_id,
            type="OUT_OF_STOCK",
            severity="CRITICAL",
            message=f"{sku} is out of stock",
            current_quantity=0,
            threshold_quantity=item.min_stock_level,
            suggested_order_quantity=max(item.reorder_point * 2, item.min_stock_level),
        ))
    return alerts


def set_quantity(
    db: Session,
    item: InventoryItem,
    new_quantity: int,
    *,
    movement_type: str,
    reason: str,
    user_id: str | None,
    location: str | None = None,
    reference: str | None = None,
) -> tuple[InventoryMovement, list[InventoryAlert]]:
    reserved = item.reserved_quantity or 0
    if new_quantity < reserved:
        raise ValidationFailed(f"Quantity {new_quantity} is below the {reserved} units reserved")
    now = utcnow()
    previous = item.quantity
    item.quantity = new_quantity
    if location:
        item.location = location
    item.status = derive_status(new_quantity, item.min_stock_level, item.max_stock_level)
    item.last_movement = now

    movement = InventoryMovement(
        warehouse_id=item.warehouse_id,
        product_id=item.product_id,
        type=movement_type,
        quantity=new_quantity - previous,
        previous_quantity=previous,
        new_quantity=new_quantity,
        reason=reason,
        reference=reference,
        user_id=user_id,
    )
    db.add(movement)

    alerts = _threshold_alerts(item)
    for a in alerts:
        db.add(a)

    publish(db, "InventoryChanged", {
        "warehouse_id": item.warehouse_id,
        "product_id": item.product_id,
        "previous_quantity": previous,
        "quantity": new_quantity,
        "delta": new_quantity - previous,
        "movement_type": movement_type,
    })
    if alerts:
        publish(db, "InventoryLowStock", {
            "warehouse_id": item.warehouse_id,
            "product_id": item.product_id,
            "quantity": new_quantity,
            "alerts": [{"type": a.type, "severity": a.severity} for a in alerts],
        })
    return movement, alerts


@service_operation("Inventory update failed")
def update_inventory(
    db: Session,
    *,
    warehouse_id: str,
    product_id: str,
    quantity: int,
    reason: str,
    adjustment_type: str = "MANUAL",
    location: str | None = None,
    access: Iterable[Grant],
    user_id: str | None,
) -> dict:
    if quantity < 0:
        raise ValidationFailed("Quantity cannot be negative")
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationFailed(f"Unknown adjustment type: {adjustment_type}")

    item = _get_item(db, warehouse_id, product_id)
    if not can(access, "UPDATE_INVENTORY", item.warehouse.region):
        raise PermissionDenied("Insufficient permissions")

    movement_type = "ADJUSTMENT" if adjustment_type == "MANUAL" else adjustment_type
    movement, alerts = set_quantity(
        db, item, quantity,
        movement_type=movement_type, reason=reason, user_id=user_id, location=location,
    )
    audit(
        db,
        actor=user_id or "system",
        action="inventory.update",
        resource_type="inventory_item",
        resource_id=item.id,
        details={"previous": movement.previous_quantity, "quantity": quantity, "reason": reason, "type": movement_type},
        warehouse=item.warehouse.region,
        commit=False,
    )
    db.commit()
    db.refresh(item)

    logger.info(
        "Inventory %s/%s set to %s (delta %s, %s alerts)",
        warehouse_id, product_id, quantity, movement.quantity, len(alerts),
    )
    return {
        "item": item_out(item),
        "movement": movement_out(movement),
        "alerts": [alert_out(a) for a in alerts],
    }


@service_operation("Bulk inventory update failed")
def bulk_update_inventory(
    db: Session,
    *,
    warehouse_id: str,
    updates: list[dict],
    reason: str,
    source: str = "MANUAL",
    access: Iterable[Grant],
    user_id: str | None,
) -> ServiceResult:
    if source not in BULK_SOURCES:
        raise ValidationFailed(f"Unknown update source: {source}")
    if not updates:
        raise ValidationFailed("No updates supplied")

    wh = _get_warehouse(db, warehouse_id)
    if not can(access, "UPDATE_INVENTORY", wh.region):
        raise PermissionDenied("Insufficient permissions")

    updated: list[dict] = []
    failed: list[dict] = []
    warnings: list[str] = []

    for upd in updates:
        product_id = upd.get("product_id")
        qty = upd.get("quantity")
        try:
            if qty is None or int(qty) < 0:
                raise ValidationFailed("Quantity cannot be negative")
            item = _get_item(db, warehouse_id, product_id)
            _, alerts = set_quantity(
                db, item, int(qty),
                movement_type=source, reason=reason, user_id=user_id, location=upd.get("location"),
            )
        except (ValidationFailed, NotFound) as e:
            failed.append({"product_id": product_id, "error": e.message})
            continue
        if alerts:
            warnings.append(f"{item.product.sku if item.product else product_id} is below minimum stock level")
        updated.append(item)

    db.commit()

    if not failed:
        sync_status = "COMPLETED"
    elif updated:
        sync_status = "PARTIAL"
    else:
        sync_status = "FAILED"

    logger.info(
        "Bulk %s update on %s: %s ok, %s failed",
        source, warehouse_id, len(updated), len(failed),
    )
    return ServiceResult.ok({
        "updated": [item_out(i) for i in updated],
        "failed": failed,
        "summary": {
            "total_processed": len(updates),
            "successful": len(updated),
            "failed": len(failed),
            "warnings": len(warnings),
        },
        "sync_status": sync_status,
    }, warnings=warnings)


@service_operation("Inventory transfer failed")
def transfer_inventory(
    db: Session,
    *,
    from_warehouse_id: str,
    to_warehouse_id: str,
    product_id: str,
    quantity: int,
    reason: str,
    priority: str = "NORMAL",
    expected_delivery: datetime | None = None,
    access: Iterable[Grant],
    user_id: str | None,
) -> dict:
    if quantity <= 0:
        raise ValidationFailed("Transfer quantity must be positive")
    if from_warehouse_id == to_warehouse_id:
        raise ValidationFailed("Source and destination warehouse must differ")
    if priority not in TRANSFER_PRIORITIES:
        raise ValidationFailed(f"Unknown priority: {priority}")

    source = _get_item(db, from_warehouse_id, product_id)
    if not can(access, "TRANSFER_INVENTORY", source.warehouse.region):
        raise PermissionDenied("Insufficient permissions")
    _get_warehouse(db, to_warehouse_id)

    if source.available_quantity < quantity:
        raise ValidationFailed("Insufficient available inventory")

    transfer = InventoryTransfer(
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        product_id=product_id,
        quantity=quantity,
        reason=reason,
        priority=priority,
        status="PENDING",
        expected_delivery=naive_utc(expected_delivery),
        requested_by=user_id,
    )
    db.add(transfer)
    db.flush()

    source.reserved_quantity = (source.reserved_quantity or 0) + quantity
    source.last_movement = utcnow()
    db.add(InventoryMovement(
        warehouse_id=from_warehouse_id,
        product_id=product_id,
        type="TRANSFER",
        quantity=0,
        previous_quantity=source.quantity,
        new_quantity=source.quantity,
        reason=f"Reserved {quantity} for transfer to {to_warehouse_id}: {reason}",
        reference=transfer.id,
        user_id=user_id,
    ))
    publish(db, "InventoryTransferRequested", {
        "transfer_id": transfer.id,
        "from_warehouse_id": from_warehouse_id,
        "to_warehouse_id": to_warehouse_id,
        "product_id": product_id,
        "quantity": quantity,
        "priority": priority,
    })
    db.commit()
    db.refresh(source)

    logger.info("Transfer %s: %s x %s from %s to %s", transfer.id, quantity, product_id, from_warehouse_id, to_warehouse_id)
    return {
        "transfer": {
            "id": transfer.id,
            "from_warehouse_id": from_warehouse_id,
            "to_warehouse_id": to_warehouse_id,
            "product_id": product_id,
            "quantity": quantity,
            "priority": priority,
            "status": transfer.status,
            "expected_delivery": expected_delivery.isoformat() if expected_delivery else None,
        },
        "source": item_out(source),
    }


@service_operation("Failed to load inventory dashboard")
def get_dashboard(db: Session, *, warehouse_id: str, access: Iterable[Grant]) -> dict:
    wh = _get_warehouse(db, warehouse_id)
    if not can_view(access, wh.region):
        raise PermissionDenied("Insufficient permissions")

    items = db.query(InventoryItem).filter(InventoryItem.warehouse_id == warehouse_id).all()
    counts = defaultdict(int)
    categories: dict[str, dict] = {}
    total_value = Decimal("0")
    for it in items:
        status = derive_status(it.quantity, it.min_stock_level, it.max_stock_level)
        counts[status] += 1
        value = Decimal(it.quantity) * Decimal(str(it.unit_cost or 0))
        total_value += value
        cat = it.product.category if it.product else "UNCATEGORIZED"
        row = categories.setdefault(cat, {"category": cat, "items": 0, "quantity": 0, "value": Decimal("0")})
        row["items"] += 1
        row["quantity"] += it.quantity
        row["value"] += value

    active_alerts = (
        db.query(InventoryAlert)
        .filter(InventoryAlert.warehouse_id == warehouse_id, InventoryAlert.resolved == False)  # noqa: E712
        .order_by(InventoryAlert.created_at.desc())
        .all()
    )
    recent = (
        db.query(InventoryMovement)
        .filter(InventoryMovement.warehouse_id == warehouse_id)
        .order_by(InventoryMovement.created_at.desc())
        .limit(20)
        .all()
    )

    since = utcnow() - timedelta(days=30)
    outbound = (
        db.query(func.coalesce(func.sum(InventoryMovement.quantity), 0))
        .filter(
            InventoryMovement.warehouse_id == warehouse_id,
            InventoryMovement.created_at >= since,
            InventoryMovement.quantity < 0,
        )
        .scalar()
    )
    on_hand = sum(it.quantity for it in items)

    total = len(items)
    at_risk = sorted(
        (it for it in items if it.available_quantity <= it.reorder_point),
        key=lambda it: it.available_quantity,
    )

    return {
        "warehouse": {"id": wh.id, "code": wh.code, "name": wh.name, "region": wh.region},
        "summary": {
            "total_items": total,
            "total_value": _money(total_value),
            "in_stock": counts["IN_STOCK"],
            "low_stock": counts["LOW_STOCK"],
            "out_of_stock": counts["OUT_OF_STOCK"],
            "overstock": counts["OVERSTOCK"],
            "alerts_count": len(active_alerts),
            "critical_alerts": sum(1 for a in active_alerts if a.severity == "CRITICAL"),
        },
        "category_breakdown": [
            {**row, "value": _money(row["value"])} for row in sorted(categories.values(), key=lambda r: r["category"])
        ],
        "recent_movements": [movement_out(m) for m in recent],
        "active_alerts": [alert_out(a) for a in active_alerts[:10]],
        "performance_metrics": {
            "stock_accuracy": round((total - counts["OUT_OF_STOCK"]) / total * 100, 2) if total else 100.0,
            "fill_rate": round(counts["IN_STOCK"] / total * 100, 2) if total else 100.0,
            "turnover_ratio": round(abs(int(outbound)) / on_hand, 4) if on_hand else 0.0,
        },
        "predictions": {
            "next_stockouts": [
                {
                    "product_id": it.product_id,
                    "sku": it.product.sku if it.product else None,
                    "available_quantity": it.available_quantity,
                    "reorder_point": it.reorder_point,
                }
                for it in at_risk
            ],
            "reorder_recommendations": [
                {
                    "product_id": it.product_id,
                    "sku": it.product.sku if it.product else None,
                    "current_quantity": it.quantity,
                    "suggested_quantity": max(it.reorder_point * 2, 50),
                }
                for it in at_risk
            ],
        },
    }


def transfer_opportunities(rows: list[dict], limit: int = 3) -> list[dict]:
    """Pair surplus warehouses with ones below their reorder point.

    Each row carries warehouse_id, available_quantity and reorder_point.
    """
    found: list[dict] = []
    for src in rows:
        if src["available_quantity"] <= src["reorder_point"] * 1.5:
            continue
        for tgt in rows:
            if tgt is src or tgt["available_quantity"] >= tgt["reorder_point"]:
                continue
            suggested = min(
                src["available_quantity"] - src["reorder_point"],
                tgt["reorder_point"] - tgt["available_quantity"],
            )
            if suggested <= 0:
                continue
            found.append({
                "from_warehouse_id": src["warehouse_id"],
                "to_warehouse_id": tgt["warehouse_id"],
                "product_id": src.get("product_id"),
                "suggested_quantity": suggested,
            })
    found.sort(key=lambda o: o["suggested_quantity"], reverse=True)
    return found[:limit]


@service_operation("Failed to load multi-warehouse view")
def get_multi_warehouse_view(db: Session, *, product_id: str, access: Iterable[Grant]) -> dict:
    access = list(access)
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFound("Product not found")

    rows = []
    for it in db.query(InventoryItem).filter(InventoryItem.product_id == product_id).all():
        if not can_view(access, it.warehouse.region):
            continue
        rows.append({
            "warehouse_id": it.warehouse_id,
            "warehouse_code": it.warehouse.code,
            "region": it.warehouse.region,
            "product_id": product_id,
            "quantity": it.quantity,
            "reserved_quantity": it.reserved_quantity,
            "available_quantity": it.available_quantity,
            "reorder_point": it.reorder_point,
            "status": derive_status(it.quantity, it.min_stock_level, it.max_stock_level),
        })

    return {
        "product": {"id": product.id, "sku": product.sku, "name": product.name},
        "warehouses": rows,
        "totals": {
            "quantity": sum(r["quantity"] for r in rows),
            "available_quantity": sum(r["available_quantity"] for r in rows),
        },
        "transfer_opportunities": transfer_opportunities(rows),
    }


@service_operation("Failed to load inventory analytics")
def get_inventory_analytics(db: Session, *, warehouse_id: str, period: str = "MONTHLY", access: Iterable[Grant]) -> dict:
    if period not in PERIOD_DAYS:
        raise ValidationFailed(f"Unknown period: {period}")
    wh = _get_warehouse(db, warehouse_id)
    if not can_view(access, wh.region):
        raise PermissionDenied("Insufficient permissions")

    since = utcnow() - timedelta(days=PERIOD_DAYS[period])
    moves = (
        db.query(InventoryMovement)
        .filter(InventoryMovement.warehouse_id == warehouse_id, InventoryMovement.created_at >= since)
        .all()
    )
    by_type: dict[str, dict] = {}
    by_product: dict[str, int] = defaultdict(int)
    for m in moves:
        row = by_type.setdefault(m.type, {"type": m.type, "count": 0, "net_quantity": 0})
        row["count"] += 1
        row["net_quantity"] += m.quantity
        by_product[m.product_id] += abs(m.quantity)

    alerts = (
        db.query(InventoryAlert.severity, func.count(InventoryAlert.id))
        .filter(InventoryAlert.warehouse_id == warehouse_id, InventoryAlert.created_at >= since)
        .group_by(InventoryAlert.severity)
        .all()
    )
    top = sorted(by_product.items(), key=lambda kv: kv[1], reverse=True)[:10]

    return {
        "warehouse_id": warehouse_id,
        "period": period,
        "since": since.isoformat(),
        "movements_by_type": sorted(by_type.values(), key=lambda r: r["type"]),
        "total_movements": len(moves),
        "alert_breakdown": {sev: int(n) for sev, n in alerts},
        "top_moving_products": [{"product_id": pid, "units_moved": units} for pid, units in top],
    }


@service_operation("Failed to resolve alert")
def resolve_alert(db: Session, *, alert_id: str, access: Iterable[Grant], user_id: str | None) -> dict:
    alert = db.query(InventoryAlert).filter(InventoryAlert.id == alert_id).first()
    if not alert:
        raise NotFound("Alert not found")
    wh = _get_warehouse(db, alert.warehouse_id)
    if not can(access, "UPDATE_INVENTORY", wh.region):
        raise PermissionDenied("Insufficient permissions")
    if not alert.resolved:
        alert.resolved = True
        alert.resolved_at = utcnow()
        alert.resolved_by = user_id
        db.commit()
    return alert_out(alert)
