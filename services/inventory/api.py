from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import unwrap
from app.core.security import Principal, require_authenticated
from app.db.session import get_db
from services.inventory import service

router = APIRouter(prefix="/inventory", tags=["inventory"])


class InventoryUpdateIn(BaseModel):
    warehouse_id: str
    product_id: str
    quantity: int
    reason: str = Field(min_length=1)
    adjustment_type: str = "MANUAL"
    location: str | None = None


class BulkLineIn(BaseModel):
    product_id: str
    quantity: int
    location: str | None = None


class BulkUpdateIn(BaseModel):
    warehouse_id: str
    updates: list[BulkLineIn]
    reason: str = Field(min_length=1)
    source: str = "MANUAL"


class TransferIn(BaseModel):
    from_warehouse_id: str
    to_warehouse_id: str
    product_id: str
    quantity: int
    reason: str = Field(min_length=1)
    priority: str = "NORMAL"
    expected_delivery: datetime | None = None


@router.put("/items")
def update_item(payload: InventoryUpdateIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.update_inventory(db, **payload.model_dump(), access=p.grants, user_id=p.supplier_id))


@router.post("/bulk")
def bulk_update(payload: BulkUpdateIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    result = service.bulk_update_inventory(
        db,
        warehouse_id=payload.warehouse_id,
        updates=[u.model_dump() for u in payload.updates],
        reason=payload.reason,
        source=payload.source,
        access=p.grants,
        user_id=p.supplier_id,
    )
    return {**unwrap(result), "warnings": result.warnings}


@router.post("/transfers")
def create_transfer(payload: TransferIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.transfer_inventory(db, **payload.model_dump(), access=p.grants, user_id=p.supplier_id))


@router.get("/dashboard/{warehouse_id}")
def dashboard(warehouse_id: str, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.get_dashboard(db, warehouse_id=warehouse_id, access=p.grants))


@router.get("/products/{product_id}/warehouses")
def multi_warehouse_view(product_id: str, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.get_multi_warehouse_view(db, product_id=product_id, access=p.grants))


@router.get("/analytics/{warehouse_id}")
def analytics(
    warehouse_id: str,
    period: str = Query("MONTHLY"),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_authenticated),
):
    return unwrap(service.get_inventory_analytics(db, warehouse_id=warehouse_id, period=period, access=p.grants))


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: str, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.resolve_alert(db, alert_id=alert_id, access=p.grants, user_id=p.supplier_id))
