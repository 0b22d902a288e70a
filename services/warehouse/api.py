from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import unwrap
from app.core.security import Principal, require_authenticated, require_permissions
from app.db.session import get_db
from services.warehouse import service

router = APIRouter(prefix="/warehouses", tags=["warehouses"])


class WarehouseIn(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1)
    region: str
    country: str = "US"
    location: str = ""
    timezone: str = "UTC"
    currency: str = "USD"
    capacity: int = 0
    status: str = "ACTIVE"


class WarehousePatch(BaseModel):
    code: str | None = None
    name: str | None = None
    region: str | None = None
    location: str | None = None
    timezone: str | None = None
    capacity: int | None = None
    status: str | None = None


class StaffIn(BaseModel):
    name: str = Field(min_length=1)
    role: str = "ASSOCIATE"
    shift: str = "DAY"
    status: str = "ACTIVE"


class OperationIn(BaseModel):
    type: str
    priority: str = "NORMAL"
    details: dict = Field(default_factory=dict)


class OperationStatusIn(BaseModel):
    status: str
    error: str | None = None


@router.get("")
def list_warehouses(
    region: str | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = Query(1),
    limit: int = Query(20),
    sort_by: str = "name",
    sort_order: str = "asc",
    db: Session = Depends(get_db),
    _: Principal = Depends(require_authenticated),
):
    return unwrap(service.list_warehouses(
        db, region=region, status=status, search=search, page=page, limit=limit,
        sort_by=sort_by, sort_order=sort_order,
    ))


@router.post("")
def create_warehouse(payload: WarehouseIn, db: Session = Depends(get_db),
                     p: Principal = Depends(require_permissions(["MANAGE_WAREHOUSE"]))):
    return unwrap(service.create_warehouse(db, data=payload.model_dump(), access=p.grants, user_id=p.supplier_id))


@router.get("/{warehouse_id}")
def get_warehouse(warehouse_id: str, db: Session = Depends(get_db), _: Principal = Depends(require_authenticated)):
    return unwrap(service.get_warehouse(db, warehouse_id))


@router.patch("/{warehouse_id}")
def update_warehouse(warehouse_id: str, payload: WarehousePatch, db: Session = Depends(get_db),
                     p: Principal = Depends(require_permissions(["MANAGE_WAREHOUSE"]))):
    changes = payload.model_dump(exclude_none=True)
    return unwrap(service.update_warehouse(db, warehouse_id, changes=changes, access=p.grants,
                                           user_id=p.supplier_id))


@router.get("/{warehouse_id}/staff")
def list_staff(warehouse_id: str, db: Session = Depends(get_db), _: Principal = Depends(require_authenticated)):
    return unwrap(service.list_staff(db, warehouse_id))


@router.post("/{warehouse_id}/staff")
def add_staff(warehouse_id: str, payload: StaffIn, db: Session = Depends(get_db),
              p: Principal = Depends(require_permissions(["MANAGE_WAREHOUSE"]))):
    return unwrap(service.add_staff(db, warehouse_id, access=p.grants, **payload.model_dump()))


@router.post("/{warehouse_id}/operations")
def create_operation(warehouse_id: str, payload: OperationIn, db: Session = Depends(get_db),
                     p: Principal = Depends(require_permissions(["UPDATE_INVENTORY"]))):
    return unwrap(service.create_operation(
        db, warehouse_id, type=payload.type, details=payload.details, access=p.grants,
        priority=payload.priority, user_id=p.supplier_id,
    ))


@router.post("/operations/{operation_id}/status")
def update_operation_status(operation_id: str, payload: OperationStatusIn, db: Session = Depends(get_db),
                            p: Principal = Depends(require_permissions(["UPDATE_INVENTORY"]))):
    return unwrap(service.update_operation_status(
        db, operation_id, status=payload.status, error=payload.error, access=p.grants, user_id=p.supplier_id,
    ))


@router.get("/{warehouse_id}/metrics")
def performance_metrics(
    warehouse_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_authenticated),
):
    return unwrap(service.get_performance_metrics(db, warehouse_id, start=start, end=end))
