from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import HTTP_STATUS_BY_CODE, ServiceResult
from app.core.security import Principal, require_authenticated, require_permissions
from app.db.session import get_db
from services.orders import service

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderLineIn(BaseModel):
    product_id: str
    quantity: int


class OrderIn(BaseModel):
    customer_id: str
    items: list[OrderLineIn]
    shipping_method: str = "STANDARD"
    shipping_address: dict = Field(default_factory=dict)
    warehouse_id: str | None = None
    priority: str = "NORMAL"
    currency: str | None = None
    notes: str | None = None
    metadata: dict = Field(default_factory=dict)


class OrderPatch(BaseModel):
    status: str | None = None
    items: list[OrderLineIn] | None = None
    shipping_method: str | None = None
    shipping_address: dict | None = None
    priority: str | None = None
    notes: str | None = None
    location: str | None = None
    description: str | None = None


def respond(result: ServiceResult) -> JSONResponse:
    status = 200 if result.success else HTTP_STATUS_BY_CODE.get(result.code or "", 500)
    return JSONResponse(status_code=status, content=jsonable_encoder(service.envelope(result)))


@router.post("")
def create_order(payload: OrderIn, db: Session = Depends(get_db),
                 p: Principal = Depends(require_permissions(["MANAGE_ORDERS"]))):
    return respond(service.create_order(db, request=payload.model_dump(), access=p.grants, user_id=p.supplier_id))


@router.get("")
def list_orders(
    status: list[str] | None = Query(None),
    customer_id: str | None = None,
    warehouse_id: str | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_authenticated),
):
    filters = {
        "statuses": status,
        "customer_id": customer_id,
        "warehouse_id": warehouse_id,
        "search": search,
        "date_from": date_from,
        "date_to": date_to,
    }
    return respond(service.get_orders(db, access=p.grants, filters=filters, page=page, limit=limit))


@router.get("/analytics")
def order_analytics(period: str = "MONTH", db: Session = Depends(get_db), _: Principal = Depends(require_authenticated)):
    return respond(service.get_order_analytics(db, period=period))


@router.get("/{order_id}/tracking")
def track_order(order_id: str, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return respond(service.track_order(db, order_id, access=p.grants))


@router.patch("/{order_id}")
def update_order(order_id: str, payload: OrderPatch, db: Session = Depends(get_db),
                 p: Principal = Depends(require_permissions(["MANAGE_ORDERS"]))):
    changes = payload.model_dump(exclude_unset=True)
    return respond(service.update_order(db, order_id, changes=changes, access=p.grants, user_id=p.supplier_id))
