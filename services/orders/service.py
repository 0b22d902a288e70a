from __future__ import annotations

import logging
import secrets
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.context import get_request_id
from app.core.errors import NotFound, PermissionDenied, ServiceResult, ValidationFailed, service_operation
from app.core.security import Grant, can, can_view, visible_regions
from app.db.models.common import utcnow
from app.db.models.inventory import InventoryItem, Product
from app.db.models.orders import ORDER_STATUSES, Customer, Order, OrderItem, OrderTrackingEvent
from app.db.models.warehouse import Warehouse
from app.events.bus import publish
from services.inventory.service import set_quantity
from services.orders.pricing import SHIPPING_METHODS, money, price_lines

logger = logging.getLogger(__name__)

API_VERSION = "1.0"

COUNTRY_REGIONS = {
    "US": "US_WEST",
    "GB": "EU_GERMANY",
    "DE": "EU_GERMANY",
    "FR": "EU_GERMANY",
    "ES": "EU_GERMANY",
    "IT": "EU_GERMANY",
    "NL": "EU_GERMANY",
    "JP": "JAPAN",
    "KR": "JAPAN",
    "TW": "JAPAN",
    "AU": "AUSTRALIA",
    "NZ": "AUSTRALIA",
}
DEFAULT_REGION = "US_WEST"

# Forward lifecycle; CANCELLED is reachable from any non-terminal status.
NEXT_STATUS = {
    "PENDING": "CONFIRMED",
    "CONFIRMED": "PROCESSING",
    "PROCESSING": "SHIPPED",
    "SHIPPED": "DELIVERED",
}
TERMINAL_STATUSES = ("DELIVERED", "CANCELLED")
# Line items may change only before picking starts.
EDITABLE_STATUSES = ("PENDING", "CONFIRMED")

DELIVERY_DAYS = {"STANDARD": 7, "EXPEDITED": 5, "EXPRESS": 3, "OVERNIGHT": 1, "PICKUP": 0}
DELIVERY_PROGRESS = {
    "PENDING": 5,
    "CONFIRMED": 10,
    "PROCESSING": 20,
    "SHIPPED": 70,
    "DELIVERED": 100,
    "CANCELLED": 0,
}
NEXT_UPDATE_HOURS = {"PROCESSING": 4, "SHIPPED": 8}

ANALYTICS_PERIOD_DAYS = {"DAY": 1, "WEEK": 7, "MONTH": 30, "QUARTER": 90, "YEAR": 365}


def region_for_country(country: str | None) -> str:
    return COUNTRY_REGIONS.get((country or "").upper(), DEFAULT_REGION)


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == "CANCELLED":
        return True
    return NEXT_STATUS.get(current) == new


def make_order_number(region_code: str, now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"{region_code}-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def order_out(o: Order) -> dict:
    return {
        "id": o.id,
        "order_number": o.order_number,
        "customer_id": o.customer_id,
        "warehouse_id": o.warehouse_id,
        "status": o.status,
        "priority": o.priority,
        "shipping_method": o.shipping_method,
        "shipping_address": o.shipping_address or {},
        "currency": o.currency,
        "items": [
            {
                "product_id": i.product_id,
                "sku": i.product.sku if i.product else None,
                "quantity": i.quantity,
                "unit_price": float(i.unit_price),
                "line_total": float(i.line_total),
            }
            for i in o.items
        ],
        "pricing": {
            "subtotal": float(o.subtotal),
            "discount_tier": o.discount_tier,
            "discount_rate": float(o.discount_rate),
            "discount_amount": float(o.discount_amount),
            "tax": float(o.tax),
            "shipping_cost": float(o.shipping_cost),
            "total": float(o.total),
        },
        "notes": o.notes,
        "metadata": o.meta or {},
        "created_at": o.created_at.isoformat() if o.created_at else None,
        "updated_at": o.updated_at.isoformat() if o.updated_at else None,
        "delivered_at": o.delivered_at.isoformat() if o.delivered_at else None,
    }


def event_out(e: OrderTrackingEvent) -> dict:
    return {
        "status": e.status,
        "location": e.location,
        "description": e.description,
        "source": e.source,
        "occurred_at": e.occurred_at.isoformat(),
    }


def _merge_lines(items: list[dict]) -> dict[str, int]:
    if not items:
        raise ValidationFailed("Order must contain at least one item")
    merged: dict[str, int] = defaultdict(int)
    for line in items:
        qty = int(line.get("quantity") or 0)
        if qty <= 0:
            raise ValidationFailed("Item quantity must be positive")
        merged[line["product_id"]] += qty
    return dict(merged)


def _load_products(db: Session, product_ids) -> dict[str, Product]:
    products = {p.id: p for p in db.query(Product).filter(Product.id.in_(list(product_ids))).all()}
    missing = set(product_ids) - set(products)
    if missing:
        raise NotFound(f"Product not found: {sorted(missing)[0]}")
    return products


def _stock_rows(db: Session, warehouse_id: str, product_ids) -> dict[str, InventoryItem]:
    rows = (
        db.query(InventoryItem)
        .filter(InventoryItem.warehouse_id == warehouse_id, InventoryItem.product_id.in_(list(product_ids)))
        .all()
    )
    return {r.product_id: r for r in rows}


def _reserve(stock: dict[str, InventoryItem], needed: dict[str, int]) -> None:
    """Reserve every line or none."""
    for pid, qty in needed.items():
        row = stock.get(pid)
        if qty > 0 and (row is None or row.available_quantity < qty):
            raise ValidationFailed("Insufficient inventory")
    for pid, qty in needed.items():
        if qty:
            stock[pid].reserved_quantity += qty


def _release(db: Session, order: Order) -> None:
    stock = _stock_rows(db, order.warehouse_id, [i.product_id for i in order.items])
    for line in order.items:
        row = stock.get(line.product_id)
        if row:
            row.reserved_quantity = max(0, row.reserved_quantity - line.quantity)


def _ship(db: Session, order: Order, user_id: str | None) -> None:
    stock = _stock_rows(db, order.warehouse_id, [i.product_id for i in order.items])
    for line in order.items:
        row = stock.get(line.product_id)
        if row is None or row.quantity < line.quantity:
            on_hand = row.quantity if row else 0
            raise ValidationFailed(f"Cannot ship {line.quantity} of {line.product_id}: only {on_hand} on hand")
        row.reserved_quantity = max(0, row.reserved_quantity - line.quantity)
        set_quantity(
            db, row, row.quantity - line.quantity,
            movement_type="SHIPPING", reason=f"Shipped order {order.order_number}",
            user_id=user_id, reference=order.order_number,
        )


def _apply_pricing(order: Order, products: dict[str, Product]) -> None:
    breakdown = price_lines(
        [(i.quantity, products[i.product_id].unit_price, products[i.product_id].weight_kg) for i in order.items],
        order.shipping_method,
    )
    order.subtotal = breakdown.subtotal
    order.discount_tier = breakdown.discount_tier
    order.discount_rate = breakdown.discount_rate
    order.discount_amount = breakdown.discount_amount
    order.tax = breakdown.tax
    order.shipping_cost = breakdown.shipping_cost
    order.total = breakdown.total


def _resolve_warehouse(db: Session, warehouse_id: str | None, country: str | None) -> Warehouse:
    if warehouse_id:
        wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id, Warehouse.status == "ACTIVE").first()
    else:
        wh = (
            db.query(Warehouse)
            .filter(Warehouse.region == region_for_country(country), Warehouse.status == "ACTIVE")
            .order_by(Warehouse.code.asc())
            .first()
        )
    if not wh:
        raise ValidationFailed("Warehouse is not available")
    return wh


@service_operation("Failed to create order")
def create_order(db: Session, *, request: dict, access: Iterable[Grant], user_id: str | None) -> dict:
    needed = _merge_lines(request.get("items") or [])
    method = request.get("shipping_method") or "STANDARD"
    if method not in SHIPPING_METHODS:
        raise ValidationFailed(f"Unknown shipping method: {method}")

    customer = db.query(Customer).filter(Customer.id == request.get("customer_id")).first()
    if not customer:
        raise NotFound("Customer not found")

    address = request.get("shipping_address") or {}
    wh = _resolve_warehouse(db, request.get("warehouse_id"), address.get("country") or customer.country)
    if not can(access, "MANAGE_ORDERS", wh.region):
        raise PermissionDenied(f"MANAGE_ORDERS not granted for {wh.region}")
    products = _load_products(db, needed)
    stock = _stock_rows(db, wh.id, needed)
    _reserve(stock, needed)

    now = utcnow()
    order = Order(
        order_number=make_order_number(wh.region_code, now),
        customer_id=customer.id,
        warehouse_id=wh.id,
        status="PENDING",
        priority=request.get("priority") or "NORMAL",
        shipping_method=method,
        shipping_address=address,
        currency=request.get("currency") or wh.currency,
        notes=request.get("notes"),
        meta=request.get("metadata") or {},
        created_by=user_id,
    )
    for pid, qty in needed.items():
        unit = money(products[pid].unit_price)
        order.items.append(OrderItem(product_id=pid, quantity=qty, unit_price=unit, line_total=money(unit * qty)))
    _apply_pricing(order, products)
    order.events.append(OrderTrackingEvent(
        status="ORDER_PLACED",
        location=wh.location or None,
        description=f"Order placed for fulfilment from {wh.name}",
        source="SYSTEM",
        occurred_at=now,
    ))
    db.add(order)
    db.flush()

    publish(db, "OrderCreated", {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": customer.id,
        "warehouse_id": wh.id,
        "total": str(order.total),
    })
    audit(db, actor=user_id or "system", action="order.create", resource_type="order", resource_id=order.id,
          details={"order_number": order.order_number, "total": str(order.total)}, warehouse=wh.region,
          commit=False)
    db.commit()
    db.refresh(order)
    logger.info("Created order %s (%s lines, total %s)", order.order_number, len(order.items), order.total)
    return order_out(order)


def _get_order(db: Session, order_id_or_number: str) -> Order:
    order = (
        db.query(Order)
        .filter(or_(Order.id == order_id_or_number, Order.order_number == order_id_or_number))
        .first()
    )
    if not order:
        raise NotFound("Order not found")
    return order


@service_operation("Failed to update order")
def update_order(db: Session, order_id: str, *, changes: dict, access: Iterable[Grant], user_id: str | None) -> dict:
    order = _get_order(db, order_id)
    if not can(access, "MANAGE_ORDERS", order.warehouse.region):
        raise PermissionDenied(f"MANAGE_ORDERS not granted for {order.warehouse.region}")
    if order.status in TERMINAL_STATUSES:
        raise ValidationFailed("Order cannot be modified")

    diff: list[dict] = []
    new_status = changes.get("status")
    if new_status and new_status != order.status:
        if new_status not in ORDER_STATUSES or not can_transition(order.status, new_status):
            raise ValidationFailed(f"Invalid status transition from {order.status} to {new_status}")

    if "shipping_method" in changes and changes["shipping_method"] not in SHIPPING_METHODS:
        raise ValidationFailed(f"Unknown shipping method: {changes['shipping_method']}")

    reprice = False
    if changes.get("items") is not None:
        if order.status not in EDITABLE_STATUSES:
            raise ValidationFailed(f"Items cannot be changed once an order is {order.status}")
        needed = _merge_lines(changes["items"])
        current = Counter()
        for line in order.items:
            current[line.product_id] += line.quantity
        products = _load_products(db, set(needed) | set(current))
        stock = _stock_rows(db, order.warehouse_id, set(needed) | set(current))
        delta = {pid: needed.get(pid, 0) - current.get(pid, 0) for pid in set(needed) | set(current)}
        _reserve(stock, {pid: d for pid, d in delta.items() if d > 0})
        for pid, d in delta.items():
            if d < 0 and pid in stock:
                stock[pid].reserved_quantity = max(0, stock[pid].reserved_quantity + d)

        diff.append({
            "field": "items",
            "old": [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items],
            "new": [{"product_id": pid, "quantity": q} for pid, q in needed.items()],
        })
        order.items.clear()
        for pid, qty in needed.items():
            unit = money(products[pid].unit_price)
            order.items.append(OrderItem(product_id=pid, quantity=qty, unit_price=unit, line_total=money(unit * qty)))
        reprice = True

    for field in ("shipping_method", "shipping_address", "notes", "priority"):
        if field in changes and changes[field] is not None and getattr(order, field) != changes[field]:
            diff.append({"field": field, "old": getattr(order, field), "new": changes[field]})
            setattr(order, field, changes[field])
            if field == "shipping_method":
                reprice = True

    if reprice:
        products = _load_products(db, {i.product_id for i in order.items})
        _apply_pricing(order, products)

    now = utcnow()
    if new_status and new_status != order.status:
        diff.append({"field": "status", "old": order.status, "new": new_status})
        if new_status == "CANCELLED" and order.status != "SHIPPED":
            _release(db, order)
        elif new_status == "SHIPPED":
            _ship(db, order, user_id)
        elif new_status == "DELIVERED":
            order.delivered_at = now
        order.status = new_status

    if not diff:
        return order_out(order)

    order.updated_at = now
    order.events.append(OrderTrackingEvent(
        status=order.status,
        location=changes.get("location"),
        description=changes.get("description") or f"Order updated: {', '.join(d['field'] for d in diff)}",
        source="SYSTEM",
        occurred_at=now,
    ))
    audit(db, actor=user_id or "system", action="order.update", resource_type="order", resource_id=order.id,
          details={"order_number": order.order_number, "changes": diff}, commit=False)
    publish(db, "OrderUpdated", {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "fields": [d["field"] for d in diff],
    })
    db.commit()
    db.refresh(order)
    logger.info("Updated order %s: %s", order.order_number, [d["field"] for d in diff])
    return order_out(order)


def next_update_for(status: str, now: datetime | None = None) -> str:
    if status in TERMINAL_STATUSES:
        return "No further updates expected"
    now = now or utcnow()
    return (now + timedelta(hours=NEXT_UPDATE_HOURS.get(status, 24))).isoformat()


@service_operation("Failed to track order")
def track_order(db: Session, order_id_or_number: str, *, access: Iterable[Grant]) -> dict:
    order = _get_order(db, order_id_or_number)
    if not can_view(access, order.warehouse.region):
        raise NotFound("Order not found")
    events = sorted(order.events, key=lambda e: e.occurred_at)
    located = [e for e in events if e.location]
    eta = order.created_at + timedelta(days=DELIVERY_DAYS.get(order.shipping_method, 7))
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "events": [event_out(e) for e in events],
        "current_location": located[-1].location if located else None,
        "estimated_delivery": eta.isoformat(),
        "delivery_progress": DELIVERY_PROGRESS.get(order.status, 0),
        "next_update": next_update_for(order.status),
    }


@service_operation("Failed to fetch orders")
def get_orders(db: Session, *, access: Iterable[Grant], filters: dict | None = None, page: int = 1,
               limit: int = 20) -> dict:
    if page < 1:
        raise ValidationFailed("page must be >= 1")
    if not 1 <= limit <= 100:
        raise ValidationFailed("limit must be between 1 and 100")
    filters = filters or {}

    q = db.query(Order)
    regions = visible_regions(access)
    if regions is not None:
        q = q.join(Warehouse, Order.warehouse_id == Warehouse.id).filter(Warehouse.region.in_(regions))
    if filters.get("statuses"):
        q = q.filter(Order.status.in_(filters["statuses"]))
    if filters.get("customer_id"):
        q = q.filter(Order.customer_id == filters["customer_id"])
    if filters.get("warehouse_id"):
        q = q.filter(Order.warehouse_id == filters["warehouse_id"])
    if filters.get("search"):
        like = f"%{filters['search']}%"
        q = q.filter(or_(Order.order_number.ilike(like), Order.notes.ilike(like)))
    if filters.get("date_from"):
        q = q.filter(Order.created_at >= filters["date_from"])
    if filters.get("date_to"):
        q = q.filter(Order.created_at <= filters["date_to"])

    total = q.count()
    breakdown = dict(
        q.with_entities(Order.status, func.count(Order.id)).group_by(Order.status).all()
    )
    rows = q.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "orders": [order_out(o) for o in rows],
        "total": total,
        "page": page,
        "has_more": page * limit < total,
        "status_breakdown": breakdown,
    }


@service_operation("Failed to compute order analytics")
def get_order_analytics(db: Session, *, period: str = "MONTH") -> dict:
    if period not in ANALYTICS_PERIOD_DAYS:
        raise ValidationFailed(f"Unknown period: {period}")
    end = utcnow()
    start = end - timedelta(days=ANALYTICS_PERIOD_DAYS[period])
    orders = db.query(Order).filter(Order.created_at >= start, Order.created_at <= end).all()

    billable = [o for o in orders if o.status != "CANCELLED"]
    revenue = money(sum((o.total for o in billable), money(0)))
    by_status = Counter(o.status for o in orders)
    by_tier = Counter(o.discount_tier or "NONE" for o in orders)
    return {
        "period": period,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "order_count": len(orders),
        "revenue": float(revenue),
        "average_order_value": float(money(revenue / len(billable))) if billable else 0.0,
        "orders_by_status": dict(by_status),
        "orders_by_discount_tier": dict(by_tier),
    }


def envelope(result: ServiceResult) -> dict:
    """Wrap a result in the order API response shape."""
    request_id = get_request_id()
    timestamp = utcnow().isoformat()
    out: dict = {
        "success": result.success,
        "data": result.data if result.success else None,
        "metadata": {"request_id": request_id, "timestamp": timestamp, "version": API_VERSION},
    }
    if not result.success:
        out["error"] = {
            "code": "ORDER_SERVICE_ERROR",
            "message": result.error,
            "timestamp": timestamp,
            "request_id": request_id,
        }
    return out
