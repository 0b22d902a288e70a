from __future__ import annotations

import logging
import os
from collections import defaultdict
from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.cache import cache
from app.core.errors import NotFound, ValidationFailed, service_operation
from app.db.models.common import utcnow
from app.db.models.inventory import InventoryItem, InventoryMovement
from app.db.models.orders import Order, OrderTrackingEvent
from app.db.models.warehouse import Warehouse
from services.inventory.service import transfer_opportunities
from services.warehouse.service import current_capacity, utilization

logger = logging.getLogger(__name__)

TIME_RANGES = {"24h": timedelta(hours=24), "7d": timedelta(days=7), "30d": timedelta(days=30)}
CACHE_TTL_SECONDS = 300
CACHE_PREFIX = "optimization:"

DAILY_ORDER_TARGET = int(os.getenv("OPT_DAILY_ORDER_TARGET", "100"))
BASELINE_SHIPPING_COST = 25.0
ACCURACY_MOVEMENT_TYPES = ("DAMAGE", "SHRINKAGE")

OVERLOADED_PCT = 85
UNDERLOADED_PCT = 60
MAX_TRANSFER_RECOMMENDATIONS = 10

SCORE_WEIGHTS = {
    "utilization_rate": 0.2,
    "throughput_score": 0.25,
    "accuracy_score": 0.2,
    "cost_efficiency": 0.15,
    "speed_score": 0.2,
}

# Fixed improvement playbook keyed by the score that triggers it.
PLAYBOOK = (
    ("utilization_rate", 80, {
        "type": "STAFFING",
        "priority": "HIGH",
        "title": "Optimize Staff Scheduling",
        "implementation_cost": 25000,
        "roi": 2.4,
        "action_items": ["Analyze peak demand patterns", "Implement flexible shift scheduling"],
    }),
    ("throughput_score", 85, {
        "type": "PROCESS",
        "priority": "HIGH",
        "title": "Streamline Order Processing",
        "implementation_cost": 45000,
        "roi": 3.2,
        "action_items": ["Implement batch picking strategies", "Optimize warehouse layout"],
    }),
    ("accuracy_score", 95, {
        "type": "INVENTORY_CONTROL",
        "priority": "HIGH",
        "title": "Reduce Damage and Shrinkage",
        "implementation_cost": 15000,
        "roi": 2.0,
        "action_items": ["Schedule cycle counts for high-loss SKUs", "Review handling procedures"],
    }),
    ("cost_efficiency", 80, {
        "type": "TECHNOLOGY",
        "priority": "MEDIUM",
        "title": "Reduce Shipping Cost per Order",
        "implementation_cost": 35000,
        "roi": 2.8,
        "action_items": ["Negotiate bulk shipping rates", "Optimize shipping zones"],
    }),
    ("speed_score", 70, {
        "type": "PROCESS",
        "priority": "MEDIUM",
        "title": "Shorten Order-to-Ship Time",
        "implementation_cost": 20000,
        "roi": 2.2,
        "action_items": ["Prioritize expedited orders in pick waves", "Pre-stage fast movers"],
    }),
)

INDUSTRY_BENCHMARKS = (
    ("Utilization Rate", "utilization_rate", 78.5, 92.3, 10, 92, "3 months",
     ["Optimize staff scheduling", "Streamline picking processes"]),
    ("Throughput Score", "throughput_score", 82.1, 96.8, 8, 95, "2 months",
     ["Implement automated sorting", "Optimize warehouse layout"]),
    ("Accuracy Score", "accuracy_score", 99.2, 99.9, 0.5, 99.9, "1 month",
     ["Implement barcode scanning", "Enhance quality control processes"]),
    ("Cost Efficiency", "cost_efficiency", 85.7, 94.2, 6, 94, "4 months",
     ["Negotiate better shipping rates", "Reduce waste and returns"]),
    ("Speed Score", "speed_score", 84.0, 97.0, 8, 97, "2 months",
     ["Pre-stage fast movers", "Reduce handoffs between pick and pack"]),
)


def _clamp(v: float) -> float:
    return round(max(0.0, min(100.0, v)), 2)


def throughput_score(order_count: int, days: float) -> float:
    return _clamp(order_count / days / DAILY_ORDER_TARGET * 100) if days else 0.0


def accuracy_score(movement_types: list[str]) -> float:
    if not movement_types:
        return 100.0
    bad = sum(1 for t in movement_types if t in ACCURACY_MOVEMENT_TYPES)
    return _clamp(100 - bad / len(movement_types) * 100)


def cost_efficiency(shipping_costs: list[float]) -> float:
    if not shipping_costs:
        return 100.0
    avg = sum(shipping_costs) / len(shipping_costs)
    return _clamp((BASELINE_SHIPPING_COST - avg) / BASELINE_SHIPPING_COST * 100 + 50)


def speed_score(ship_minutes: list[float]) -> float:
    if not ship_minutes:
        return 100.0
    avg = sum(ship_minutes) / len(ship_minutes)
    return _clamp((240 - avg) / 180 * 100)


def overall(scores: dict[str, float]) -> float:
    return round(sum(scores[k] * w for k, w in SCORE_WEIGHTS.items()), 2)


def recommendations_for(scores: dict[str, float]) -> list[dict]:
    recs = []
    for metric, threshold, play in PLAYBOOK:
        if scores[metric] < threshold:
            recs.append({
                **play,
                "metric": metric,
                "current_value": scores[metric],
                "threshold": threshold,
                "estimated_savings": round(play["implementation_cost"] * play["roi"], 2),
            })
    return recs


def _warehouse(db: Session, warehouse_id: str) -> Warehouse:
    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh:
        raise NotFound(f"Warehouse not found: {warehouse_id}")
    return wh


def _analyze(db: Session, warehouse_id: str, time_range: str) -> dict:
    if time_range not in TIME_RANGES:
        raise ValidationFailed(f"Unknown time range: {time_range}")
    key = f"{CACHE_PREFIX}{warehouse_id}:{time_range}"
    cached = cache.get(key)
    if cached is not None:
        return cached

    wh = _warehouse(db, warehouse_id)
    window = TIME_RANGES[time_range]
    since = utcnow() - window
    orders = (
        db.query(Order)
        .filter(Order.warehouse_id == wh.id, Order.created_at >= since, Order.status != "CANCELLED")
        .all()
    )
    movement_types = [
        t for (t,) in db.query(InventoryMovement.type)
        .filter(InventoryMovement.warehouse_id == wh.id, InventoryMovement.created_at >= since)
        .all()
    ]
    shipped = (
        db.query(Order.created_at, OrderTrackingEvent.occurred_at)
        .join(OrderTrackingEvent, OrderTrackingEvent.order_id == Order.id)
        .filter(Order.warehouse_id == wh.id, Order.created_at >= since, OrderTrackingEvent.status == "SHIPPED")
        .all()
    )

    scores = {
        "utilization_rate": utilization(current_capacity(db, wh.id), wh.capacity),
        "throughput_score": throughput_score(len(orders), window.total_seconds() / 86400),
        "accuracy_score": accuracy_score(movement_types),
        "cost_efficiency": cost_efficiency([float(o.shipping_cost) for o in orders]),
        "speed_score": speed_score([(shipped_at - created).total_seconds() / 60 for created, shipped_at in shipped]),
    }
    result = {
        "warehouse_id": wh.id,
        "code": wh.code,
        "region": wh.region,
        "time_range": time_range,
        **scores,
        "overall_score": overall(scores),
        "recommendations": recommendations_for(scores),
        "timestamp": utcnow().isoformat(),
    }
    cache.set(key, result, CACHE_TTL_SECONDS)
    return result


@service_operation("Failed to analyze warehouse performance")
def analyze_warehouse_performance(db: Session, warehouse_id: str, *, time_range: str = "7d") -> dict:
    return _analyze(db, warehouse_id, time_range)


def transfer_recommendations(db: Session, warehouse_ids: list[str]) -> list[dict]:
    items = db.query(InventoryItem).filter(InventoryItem.warehouse_id.in_(warehouse_ids)).all()
    by_product: dict[str, list[InventoryItem]] = defaultdict(list)
    for it in items:
        by_product[it.product_id].append(it)

    recs = []
    for product_id, rows in by_product.items():
        if len(rows) < 2:
            continue
        product = rows[0].product
        margin = float(product.unit_price - product.unit_cost) if product else 0.0
        found = transfer_opportunities([
            {
                "warehouse_id": it.warehouse_id,
                "product_id": product_id,
                "available_quantity": it.available_quantity,
                "reorder_point": it.reorder_point,
            }
            for it in rows
        ])
        for opp in found:
            recs.append({
                **opp,
                "sku": product.sku if product else None,
                "urgency": "IMMEDIATE" if opp["suggested_quantity"] >= 100 else "WITHIN_WEEK",
                "estimated_savings": round(opp["suggested_quantity"] * max(margin, 0.0), 2),
            })
    recs.sort(key=lambda r: (r["estimated_savings"], r["suggested_quantity"]), reverse=True)
    return recs[:MAX_TRANSFER_RECOMMENDATIONS]


def load_balancing_plan(warehouses: list[dict]) -> dict:
    """Move units from warehouses above OVERLOADED_PCT to ones below UNDERLOADED_PCT.

    Each entry carries warehouse_id, capacity and current. Sources shed down
    to OVERLOADED_PCT; targets fill up to UNDERLOADED_PCT.
    """
    rates = [utilization(w["current"], w["capacity"]) for w in warehouses]
    sources = [
        {"warehouse_id": w["warehouse_id"], "excess": w["current"] - int(w["capacity"] * OVERLOADED_PCT / 100)}
        for w, r in zip(warehouses, rates) if r > OVERLOADED_PCT
    ]
    targets = [
        {"warehouse_id": w["warehouse_id"], "room": int(w["capacity"] * UNDERLOADED_PCT / 100) - w["current"]}
        for w, r in zip(warehouses, rates) if w["capacity"] and r < UNDERLOADED_PCT
    ]
    sources.sort(key=lambda s: s["excess"], reverse=True)
    targets.sort(key=lambda t: t["room"], reverse=True)

    moves = []
    for src in sources:
        for tgt in targets:
            if src["excess"] <= 0:
                break
            units = min(src["excess"], tgt["room"])
            if units <= 0:
                continue
            moves.append({"from_warehouse_id": src["warehouse_id"], "to_warehouse_id": tgt["warehouse_id"], "units": units})
            src["excess"] -= units
            tgt["room"] -= units

    return {
        "current_imbalance": round(max(rates) - min(rates), 2) if rates else 0.0,
        "average_utilization": round(sum(rates) / len(rates), 2) if rates else 0.0,
        "overloaded": [s["warehouse_id"] for s in sources],
        "underloaded": [t["warehouse_id"] for t in targets],
        "moves": moves,
    }


@service_operation("Failed to optimize across warehouses")
def optimize_across_warehouses(db: Session, *, warehouse_ids: list[str]) -> dict:
    if len(warehouse_ids) < 2:
        raise ValidationFailed("At least two warehouses are required")
    warehouses = [_warehouse(db, wid) for wid in warehouse_ids]
    analyses = [_analyze(db, wh.id, "7d") for wh in warehouses]

    transfers = transfer_recommendations(db, warehouse_ids)
    balancing = load_balancing_plan([
        {"warehouse_id": wh.id, "capacity": wh.capacity, "current": current_capacity(db, wh.id)}
        for wh in warehouses
    ])
    performance_savings = sum(r["estimated_savings"] for a in analyses for r in a["recommendations"])
    transfer_savings = sum(r["estimated_savings"] for r in transfers)
    logger.info("cross-warehouse optimization over %d warehouses: %d transfers, %d moves",
                len(warehouses), len(transfers), len(balancing["moves"]))
    return {
        "warehouses": [
            {"warehouse_id": a["warehouse_id"], "code": a["code"], "overall_score": a["overall_score"]}
            for a in analyses
        ],
        "transfer_recommendations": transfers,
        "load_balancing": balancing,
        "projected_savings": {
            "transfers": round(transfer_savings, 2),
            "performance": round(performance_savings, 2),
            "total": round(transfer_savings + performance_savings, 2),
        },
    }


@service_operation("Failed to compute performance benchmarks")
def get_performance_benchmarks(db: Session, warehouse_id: str) -> list[dict]:
    metrics = _analyze(db, warehouse_id, "7d")
    out = []
    for name, key, avg, top, step, cap, timeframe, actions in INDUSTRY_BENCHMARKS:
        current = metrics[key]
        out.append({
            "metric": name,
            "current_value": current,
            "industry_average": avg,
            "top_performer": top,
            "position": "ABOVE_AVERAGE" if current >= avg else "BELOW_AVERAGE",
            "gap_to_average": round(avg - current, 2),
            "improvement": {
                "target": round(min(cap, current + step), 2),
                "timeframe": timeframe,
                "required_actions": actions,
            },
        })
    return out
