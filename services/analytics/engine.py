"""Time-series analytics over orders and inventory.

Every value is computed from stored rows. Queries are bucketed by hour, day,
week or month; a PREDICTIVE query fits a least-squares line over the
historical buckets and projects it forward.
"""

from __future__ import annotations

import asyncio
import logging
import os
import statistics
import time
import uuid
from collections import defaultdict
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from app.core.cache import cache, make_cache_key
from app.core.errors import NotFound, ServiceResult, ValidationFailed, service_operation
from app.db.models.common import naive_utc, utcnow
from app.db.models.inventory import PRODUCT_TYPES, InventoryItem, InventoryMovement, Product
from app.db.models.orders import Order, OrderItem
from app.db.models.warehouse import Warehouse
from app.db.session import SessionLocal
from services.inventory.service import derive_status
from services.warehouse.service import current_capacity, utilization

logger = logging.getLogger(__name__)

ANALYTICS_CACHE_TTL_SECONDS = int(os.getenv("ANALYTICS_CACHE_TTL_SECONDS", "300"))
BATCH_JOB_TTL_SECONDS = int(os.getenv("ANALYTICS_BATCH_JOB_TTL_SECONDS", "3600"))
STREAM_INTERVAL_SECONDS = float(os.getenv("ANALYTICS_STREAM_INTERVAL_SECONDS", "5"))
MIN_STREAM_INTERVAL_SECONDS = 1.0

QUERY_TYPES = ("REALTIME", "HISTORICAL", "PREDICTIVE", "COMPARATIVE")
METRICS = ("revenue", "orders", "units", "inventory_value")
GRANULARITIES = ("hour", "day", "week", "month")

FORECAST_BUCKETS = 7
TREND_THRESHOLD_PCT = 10
ANOMALY_SIGMA = 2
DEFAULT_RANGE_DAYS = 30
FLEXVOLT_TYPES = tuple(t for t in PRODUCT_TYPES if t.startswith("FLEXVOLT"))

ALL_WAREHOUSES = "ALL"
CACHE_PREFIX = "analytics:"
BATCH_JOB_PREFIX = "analytics-job:"


def bucket_start(ts: datetime, granularity: str) -> datetime:
    if granularity == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def next_bucket(ts: datetime, granularity: str) -> datetime:
    if granularity == "hour":
        return ts + timedelta(hours=1)
    if granularity == "day":
        return ts + timedelta(days=1)
    if granularity == "week":
        return ts + timedelta(days=7)
    if ts.month == 12:
        return ts.replace(year=ts.year + 1, month=1)
    return ts.replace(month=ts.month + 1)


def buckets(start: datetime, end: datetime, granularity: str) -> list[datetime]:
    out = []
    cur = bucket_start(start, granularity)
    while cur <= end:
        out.append(cur)
        cur = next_bucket(cur, granularity)
    return out


def linear_fit(values: list[float]) -> tuple[float, float, float]:
    """Least-squares fit of values against their index.

    Returns (intercept, slope, r_squared). A flat or single-point series
    fits perfectly with slope 0.
    """
    n = len(values)
    if n < 2:
        return (values[0] if values else 0.0), 0.0, 1.0
    xs = range(n)
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, values))
    slope = sxy / sxx
    intercept = mean_y - slope * mean_x
    ss_tot = sum((y - mean_y) ** 2 for y in values)
    if not ss_tot:
        return intercept, slope, 1.0
    ss_res = sum((y - (intercept + slope * x)) ** 2 for x, y in zip(xs, values))
    return intercept, slope, max(0.0, 1 - ss_res / ss_tot)


def _num(v) -> float:
    return float(v) if isinstance(v, Decimal) else float(v or 0)


def _warehouse_ids(db: Session, warehouse_ids: list[str] | None) -> list[str]:
    if warehouse_ids:
        found = {w.id for w in db.query(Warehouse).filter(Warehouse.id.in_(warehouse_ids)).all()}
        missing = [w for w in warehouse_ids if w not in found]
        if missing:
            raise NotFound(f"Warehouse not found: {missing[0]}")
        return list(warehouse_ids)
    return [w.id for w in db.query(Warehouse).filter(Warehouse.status == "ACTIVE").order_by(Warehouse.code).all()]


def _order_samples(db: Session, metric: str, warehouse_ids: list[str], start: datetime, end: datetime):
    """Yield (timestamp, warehouse_id, value) for order-driven metrics."""
    orders = (
        db.query(Order)
        .filter(
            Order.warehouse_id.in_(warehouse_ids),
            Order.created_at >= start,
            Order.created_at <= end,
            Order.status != "CANCELLED",
        )
        .all()
    )
    for o in orders:
        if metric == "revenue":
            value = _num(o.total)
        elif metric == "orders":
            value = 1.0
        else:
            value = float(sum(i.quantity for i in o.items))
        yield o.created_at, o.warehouse_id, value


def _inventory_value_series(db: Session, warehouse_ids: list[str], points: list[datetime],
                            granularity: str) -> dict[tuple[str, datetime], float]:
    """Stock value at the end of each bucket, rebuilt from the movement ledger."""
    items = db.query(InventoryItem).filter(InventoryItem.warehouse_id.in_(warehouse_ids)).all()
    moves = (
        db.query(InventoryMovement)
        .filter(InventoryMovement.warehouse_id.in_(warehouse_ids), InventoryMovement.created_at >= points[0])
        .all()
    )
    out: dict[tuple[str, datetime], float] = defaultdict(float)
    for it in items:
        item_moves = [m for m in moves if m.warehouse_id == it.warehouse_id and m.product_id == it.product_id]
        cost = _num(it.unit_cost)
        for p in points:
            edge = next_bucket(p, granularity)
            later = sum(m.quantity for m in item_moves if m.created_at >= edge)
            out[(it.warehouse_id, p)] += max(0, it.quantity - later) * cost
    return out


def _series(db: Session, metric: str, warehouse_ids: list[str], start: datetime, end: datetime,
            granularity: str) -> tuple[list[datetime], dict[tuple[str, datetime], float], int]:
    points = buckets(start, end, granularity)
    if metric == "inventory_value":
        values = _inventory_value_series(db, warehouse_ids, points, granularity)
        return points, values, len(values)
    values: dict[tuple[str, datetime], float] = defaultdict(float)
    records = 0
    for ts, wh_id, v in _order_samples(db, metric, warehouse_ids, start, end):
        values[(wh_id, bucket_start(ts, granularity))] += v
        records += 1
    return points, values, records


def _points(points, values, warehouse_ids, per_warehouse: bool) -> list[dict]:
    out = []
    for p in points:
        if per_warehouse:
            for wh_id in warehouse_ids:
                out.append({"timestamp": p.isoformat(), "warehouse_id": wh_id,
                            "value": round(values.get((wh_id, p), 0.0), 2)})
        else:
            total = sum(values.get((wh_id, p), 0.0) for wh_id in warehouse_ids)
            out.append({"timestamp": p.isoformat(), "warehouse_id": ALL_WAREHOUSES, "value": round(total, 2)})
    return out


def _aggregate(data_points: list[dict]) -> list[tuple[str, float]]:
    totals: dict[str, float] = {}
    for dp in data_points:
        if dp.get("predicted"):
            continue
        totals[dp["timestamp"]] = totals.get(dp["timestamp"], 0.0) + dp["value"]
    return sorted(totals.items())


def trend_insight(metric: str, series: list[float]) -> dict | None:
    if len(series) < 2:
        return None
    half = len(series) // 2
    first, second = sum(series[:half]), sum(series[half:])
    if not first:
        return None
    change = (second - first) / first * 100
    if abs(change) <= TREND_THRESHOLD_PCT:
        return None
    direction = "up" if change > 0 else "down"
    return {
        "type": "TREND",
        "severity": "HIGH" if abs(change) > 25 else "MEDIUM",
        "title": f"{metric} trending {direction} {abs(change):.1f}%",
        "change_percent": round(change, 2),
        "affected_metrics": [metric],
    }


def anomaly_insights(metric: str, series: list[tuple[str, float]]) -> list[dict]:
    values = [v for _, v in series]
    if len(values) < 3:
        return []
    mean = statistics.fmean(values)
    sigma = statistics.pstdev(values)
    if not sigma:
        return []
    out = []
    for ts, v in series:
        deviation = (v - mean) / sigma
        if abs(deviation) > ANOMALY_SIGMA:
            out.append({
                "type": "ANOMALY",
                "severity": "HIGH" if abs(deviation) > 3 else "MEDIUM",
                "title": f"Unusual {metric} at {ts}",
                "timestamp": ts,
                "value": v,
                "deviation": round(deviation, 2),
                "affected_metrics": [metric],
            })
    return out


def recommendations_for(insights: list[dict]) -> list[str]:
    recs = []
    for ins in insights:
        if ins["type"] == "TREND" and ins["severity"] == "HIGH":
            recs.append(f"Address trending issue: {ins['title']}")
        elif ins["type"] == "ANOMALY":
            recs.append(f"Investigate anomaly in {', '.join(ins['affected_metrics'])} at {ins['timestamp']}")
        elif ins["type"] == "FORECAST" and ins["slope"] < 0:
            recs.append(f"Plan for declining {ins['affected_metrics'][0]} over the next {FORECAST_BUCKETS} periods")
    return recs


def _forecast(metric: str, points: list[datetime], series: list[float], granularity: str) -> tuple[list[dict], dict]:
    intercept, slope, r2 = linear_fit(series)
    confidence = round(r2, 4)
    out = []
    ts = points[-1] if points else bucket_start(utcnow(), granularity)
    n = len(series)
    for i in range(FORECAST_BUCKETS):
        ts = next_bucket(ts, granularity)
        out.append({
            "timestamp": ts.isoformat(),
            "warehouse_id": ALL_WAREHOUSES,
            "value": round(max(0.0, intercept + slope * (n + i)), 2),
            "predicted": True,
            "confidence": confidence,
        })
    insight = {
        "type": "FORECAST",
        "severity": "LOW" if slope >= 0 else "MEDIUM",
        "title": f"{metric} projected {'up' if slope >= 0 else 'down'} {abs(slope):.2f} per {granularity}",
        "slope": round(slope, 4),
        "confidence": confidence,
        "affected_metrics": [metric],
    }
    return out, insight


def normalize_query(query: dict, now: datetime | None = None) -> dict:
    now = now or utcnow()
    qtype = (query.get("type") or "HISTORICAL").upper()
    metric = query.get("metric") or "revenue"
    granularity = query.get("granularity") or "day"
    if qtype not in QUERY_TYPES:
        raise ValidationFailed(f"Unknown query type: {qtype}")
    if metric not in METRICS:
        raise ValidationFailed(f"Unknown metric: {metric}")
    if granularity not in GRANULARITIES:
        raise ValidationFailed(f"Unknown granularity: {granularity}")

    if qtype == "REALTIME":
        end = now
        start = now - timedelta(hours=24)
        granularity = "hour"
    else:
        end = naive_utc(query.get("end")) or now
        start = naive_utc(query.get("start")) or end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start >= end:
        raise ValidationFailed("start must be before end")
    return {
        "type": qtype,
        "metric": metric,
        "granularity": granularity,
        "warehouse_ids": sorted(query.get("warehouse_ids") or []),
        "start": start,
        "end": end,
    }


def _run(db: Session, q: dict) -> dict:
    warehouse_ids = _warehouse_ids(db, q["warehouse_ids"])
    metric, granularity = q["metric"], q["granularity"]
    insights: list[dict] = []

    if q["type"] == "COMPARATIVE":
        points, values, records = _series(db, metric, warehouse_ids, q["start"], q["end"], granularity)
        if metric == "inventory_value":
            last = points[-1]
            totals = {wh: values.get((wh, last), 0.0) for wh in warehouse_ids}
        else:
            totals = {wh: sum(v for (w, _), v in values.items() if w == wh) for wh in warehouse_ids}
        data_points = [
            {"timestamp": q["end"].isoformat(), "warehouse_id": wh, "value": round(totals[wh], 2)}
            for wh in warehouse_ids
        ]
        if len(totals) > 1:
            best = max(totals, key=totals.get)
            worst = min(totals, key=totals.get)
            if totals[best] != totals[worst]:
                insights.append({
                    "type": "COMPARISON",
                    "severity": "LOW",
                    "title": f"{metric} leader {best}, laggard {worst}",
                    "leader": best,
                    "laggard": worst,
                    "affected_metrics": [metric],
                })
        return {"data_points": data_points, "insights": insights, "records": records}

    per_warehouse = q["type"] != "PREDICTIVE" and bool(q["warehouse_ids"])
    points, values, records = _series(db, metric, warehouse_ids, q["start"], q["end"], granularity)
    data_points = _points(points, values, warehouse_ids, per_warehouse)
    series = _aggregate(data_points)

    trend = trend_insight(metric, [v for _, v in series])
    if trend:
        insights.append(trend)
    insights.extend(anomaly_insights(metric, series))

    if q["type"] == "PREDICTIVE":
        forecast, insight = _forecast(metric, points, [v for _, v in series], granularity)
        data_points.extend(forecast)
        insights.append(insight)
    return {"data_points": data_points, "insights": insights, "records": records}


@service_operation("Analytics query failed")
def execute_query(db: Session, query: dict, *, use_cache: bool = True) -> dict:
    started = time.perf_counter()
    q = normalize_query(query)
    key = make_cache_key({**q, "start": None, "end": None} if q["type"] == "REALTIME" else q)
    cached = cache.get(CACHE_PREFIX + key) if use_cache else None
    if cached is not None:
        logger.debug("analytics cache hit %s", key)
        return {**cached, "metadata": {**cached["metadata"], "cache_hit": True}}

    out = _run(db, q)
    result = {
        "query_id": f"QRY-{key[:12].upper()}",
        "query": {**q, "start": q["start"].isoformat(), "end": q["end"].isoformat()},
        "data_points": out["data_points"],
        "insights": out["insights"],
        "recommendations": recommendations_for(out["insights"]),
        "metadata": {
            "total_records": out["records"],
            "cache_hit": False,
            "execution_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    }
    cache.set(CACHE_PREFIX + key, result, ANALYTICS_CACHE_TTL_SECONDS)
    return result


@service_operation("Analytics batch failed")
def execute_batch(db: Session, queries: list[dict]) -> dict:
    if not queries:
        raise ValidationFailed("At least one query is required")
    job = {
        "job_id": str(uuid.uuid4()),
        "status": "RUNNING",
        "started_at": utcnow().isoformat(),
        "total": len(queries),
        "completed": 0,
        "failed": 0,
        "results": [],
        "errors": [],
    }
    cache.set(BATCH_JOB_PREFIX + job["job_id"], job, BATCH_JOB_TTL_SECONDS)
    for index, query in enumerate(queries):
        res = execute_query(db, query)
        if res.success:
            job["completed"] += 1
            job["results"].append(res.data)
        else:
            job["failed"] += 1
            job["errors"].append({"index": index, "error": res.error, "code": res.code})
    job["status"] = "COMPLETED" if not job["failed"] else ("FAILED" if not job["completed"] else "PARTIAL")
    job["finished_at"] = utcnow().isoformat()
    logger.info("analytics batch %s finished: %d ok, %d failed", job["job_id"], job["completed"], job["failed"])
    return job


@service_operation("Failed to load batch job")
def get_batch_job(db: Session, job_id: str) -> dict:
    job = cache.get(BATCH_JOB_PREFIX + job_id)
    if job is None:
        raise NotFound("Batch job not found")
    return job


@dataclass
class AnalyticsStream:
    stream_id: str
    query: dict
    interval: float
    started_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    updates: int = 0
    last_update: datetime | None = None
    last_result: dict | None = None
    last_error: str | None = None
    task: asyncio.Task | None = None

    def out(self) -> dict:
        return {
            "stream_id": self.stream_id,
            "query": self.query,
            "interval": self.interval,
            "is_active": self.is_active,
            "started_at": self.started_at.isoformat(),
            "updates": self.updates,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


# stream_id -> running stream
ACTIVE_STREAMS: dict[str, AnalyticsStream] = {}


def _stream_tick(stream: AnalyticsStream, session_factory: Callable[[], Session]) -> None:
    db = session_factory()
    try:
        res = execute_query(db, stream.query, use_cache=False)
    finally:
        db.close()
    stream.updates += 1
    stream.last_update = utcnow()
    if res.success:
        stream.last_result, stream.last_error = res.data, None
    else:
        stream.last_error = res.error
        logger.warning("analytics stream %s update failed: %s", stream.stream_id, res.error)


async def _run_stream(stream: AnalyticsStream, session_factory: Callable[[], Session]) -> None:
    try:
        while stream.is_active:
            _stream_tick(stream, session_factory)
            await asyncio.sleep(stream.interval)
    finally:
        stream.is_active = False
        ACTIVE_STREAMS.pop(stream.stream_id, None)
        logger.info("analytics stream %s stopped after %d updates", stream.stream_id, stream.updates)


async def start_stream(
    query: dict,
    interval: float = STREAM_INTERVAL_SECONDS,
    session_factory: Callable[[], Session] = SessionLocal,
) -> ServiceResult:
    """Re-run a query every `interval` seconds until stop_stream().

    The query is validated before the stream is registered.
    """
    try:
        normalize_query(query)
    except ValidationFailed as e:
        return ServiceResult.fail(e.message, e.code)
    stream = AnalyticsStream(stream_id=f"stream-{uuid.uuid4().hex[:12]}", query=dict(query), interval=interval)
    ACTIVE_STREAMS[stream.stream_id] = stream
    stream.task = asyncio.create_task(_run_stream(stream, session_factory))
    logger.info("analytics stream %s started (%s every %ss)", stream.stream_id, query.get("metric"), interval)
    return ServiceResult.ok(stream.out())


async def stop_stream(stream_id: str) -> ServiceResult:
    stream = ACTIVE_STREAMS.pop(stream_id, None)
    if stream is None:
        return ServiceResult.fail("Stream not found", NotFound.code)
    stream.is_active = False
    if stream.task is not None and not stream.task.done():
        stream.task.cancel()
        with suppress(asyncio.CancelledError):
            await stream.task
    return ServiceResult.ok(stream.out())


def list_streams() -> list[dict]:
    return [s.out() for s in sorted(ACTIVE_STREAMS.values(), key=lambda s: s.started_at)]


async def stop_all_streams() -> int:
    ids = list(ACTIVE_STREAMS)
    for stream_id in ids:
        await stop_stream(stream_id)
    return len(ids)


def _range(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    end = naive_utc(end) or utcnow()
    start = naive_utc(start) or end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start >= end:
        raise ValidationFailed("start must be before end")
    return start, end


@service_operation("Failed to compute product analytics")
def get_product_analytics(db: Session, *, start: datetime | None = None, end: datetime | None = None) -> dict:
    start, end = _range(start, end)
    rows = (
        db.query(OrderItem, Product.product_type, Order.id)
        .join(Order, OrderItem.order_id == Order.id)
        .join(Product, OrderItem.product_id == Product.id)
        .filter(Order.created_at >= start, Order.created_at <= end, Order.status != "CANCELLED")
        .all()
    )
    stats: dict[str, dict] = {
        t: {"product_type": t, "units": 0, "revenue": 0.0, "orders": set()} for t in FLEXVOLT_TYPES
    }
    for item, product_type, order_id in rows:
        row = stats.setdefault(product_type, {"product_type": product_type, "units": 0, "revenue": 0.0, "orders": set()})
        row["units"] += item.quantity
        row["revenue"] += _num(item.line_total)
        row["orders"].add(order_id)

    total_units = sum(r["units"] for r in stats.values())
    total_revenue = sum(r["revenue"] for r in stats.values())
    products = []
    for r in sorted(stats.values(), key=lambda r: r["revenue"], reverse=True):
        products.append({
            "product_type": r["product_type"],
            "units": r["units"],
            "revenue": round(r["revenue"], 2),
            "orders": len(r["orders"]),
            "unit_share": round(r["units"] / total_units * 100, 2) if total_units else 0.0,
            "revenue_share": round(r["revenue"] / total_revenue * 100, 2) if total_revenue else 0.0,
        })
    flexvolt = [p for p in products if p["product_type"] in FLEXVOLT_TYPES]
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "products": products,
        "totals": {"units": total_units, "revenue": round(total_revenue, 2)},
        "flexvolt": {
            "units": sum(p["units"] for p in flexvolt),
            "revenue": round(sum(p["revenue"] for p in flexvolt), 2),
            "top_product": flexvolt[0]["product_type"] if flexvolt and flexvolt[0]["units"] else None,
        },
    }


def warehouse_snapshot(db: Session, wh: Warehouse, start: datetime, end: datetime) -> dict:
    orders = (
        db.query(Order)
        .filter(Order.warehouse_id == wh.id, Order.created_at >= start, Order.created_at <= end,
                Order.status != "CANCELLED")
        .all()
    )
    items = db.query(InventoryItem).filter(InventoryItem.warehouse_id == wh.id).all()
    statuses = [derive_status(i.quantity, i.min_stock_level, i.max_stock_level) for i in items]
    cur = current_capacity(db, wh.id)
    return {
        "warehouse_id": wh.id,
        "code": wh.code,
        "region": wh.region,
        "orders": len(orders),
        "revenue": round(sum(_num(o.total) for o in orders), 2),
        "units": sum(i.quantity for o in orders for i in o.items),
        "inventory_items": len(items),
        "low_stock_items": statuses.count("LOW_STOCK"),
        "out_of_stock_items": statuses.count("OUT_OF_STOCK"),
        "utilization": utilization(cur, wh.capacity),
    }


@service_operation("Failed to generate warehouse insights")
def generate_warehouse_insights(db: Session, *, warehouse_ids: list[str] | None = None,
                                start: datetime | None = None, end: datetime | None = None) -> dict:
    start, end = _range(start, end)
    ids = _warehouse_ids(db, warehouse_ids)
    warehouses = db.query(Warehouse).filter(Warehouse.id.in_(ids)).order_by(Warehouse.code).all()
    snapshots = [warehouse_snapshot(db, wh, start, end) for wh in warehouses]

    insights = []
    for s in snapshots:
        if s["out_of_stock_items"] or s["low_stock_items"]:
            insights.append({
                "warehouse_id": s["warehouse_id"],
                "type": "LOW_STOCK",
                "severity": "HIGH" if s["out_of_stock_items"] else "MEDIUM",
                "message": f"{s['code']}: {s['low_stock_items']} low and {s['out_of_stock_items']} out-of-stock items",
            })
        if s["utilization"] > 90:
            insights.append({
                "warehouse_id": s["warehouse_id"],
                "type": "CAPACITY",
                "severity": "HIGH",
                "message": f"{s['code']} is at {s['utilization']}% of capacity",
            })
        elif s["utilization"] < 30 and s["inventory_items"]:
            insights.append({
                "warehouse_id": s["warehouse_id"],
                "type": "UNDERUTILIZED",
                "severity": "LOW",
                "message": f"{s['code']} is only at {s['utilization']}% of capacity",
            })

    ranked = sorted(snapshots, key=lambda s: s["revenue"], reverse=True)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "warehouses": snapshots,
        "comparison": {
            "ranking": [s["warehouse_id"] for s in ranked],
            "top_performer": ranked[0]["warehouse_id"] if ranked and ranked[0]["revenue"] else None,
            "total_revenue": round(sum(s["revenue"] for s in snapshots), 2),
            "total_orders": sum(s["orders"] for s in snapshots),
        },
        "insights": insights,
    }
