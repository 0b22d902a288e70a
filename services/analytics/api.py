from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import unwrap
from app.core.security import Principal, require_permissions
from app.db.session import get_db
from services.analytics import engine, optimization, reports

router = APIRouter(prefix="/analytics", tags=["analytics"])

view_analytics = require_permissions(["VIEW_ANALYTICS"])


class QueryIn(BaseModel):
    type: str = "HISTORICAL"
    metric: str = "revenue"
    warehouse_ids: list[str] = Field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None
    granularity: str = "day"


class StreamIn(QueryIn):
    interval: float = Field(engine.STREAM_INTERVAL_SECONDS, ge=engine.MIN_STREAM_INTERVAL_SECONDS)


class BatchIn(BaseModel):
    queries: list[QueryIn] = Field(min_length=1)


class ReportIn(BaseModel):
    report_type: str
    format: str = "JSON"
    parameters: dict = Field(default_factory=dict)


class OptimizeIn(BaseModel):
    warehouse_ids: list[str] = Field(min_length=2)


@router.post("/query")
def run_query(payload: QueryIn, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(engine.execute_query(db, payload.model_dump()))


@router.post("/batch")
def run_batch(payload: BatchIn, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(engine.execute_batch(db, [q.model_dump() for q in payload.queries]))


@router.get("/batch/{job_id}")
def batch_job(job_id: str, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(engine.get_batch_job(db, job_id))


@router.post("/streams")
async def start_stream(payload: StreamIn, _: Principal = Depends(view_analytics)):
    query = payload.model_dump(exclude={"interval"})
    return unwrap(await engine.start_stream(query, interval=payload.interval))


@router.get("/streams")
def list_streams(_: Principal = Depends(view_analytics)):
    return engine.list_streams()


@router.delete("/streams/{stream_id}")
async def stop_stream(stream_id: str, _: Principal = Depends(view_analytics)):
    return unwrap(await engine.stop_stream(stream_id))


@router.get("/products")
def product_analytics(
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(view_analytics),
):
    return unwrap(engine.get_product_analytics(db, start=start, end=end))


@router.get("/warehouses/insights")
def warehouse_insights(
    warehouse_ids: list[str] = Query(default=[]),
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(view_analytics),
):
    return unwrap(engine.generate_warehouse_insights(db, warehouse_ids=warehouse_ids, start=start, end=end))


@router.get("/warehouses/{warehouse_id}/performance")
def warehouse_performance(
    warehouse_id: str,
    time_range: str = "7d",
    db: Session = Depends(get_db),
    _: Principal = Depends(view_analytics),
):
    return unwrap(optimization.analyze_warehouse_performance(db, warehouse_id, time_range=time_range))


@router.get("/warehouses/{warehouse_id}/benchmarks")
def warehouse_benchmarks(warehouse_id: str, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(optimization.get_performance_benchmarks(db, warehouse_id))


@router.post("/optimize")
def optimize(payload: OptimizeIn, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(optimization.optimize_across_warehouses(db, warehouse_ids=payload.warehouse_ids))


@router.post("/reports")
def generate_report(payload: ReportIn, db: Session = Depends(get_db), p: Principal = Depends(view_analytics)):
    return unwrap(reports.generate_report(
        db, report_type=payload.report_type, parameters=payload.parameters,
        format=payload.format, user_id=p.supplier_id,
    ))


@router.get("/reports")
def list_reports(report_type: str | None = None, limit: int = Query(20, ge=1, le=100),
                 db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(reports.list_reports(db, report_type=report_type, limit=limit))


@router.get("/reports/{report_id}")
def get_report(report_id: str, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    return unwrap(reports.get_report(db, report_id))


@router.get("/reports/{report_id}/download", response_class=PlainTextResponse)
def download_report(report_id: str, db: Session = Depends(get_db), _: Principal = Depends(view_analytics)):
    report = unwrap(reports.get_report(db, report_id))
    if report["format"] == "CSV":
        return PlainTextResponse(
            report["rendered"] or "",
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{report_id}.csv"'},
        )
    return PlainTextResponse(reports.to_csv(report["content"].get("rows", [])), media_type="text/csv")
