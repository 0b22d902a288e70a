from __future__ import annotations

import asyncio

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.core.audit_middleware import audit_http_middleware
from app.core.log_config import configure_logging
from app.core.middleware import RequestContextMiddleware
from app.core.rate_limit import limiter
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.admin.events_api import router as events_admin_router
from services.analytics import engine as analytics_engine
from services.analytics.api import router as analytics_router
from services.auth.api import router as auth_router
from services.compliance.api import router as compliance_router
from services.compliance.audit_logger import audit_logger
from services.inventory.api import router as inventory_router
from services.orders.api import router as orders_router
from services.warehouse.api import router as warehouse_router

configure_logging()

app = FastAPI(title="FlexVolt Supplier Portal")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def _audit(request, call_next):
    return await audit_http_middleware(request, call_next)


# Added last so it runs first and the audit middleware sees the request context.
app.add_middleware(RequestContextMiddleware)

app.include_router(auth_router)
app.include_router(inventory_router)
app.include_router(warehouse_router)
app.include_router(orders_router)
app.include_router(compliance_router)
app.include_router(analytics_router)
app.include_router(events_admin_router)

_background: list[asyncio.Task] = []


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    # Outbox delivery to webhook subscribers, in-process.
    from app.events.dispatcher import run_dispatcher_forever

    _background.append(asyncio.create_task(run_dispatcher_forever(poll_interval_seconds=1.0)))
    _background.append(asyncio.create_task(audit_logger.run_flush_loop()))
    audit_logger.log_system_event(event="portal.startup", details={"tasks": len(_background)})


@app.on_event("shutdown")
async def _shutdown():
    for task in _background:
        task.cancel()
    _background.clear()
    streams = await analytics_engine.stop_all_streams()
    audit_logger.log_system_event(event="portal.shutdown", details={"streams_stopped": streams})
    audit_logger.shutdown()


@app.get("/health")
def health():
    return {"ok": True}
