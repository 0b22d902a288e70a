from __future__ import annotations

import logging
import time
from typing import Callable

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError

from app.core.audit import audit
from app.core.middleware import request_id_from
from app.core.security import principal_from_token
from app.db.session import SessionLocal

logger = logging.getLogger(__name__)


def _actor_from(request: Request) -> str:
    authz = request.headers.get("Authorization")
    if not authz or not authz.lower().startswith("bearer "):
        return "anonymous"
    token = authz.split(" ", 1)[1].strip()
    with SessionLocal() as db:
        principal = principal_from_token(db, token)
    return principal.email if principal.is_authenticated else "anonymous"


def _write(**kwargs) -> None:
    try:
        with SessionLocal() as db:
            audit(db, **kwargs)
    except SQLAlchemyError:
        # The request already has its outcome; a failed audit write is logged, not raised
        logger.exception("HTTP audit write failed for %s", kwargs.get("resource_id"))


async def audit_http_middleware(request: Request, call_next: Callable) -> Response:
    """Audit /auth traffic, authorization failures and unhandled errors."""
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        _write(
            actor="anonymous",
            action="http.exception",
            resource_type="http",
            resource_id=request.url.path,
            details={
                "method": request.method,
                "path": request.url.path,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
            event_type="SYSTEM_EVENT",
            category="SECURITY",
            severity="ERROR",
            success=False,
            status_code=500,
            retention_days=2555,
        )
        raise

    status_code = response.status_code
    if request.url.path.startswith("/auth") or status_code in (401, 403):
        _write(
            actor=_actor_from(request),
            action="http.request",
            resource_type="http",
            resource_id=request.url.path,
            details={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": int((time.perf_counter() - start) * 1000),
                "request_id": request_id_from(request),
            },
            event_type="SECURITY_EVENT",
            category="SECURITY",
            severity="WARNING" if status_code in (401, 403) else "INFO",
            success=200 <= status_code < 400,
            status_code=status_code,
            retention_days=2555,
        )

    return response
