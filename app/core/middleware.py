from __future__ import annotations
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from app.core.context import set_request_context


def request_id_from(request: Request) -> str:
    return request.headers.get("X-Request-Id") or request.headers.get("X-Request-ID") or str(uuid.uuid4())


def client_ip_from(request: Request) -> str | None:
    # Trust X-Forwarded-For only behind a proxy you control.
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request_id_from(request)
        set_request_context(request_id, client_ip_from(request), request.headers.get("User-Agent"))
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
