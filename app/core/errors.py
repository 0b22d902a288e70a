"""Service-layer result type and the exceptions services raise internally.

Every public service operation returns a ServiceResult. Inside a service,
rule violations are raised as ServiceError subclasses and converted at the
operation boundary by @service_operation. API routes turn failed results
into HTTPException via unwrap().
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from fastapi import HTTPException


@dataclass
class ServiceResult:
    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, warnings: list[str] | None = None) -> "ServiceResult":
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str, code: str = "INTERNAL_ERROR", data: Any = None) -> "ServiceResult":
        return cls(success=False, data=data, error=error, code=code)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"success": self.success}
        if self.success:
            out["data"] = self.data
            if self.warnings:
                out["warnings"] = self.warnings
        else:
            out["error"] = self.error
            out["code"] = self.code
            if self.data is not None:
                out["data"] = self.data
        return out


class ServiceError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ServiceError):
    code = "VALIDATION_ERROR"


class PermissionDenied(ServiceError):
    code = "PERMISSION_DENIED"


class NotFound(ServiceError):
    code = "NOT_FOUND"


class Conflict(ServiceError):
    code = "CONFLICT"


class RateLimited(ServiceError):
    code = "RATE_LIMITED"


class AuthenticationFailed(ServiceError):
    code = "UNAUTHORIZED"


HTTP_STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "UNAUTHORIZED": 401,
    "PERMISSION_DENIED": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
}


def service_operation(failure_message: str) -> Callable:
    """Run a service function and always hand back a ServiceResult.

    The wrapped function takes the Session as its first argument. A
    ServiceError rolls back and becomes a failed result with the error's
    code; anything else is logged with traceback, rolled back and reported
    as INTERNAL_ERROR prefixed with failure_message.
    """

    def decorator(fn: Callable) -> Callable:
        logger = logging.getLogger(fn.__module__)

        @functools.wraps(fn)
        def wrapper(db, *args, **kwargs) -> ServiceResult:
            try:
                out = fn(db, *args, **kwargs)
            except ServiceError as e:
                db.rollback()
                logger.warning("%s rejected: %s", fn.__name__, e.message)
                return ServiceResult.fail(e.message, e.code)
            except Exception as e:
                db.rollback()
                logger.exception("%s failed", fn.__name__)
                return ServiceResult.fail(f"{failure_message}: {e}", "INTERNAL_ERROR")
            if isinstance(out, ServiceResult):
                return out
            return ServiceResult.ok(out)

        return wrapper

    return decorator


def unwrap(result: ServiceResult) -> Any:
    """Return result.data or raise the matching HTTPException."""
    if result.success:
        return result.data
    status = HTTP_STATUS_BY_CODE.get(result.code or "", 500)
    raise HTTPException(status_code=status, detail={"error": result.code, "message": result.error})
