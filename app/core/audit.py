from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.core.context import get_client_ip, get_request_id, get_user_agent
from app.db.models.security_audit import AuditLogEntry

logger = logging.getLogger("audit")


def json_safe(payload: dict | None) -> dict[str, Any]:
    """Coerce a payload into something a JSON column accepts."""
    try:
        return json.loads(json.dumps(payload or {}, default=str))
    except (TypeError, ValueError):
        return {"_payload_error": "non_json", "_payload_repr": repr(payload)}


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    details: dict | None = None,
    event_type: str = "SYSTEM_EVENT",
    category: str = "OPERATIONAL",
    severity: str = "INFO",
    warehouse: str | None = None,
    success: bool = True,
    status_code: int | None = None,
    retention_days: int = 1095,
    commit: bool = True,
) -> AuditLogEntry:
    """Write one audit record synchronously.

    Request id, client IP and user agent come from the request context.
    With commit=False the row joins the caller's transaction.
    """
    entry = AuditLogEntry(
        event_type=event_type,
        category=category,
        severity=severity,
        action=action,
        actor=actor or "system",
        resource_type=resource_type,
        resource_id=resource_id,
        warehouse=warehouse,
        result="SUCCESS" if success else "FAILURE",
        details=json_safe(details),
        request_id=get_request_id(),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
        status_code=status_code,
        retention_days=retention_days,
    )
    db.add(entry)
    if commit:
        db.commit()
    return entry
