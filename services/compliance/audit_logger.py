"""Batched compliance audit trail.

Entries are queued in memory and written in batches. CRITICAL entries and
anything in the SECURITY category are written straight away. A background
task flushes the queue on a timer; shutdown() stops it and drains the queue.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.audit import json_safe
from app.core.context import get_client_ip, get_request_id, get_user_agent
from app.db.models.common import utcnow
from app.db.models.security_audit import AuditLogEntry
from app.db.session import SessionLocal

logger = logging.getLogger("audit")

AUDIT_BATCH_SIZE = int(os.getenv("AUDIT_BATCH_SIZE", "100"))
AUDIT_FLUSH_INTERVAL_SECONDS = float(os.getenv("AUDIT_FLUSH_INTERVAL_SECONDS", "5"))
AUDIT_MAX_PENDING_BATCHES = 10

JURISDICTIONS = {
    "US_WEST": ["US", "CALIFORNIA"],
    "JAPAN": ["JP"],
    "EU_GERMANY": ["EU", "DE"],
    "AUSTRALIA": ["AU"],
}

REGIONAL_FRAMEWORKS = {
    "US_WEST": ["OSHA", "DOT", "SOX"],
    "JAPAN": ["JIS"],
    "EU_GERMANY": ["GDPR", "CE"],
    "AUSTRALIA": ["ACL"],
}

RETENTION_DAYS = {
    "COMPLIANCE": 2555,
    "SECURITY": 2555,
    "OPERATIONAL": 1095,
    "ADMINISTRATIVE": 365,
}
EU_COMPLIANCE_MIN_RETENTION = 2190

CHECK_RESULTS = {"STARTED": "PENDING", "COMPLETED": "SUCCESS", "ERROR": "FAILURE"}
SECURITY_RESULTS = {"ALLOWED": "SUCCESS", "BLOCKED": "FAILURE", "FLAGGED": "PARTIAL"}


def jurisdictions_for(warehouse: str | None) -> list[str]:
    return list(JURISDICTIONS.get(warehouse or "", []))


def frameworks_for(warehouse: str | None) -> list[str]:
    return ["INTERNAL_COMPLIANCE"] + REGIONAL_FRAMEWORKS.get(warehouse or "", [])


def retention_for(category: str, warehouse: str | None) -> int:
    days = RETENTION_DAYS.get(category, 365)
    if category == "COMPLIANCE" and warehouse == "EU_GERMANY":
        days = max(days, EU_COMPLIANCE_MIN_RETENTION)
    return days


def severity_for_risk(risk_score: float) -> str:
    if risk_score >= 8:
        return "CRITICAL"
    if risk_score >= 6:
        return "ERROR"
    if risk_score >= 3:
        return "WARNING"
    return "INFO"


def risk_flag(risk_score: float) -> str:
    if risk_score >= 7:
        return "RISK_HIGH"
    if risk_score >= 4:
        return "RISK_MEDIUM"
    return "RISK_LOW"


class AuditLogger:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        batch_size: int = AUDIT_BATCH_SIZE,
        flush_interval: float = AUDIT_FLUSH_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._queue: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stopped = False

    @property
    def max_pending(self) -> int:
        # Oldest entries beyond this are dropped when a flush keeps failing
        return self.batch_size * AUDIT_MAX_PENDING_BATCHES

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def enqueue(self, entry: dict[str, Any]) -> None:
        entry.setdefault("created_at", utcnow())
        entry.setdefault("request_id", get_request_id())
        entry.setdefault("ip_address", get_client_ip())
        entry.setdefault("user_agent", get_user_agent())
        entry["details"] = json_safe(entry.get("details"))

        with self._lock:
            self._queue.append(entry)
            size = len(self._queue)
        if entry["severity"] == "CRITICAL" or entry["category"] == "SECURITY" or size >= self.batch_size:
            self.flush()

    def flush(self) -> int:
        """Write everything queued in one transaction; return rows written."""
        with self._lock:
            batch, self._queue = self._queue, []
        if not batch:
            return 0

        db = self.session_factory()
        try:
            db.add_all([AuditLogEntry(**e) for e in batch])
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to flush %s audit entries; re-queued", len(batch))
            with self._lock:
                queue = batch + self._queue
                overflow = max(0, len(queue) - self.max_pending)
                dropped, self._queue = queue[:overflow], queue[overflow:]
            for e in dropped:
                logger.error("Audit queue over %s entries; dropped %s %s by %s", self.max_pending,
                             e["event_type"], e["action"], e["actor"])
            return 0
        finally:
            db.close()
        return len(batch)

    async def run_flush_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.flush_interval)
            self.flush()

    def shutdown(self) -> None:
        self._stopped = True
        written = self.flush()
        logger.info("Audit logger stopped; final flush wrote %s entries", written)

    def _entry(
        self,
        *,
        event_type: str,
        category: str,
        severity: str,
        action: str,
        actor: str | None,
        resource_type: str,
        resource_id: str | None = None,
        warehouse: str | None = None,
        result: str = "SUCCESS",
        details: dict | None = None,
        flags: list[str] | None = None,
        retention_days: int | None = None,
    ) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "category": category,
            "severity": severity,
            "action": action,
            "actor": actor or "system",
            "resource_type": resource_type,
            "resource_id": resource_id,
            "warehouse": warehouse,
            "jurisdictions": jurisdictions_for(warehouse),
            "frameworks": frameworks_for(warehouse),
            "result": result,
            "details": details or {},
            "compliance_flags": flags or [],
            "retention_days": retention_days or retention_for(category, warehouse),
        }

    def log_compliance_check(
        self,
        *,
        request_id: str,
        warehouse: str,
        operation_type: str,
        product_type: str | None,
        supplier_id: str | None,
        status: str,
        result: dict | None = None,
        error: str | None = None,
    ) -> None:
        flags = ["COMPLIANCE_CHECK"]
        if error:
            flags.append("PROCESSING_ERROR")
        if result and not result.get("compliant", True):
            flags.append("NON_COMPLIANT")
        if result and result.get("risk_level") == "CRITICAL":
            flags.append("CRITICAL_RISK")
        flags += [f"WAREHOUSE_{warehouse}", f"OPERATION_{operation_type}"]
        if product_type:
            flags.append(f"PRODUCT_{product_type}")

        self.enqueue(self._entry(
            event_type="COMPLIANCE_CHECK",
            category="COMPLIANCE",
            severity="ERROR" if status == "ERROR" else "INFO",
            action=f"compliance_check_{status.lower()}",
            actor=supplier_id,
            resource_type="compliance_check",
            resource_id=request_id,
            warehouse=warehouse,
            result=CHECK_RESULTS.get(status, "PENDING"),
            details={"operation_type": operation_type, "product_type": product_type, "result": result, "error": error},
            flags=flags,
        ))

    def log_violation_remediation(
        self,
        *,
        violation_id: str,
        method: str,
        result: str,
        supplier_id: str | None,
        warehouse: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.enqueue(self._entry(
            event_type="VIOLATION_REMEDIATION",
            category="COMPLIANCE",
            severity="INFO" if result == "SUCCESS" else "WARNING",
            action=f"remediation_{method.lower()}",
            actor=supplier_id,
            resource_type="compliance_violation",
            resource_id=violation_id,
            warehouse=warehouse,
            result="SUCCESS" if result == "SUCCESS" else "FAILURE",
            details={"method": method, **(details or {})},
            flags=["VIOLATION_REMEDIATION", f"METHOD_{method}"],
            retention_days=2555,
        ))

    def log_security_event(
        self,
        *,
        event: str,
        actor: str | None,
        risk_score: float,
        result: str = "ALLOWED",
        warehouse: str | None = None,
        resource_type: str = "security",
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.enqueue(self._entry(
            event_type="SECURITY_EVENT",
            category="SECURITY",
            severity=severity_for_risk(risk_score),
            action=event,
            actor=actor,
            resource_type=resource_type,
            resource_id=resource_id,
            warehouse=warehouse,
            result=SECURITY_RESULTS.get(result, "PARTIAL"),
            details={"risk_score": risk_score, **(details or {})},
            flags=[risk_flag(risk_score), f"SECURITY_{result}"],
        ))

    def log_data_access(
        self,
        *,
        actor: str | None,
        data_type: str,
        operation: str,
        record_count: int = 1,
        warehouse: str | None = None,
        legal_basis: str | None = None,
        consent: bool = False,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        severity = "INFO"
        if data_type == "PERSONAL" and operation == "EXPORT":
            severity = "WARNING"
        if data_type == "FINANCIAL" and operation == "DELETE":
            severity = "ERROR"
        classification = {"PERSONAL": "RESTRICTED", "FINANCIAL": "CONFIDENTIAL"}.get(data_type, "INTERNAL")

        flags = []
        if data_type == "PERSONAL" and warehouse == "EU_GERMANY":
            flags.append("GDPR_RELEVANT")
        if record_count > 1000:
            flags.append("BULK_ACCESS")
        if legal_basis:
            flags.append(f"BASIS_{legal_basis.upper()}")
        if consent:
            flags.append("CONSENT_BASED")

        self.enqueue(self._entry(
            event_type="DATA_ACCESS",
            category="COMPLIANCE",
            severity=severity,
            action=f"data_{operation.lower()}",
            actor=actor,
            resource_type=data_type.lower(),
            resource_id=resource_id,
            warehouse=warehouse,
            details={
                "data_type": data_type,
                "operation": operation,
                "record_count": record_count,
                "classification": classification,
                "legal_basis": legal_basis,
                **(details or {}),
            },
            flags=flags,
        ))

    def log_system_event(
        self,
        *,
        event: str,
        severity: str = "INFO",
        category: str = "OPERATIONAL",
        warehouse: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.enqueue(self._entry(
            event_type="SYSTEM_EVENT",
            category=category,
            severity=severity,
            action=event,
            actor="system",
            resource_type="system",
            warehouse=warehouse,
            result="FAILURE" if severity in ("ERROR", "CRITICAL") else "SUCCESS",
            details=details,
        ))

    def generate_audit_report(self, db: Session, *, start: datetime, end: datetime,
                              filters: dict | None = None) -> dict:
        self.flush()
        filters = filters or {}
        q = db.query(AuditLogEntry).filter(AuditLogEntry.created_at >= start, AuditLogEntry.created_at <= end)
        if filters.get("warehouse"):
            q = q.filter(AuditLogEntry.warehouse == filters["warehouse"])
        if filters.get("category"):
            q = q.filter(AuditLogEntry.category == filters["category"])
        if filters.get("event_type"):
            q = q.filter(AuditLogEntry.event_type == filters["event_type"])
        if filters.get("actor"):
            q = q.filter(AuditLogEntry.actor == filters["actor"])
        rows = q.all()

        total = len(rows)
        by_type = Counter(r.event_type for r in rows)
        by_severity = Counter(r.severity for r in rows)
        by_category = Counter(r.category for r in rows)
        successes = sum(1 for r in rows if r.result == "SUCCESS")
        score = round(successes / total * 100, 2) if total else 100.0

        recommendations = []
        if total and by_severity["ERROR"] / total > 0.1:
            recommendations.append("High error rate detected. Review system processes and error handling.")
        if by_severity["CRITICAL"]:
            recommendations.append("Critical events detected. Immediate investigation required.")
        if total and by_category["SECURITY"] / total > 0.05:
            recommendations.append("Elevated security event volume. Review access controls and monitoring.")

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_events": total,
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "events_by_category": dict(by_category),
            "compliance_score": score,
            "recommendations": recommendations,
        }


audit_logger = AuditLogger()
