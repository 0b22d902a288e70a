from __future__ import annotations

import logging
import secrets
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from app.core.audit import json_safe
from app.core.context import get_request_id
from app.core.errors import PermissionDenied, ValidationFailed, service_operation
from app.core.security import Grant, can, can_view
from app.db.models.common import naive_utc, utcnow
from app.db.models.compliance import Certification, ComplianceCheck, ComplianceReport, ComplianceViolation
from app.db.models.warehouse import REGIONS
from app.events.bus import publish
from services.compliance import regulation_checker
from services.compliance.audit_logger import audit_logger
from services.compliance.regulation_checker import OPERATION_TYPES, PRODUCT_TYPES

logger = logging.getLogger(__name__)

REVIEW_DAYS = {"CRITICAL": 7, "HIGH": 30, "MEDIUM": 60, "LOW": 90}
EXPIRY_DAYS = 365
EXPIRING_WINDOW_DAYS = 30
TREND_THRESHOLD = 5

# Regulations that have an automated remediation path.
AUTO_REMEDIABLE = ("GDPR_DATA_RETENTION", "OSHA_SAFETY_DOCUMENTATION", "JIS_QUALITY_STANDARDS")


def _stamp_id(prefix: str, now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"{prefix}-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def risk_level_for(severities: list[str]) -> str:
    level = "LOW"
    for sev in severities:
        if sev in ("BLOCKING", "CRITICAL"):
            return "CRITICAL"
        if sev == "WARNING":
            level = "MEDIUM"
    return level


def compliance_score(violation_count: int) -> int:
    return 100 if violation_count == 0 else max(0, 100 - 10 * violation_count)


def certification_status(expires_at: datetime, now: datetime | None = None) -> str:
    now = now or utcnow()
    if expires_at <= now:
        return "EXPIRED"
    if expires_at <= now + timedelta(days=EXPIRING_WINDOW_DAYS):
        return "EXPIRING"
    return "VALID"


def violation_out(v: ComplianceViolation) -> dict:
    return {
        "id": v.id,
        "regulation": v.regulation,
        "category": v.category,
        "severity": v.severity,
        "description": v.description,
        "resolution": v.resolution,
        "deadline": v.deadline.isoformat() if v.deadline else None,
        "responsible_party": v.responsible_party,
        "estimated_cost": float(v.estimated_cost or 0),
        "automatic_fix": v.automatic_fix,
        "status": v.status,
        "warehouse": v.warehouse,
    }


@service_operation("Compliance check failed")
def check_compliance(
    db: Session,
    *,
    region: str,
    operation: str,
    product: str,
    supplier_id: str,
    access: Iterable[Grant],
    metadata: dict | None = None,
) -> dict:
    if region not in REGIONS:
        raise ValidationFailed(f"Unknown warehouse region: {region}")
    if not can(access, "MANAGE_COMPLIANCE", region):
        raise PermissionDenied(f"MANAGE_COMPLIANCE not granted for {region}")
    if operation not in OPERATION_TYPES:
        raise ValidationFailed(f"Unknown operation type: {operation}")
    if product not in PRODUCT_TYPES:
        raise ValidationFailed(f"Unknown product type: {product}")

    request_id = get_request_id()
    audit_args = dict(request_id=request_id, warehouse=region, operation_type=operation,
                      product_type=product, supplier_id=supplier_id)
    audit_logger.log_compliance_check(status="STARTED", **audit_args)
    try:
        result = _run_check(db, region, operation, product, supplier_id, metadata or {})
    except Exception as e:
        audit_logger.log_compliance_check(status="ERROR", error=str(e), **audit_args)
        raise

    audit_logger.log_compliance_check(
        status="COMPLETED",
        result={
            "compliant": result["compliant"],
            "risk_level": result["risk_level"],
            "violation_count": len(result["violations"]),
        },
        **audit_args,
    )
    return result


def _run_check(db: Session, region: str, operation: str, product: str, supplier_id: str, metadata: dict) -> dict:
    now = utcnow()
    regulations = regulation_checker.applicable_regulations(region, operation, product)

    check = ComplianceCheck(
        warehouse=region,
        operation_type=operation,
        product_type=product,
        supplier_id=supplier_id,
        status="COMPLIANT",
        risk_level="LOW",
        next_review_date=now,
        expiry_date=now + timedelta(days=EXPIRY_DAYS),
    )
    recommendations: list[str] = []
    certification_required = False
    for regulation in regulations:
        outcome = regulation_checker.check(regulation, metadata, product, now=now)
        if outcome.certification_required:
            certification_required = True
        if outcome.compliant:
            continue
        check.violations.append(ComplianceViolation(
            id=_stamp_id("VIO", now),
            supplier_id=supplier_id,
            warehouse=region,
            regulation=outcome.regulation,
            category=outcome.category,
            severity=outcome.severity,
            description=outcome.reason or "",
            resolution=outcome.remediation or "",
            deadline=now + timedelta(days=outcome.deadline_days),
            responsible_party=regulation_checker.responsible_party(region, outcome.category),
            estimated_cost=outcome.estimated_cost,
            automatic_fix=outcome.automatic_fix,
            status="OPEN",
        ))
        if outcome.remediation and outcome.remediation not in recommendations:
            recommendations.append(outcome.remediation)

    violations = list(check.violations)
    risk = risk_level_for([v.severity for v in violations])
    estimated_cost = sum(float(v.estimated_cost) for v in violations)
    check.status = "NON_COMPLIANT" if violations else "COMPLIANT"
    check.risk_level = risk
    check.overall_score = compliance_score(len(violations))
    check.next_review_date = now + timedelta(days=REVIEW_DAYS[risk])
    check.details = {
        "metadata": json_safe(metadata),
        "regulations_checked": [r.code for r in regulations],
        "recommendations": recommendations,
        "certification_required": certification_required,
        "estimated_cost": estimated_cost,
        "audit_trail": get_request_id(),
    }
    db.add(check)
    db.flush()

    for v in violations:
        publish(db, "ComplianceViolationDetected", {
            "check_id": check.id,
            "violation_id": v.id,
            "warehouse": region,
            "regulation": v.regulation,
            "severity": v.severity,
            "supplier_id": supplier_id,
        })
    db.commit()
    logger.info("Compliance check %s for %s/%s/%s: %s (%s violations)",
                check.id, region, operation, product, check.status, len(violations))

    return {
        "check_id": check.id,
        "compliant": not violations,
        "risk_level": risk,
        "violations": [violation_out(v) for v in violations],
        "recommendations": recommendations,
        "regulations_checked": [r.code for r in regulations],
        "audit_trail": check.details["audit_trail"],
        "expiry_date": check.expiry_date.isoformat(),
        "next_review_date": check.next_review_date.isoformat(),
        "certification_required": certification_required,
        "estimated_cost": estimated_cost or None,
        "overall_score": check.overall_score,
    }


def _checks(db: Session, region: str, supplier_id: str | None, start: datetime, end: datetime,
            include_end: bool = True) -> list[ComplianceCheck]:
    q = db.query(ComplianceCheck).filter(ComplianceCheck.warehouse == region, ComplianceCheck.created_at >= start)
    q = q.filter(ComplianceCheck.created_at <= end if include_end else ComplianceCheck.created_at < end)
    if supplier_id:
        q = q.filter(ComplianceCheck.supplier_id == supplier_id)
    return q.order_by(ComplianceCheck.created_at.desc()).all()


def _pass_rate(checks: list[ComplianceCheck]) -> float:
    if not checks:
        return 100.0
    return sum(1 for c in checks if c.status == "COMPLIANT") / len(checks) * 100


def trend_label(current: float, previous: float) -> str:
    if current - previous > TREND_THRESHOLD:
        return "IMPROVING"
    if previous - current > TREND_THRESHOLD:
        return "DECLINING"
    return "STABLE"


def next_audit_date(region: str, score: float, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    days = 180 if score < 70 or region == "EU_GERMANY" else 360
    return now + timedelta(days=days)


@service_operation("Failed to generate compliance report")
def generate_compliance_report(db: Session, *, region: str, start: datetime, end: datetime,
                               supplier_id: str, access: Iterable[Grant]) -> dict:
    start, end = naive_utc(start), naive_utc(end)
    if region not in REGIONS:
        raise ValidationFailed(f"Unknown warehouse region: {region}")
    if not can_view(access, region):
        raise PermissionDenied(f"No access to {region}")
    if start >= end:
        raise ValidationFailed("start must be before end")

    now = utcnow()
    checks = _checks(db, region, supplier_id, start, end)
    total = len(checks)
    passed = sum(1 for c in checks if c.status == "COMPLIANT")
    score = round(_pass_rate(checks), 2)
    violations = [v for c in checks for v in c.violations]

    previous = _checks(db, region, supplier_id, start - (end - start), start, include_end=False)
    prev_score = _pass_rate(previous)
    prev_violations = sum(len(c.violations) for c in previous)

    certs = db.query(Certification).filter(Certification.warehouse == region).all()
    body = {
        "total_checks": total,
        "passed_checks": passed,
        "violations": [violation_out(v) for v in violations],
        "violations_by_severity": dict(Counter(v.severity for v in violations)),
        "violations_by_regulation": dict(Counter(v.regulation for v in violations)),
        "trends": {
            "direction": trend_label(score, prev_score),
            "score_change": round(score - prev_score, 2),
            "violation_change": len(violations) - prev_violations,
            "cost_impact": sum(float(v.estimated_cost or 0) for v in violations),
        },
        "certifications": [
            {
                "name": c.name,
                "issued_at": c.issued_at.isoformat(),
                "expires_at": c.expires_at.isoformat(),
                "status": certification_status(c.expires_at, now),
            }
            for c in certs
        ],
        "next_audit_date": next_audit_date(region, score, now).isoformat(),
    }
    report = ComplianceReport(
        report_number=_stamp_id("RPT", now),
        warehouse=region,
        supplier_id=supplier_id,
        period_start=start,
        period_end=end,
        score=score,
        body=body,
    )
    db.add(report)
    db.commit()
    logger.info("Compliance report %s for %s: score %s over %s checks", report.report_number, region, score, total)
    return {
        "id": report.report_number,
        "warehouse": region,
        "generated_at": now.isoformat(),
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "overall_score": score,
        **body,
    }


def region_status(open_violations: list[ComplianceViolation]) -> str:
    if any(v.severity in ("CRITICAL", "BLOCKING") for v in open_violations):
        return "CRITICAL"
    if len(open_violations) > 5:
        return "HIGH"
    if len(open_violations) > 2:
        return "MEDIUM"
    return "LOW"


@service_operation("Failed to load compliance dashboard")
def get_compliance_dashboard(db: Session, *, supplier_id: str) -> dict:
    now = utcnow()
    statuses = []
    for region in REGIONS:
        latest = (
            db.query(ComplianceCheck)
            .filter(ComplianceCheck.warehouse == region, ComplianceCheck.supplier_id == supplier_id)
            .order_by(ComplianceCheck.created_at.desc())
            .first()
        )
        open_v = [v for v in latest.violations if v.status == "OPEN"] if latest else []
        risk = region_status(open_v)
        statuses.append({
            "warehouse": region,
            "overall_score": latest.overall_score if latest else 100,
            "risk_level": risk,
            "last_check": latest.created_at.isoformat() if latest else None,
            "next_review": (now + timedelta(days=REVIEW_DAYS[risk])).isoformat(),
            "active_violations": len(open_v),
            "critical_issues": sum(1 for v in open_v if v.severity in ("CRITICAL", "BLOCKING")),
        })

    open_violations = (
        db.query(ComplianceViolation)
        .filter(ComplianceViolation.supplier_id == supplier_id, ComplianceViolation.status == "OPEN")
        .order_by(ComplianceViolation.created_at.desc())
        .all()
    )
    total_violations = db.query(ComplianceViolation).filter(ComplianceViolation.supplier_id == supplier_id).count()
    certs = db.query(Certification).filter(Certification.supplier_id == supplier_id).all()
    cert_counts = Counter(certification_status(c.expires_at, now) for c in certs)

    since = now - timedelta(days=30)
    recent = (
        db.query(ComplianceCheck)
        .filter(ComplianceCheck.supplier_id == supplier_id, ComplianceCheck.created_at >= since)
        .all()
    )
    daily: dict[str, list[ComplianceCheck]] = defaultdict(list)
    for c in recent:
        daily[c.created_at.date().isoformat()].append(c)
    trend = []
    for i in range(30, -1, -1):
        day = (now - timedelta(days=i)).date().isoformat()
        checks = daily.get(day, [])
        trend.append({
            "date": day,
            "checks": len(checks),
            "pass_rate": round(_pass_rate(checks), 2) if checks else None,
        })

    return {
        "warehouse_statuses": statuses,
        "global_metrics": {
            "average_score": round(sum(s["overall_score"] for s in statuses) / len(statuses), 2),
            "total_violations": total_violations,
            "open_violations": len(open_violations),
            "critical_violations": sum(1 for v in open_violations if v.severity in ("CRITICAL", "BLOCKING")),
            "compliance_cost": sum(float(v.estimated_cost or 0) for v in open_violations),
            "certification_status": {
                "valid": cert_counts["VALID"],
                "expiring": cert_counts["EXPIRING"],
                "expired": cert_counts["EXPIRED"],
            },
        },
        "alerts": [
            {
                "id": v.id,
                "severity": v.severity,
                "message": f"{v.regulation}: {v.description}",
                "warehouse": v.warehouse,
                "deadline": v.deadline.isoformat() if v.deadline else None,
            }
            for v in open_violations[:10]
        ],
        "trends": trend,
    }


@service_operation("Failed to remediate violations")
def remediate_violations(db: Session, *, violation_ids: list[str], supplier_id: str,
                         access: Iterable[Grant]) -> dict:
    remediated: list[str] = []
    failed: list[dict] = []
    savings = 0.0
    now = utcnow()

    for vid in violation_ids:
        v = db.query(ComplianceViolation).filter(ComplianceViolation.id == vid).first()
        error = None
        if not v:
            error = "Violation not found"
        elif not can(access, "MANAGE_COMPLIANCE", v.warehouse):
            error = f"MANAGE_COMPLIANCE not granted for {v.warehouse}"
        elif not v.automatic_fix:
            error = "Manual intervention required"
        elif v.regulation not in AUTO_REMEDIABLE:
            error = "No automatic remediation available for this violation type"

        if error:
            failed.append({"id": vid, "error": error})
            audit_logger.log_violation_remediation(
                violation_id=vid, method="AUTOMATIC", result="FAILURE", supplier_id=supplier_id,
                warehouse=v.warehouse if v else None, details={"error": error},
            )
            continue

        v.status = "RESOLVED"
        v.resolved_at = now
        v.resolution_method = "AUTOMATIC"
        savings += float(v.estimated_cost or 0)
        remediated.append(vid)
        audit_logger.log_violation_remediation(
            violation_id=vid, method="AUTOMATIC", result="SUCCESS", supplier_id=supplier_id,
            warehouse=v.warehouse, details={"regulation": v.regulation},
        )

    db.commit()
    logger.info("Remediated %s of %s violations for %s", len(remediated), len(violation_ids), supplier_id)
    return {"remediated": remediated, "failed": failed, "savings": savings}


@service_operation("Failed to record certification")
def add_certification(db: Session, *, supplier_id: str, warehouse: str, name: str, issued_at: datetime,
                      expires_at: datetime, access: Iterable[Grant]) -> dict:
    issued_at, expires_at = naive_utc(issued_at), naive_utc(expires_at)
    if warehouse not in REGIONS:
        raise ValidationFailed(f"Unknown warehouse region: {warehouse}")
    if not can(access, "MANAGE_COMPLIANCE", warehouse):
        raise PermissionDenied(f"MANAGE_COMPLIANCE not granted for {warehouse}")
    if expires_at <= issued_at:
        raise ValidationFailed("expires_at must be after issued_at")
    cert = Certification(supplier_id=supplier_id, warehouse=warehouse, name=name,
                         issued_at=issued_at, expires_at=expires_at)
    db.add(cert)
    db.commit()
    return {
        "id": cert.id,
        "name": cert.name,
        "warehouse": cert.warehouse,
        "expires_at": cert.expires_at.isoformat(),
        "status": certification_status(cert.expires_at),
    }
