"""Compliance checks, remediation, reports, dashboard and certifications."""

from datetime import datetime, timedelta

import pytest

from app.core.security import PERMISSIONS, Grant
from app.db.models.common import utcnow
from app.db.models.compliance import ComplianceViolation
from app.db.models.security_audit import AuditLogEntry
from app.events.outbox import OutboxEvent
from services.compliance import service
from services.compliance.audit_logger import audit_logger

SUPPLIER = "sup-1"
ADMIN = [Grant(warehouse="ALL", role="ADMIN", perms=list(PERMISSIONS))]


def run_check(db, region="US_WEST", operation="INVENTORY", product="FLEXVOLT_6AH", metadata=None):
    result = service.check_compliance(db, region=region, operation=operation, product=product,
                                      supplier_id=SUPPLIER, access=ADMIN, metadata=metadata or {})
    assert result.success, result.error
    return result.data


def test_missing_data_is_critical_with_weekly_review(db_session):
    before = utcnow()
    data = run_check(db_session)
    assert data["compliant"] is False
    assert data["risk_level"] == "CRITICAL"
    assert data["regulations_checked"] == ["OSHA_SAFETY_DOCUMENTATION", "ISO14001_EMS"]
    assert {v["regulation"] for v in data["violations"]} == {"OSHA_SAFETY_DOCUMENTATION", "ISO14001_EMS"}
    assert data["overall_score"] == 80
    assert data["estimated_cost"] == 17500.0

    review = datetime.fromisoformat(data["next_review_date"])
    assert before + timedelta(days=7) <= review <= utcnow() + timedelta(days=7)

    osha = next(v for v in data["violations"] if v["regulation"] == "OSHA_SAFETY_DOCUMENTATION")
    assert osha["responsible_party"] == "US Safety Officer"
    assert osha["automatic_fix"] is True
    assert osha["status"] == "OPEN"

    topics = [e.topic for e in db_session.query(OutboxEvent).all()]
    assert topics.count("ComplianceViolationDetected") == 2


def test_check_writes_audit_trail(db_session):
    run_check(db_session)
    audit_logger.flush()
    actions = sorted(e.action for e in db_session.query(AuditLogEntry).all())
    assert actions == ["compliance_check_completed", "compliance_check_started"]
    completed = db_session.query(AuditLogEntry).filter(AuditLogEntry.action == "compliance_check_completed").one()
    assert "CRITICAL_RISK" in completed.compliance_flags
    assert completed.frameworks == ["INTERNAL_COMPLIANCE", "OSHA", "DOT", "SOX"]


def test_no_applicable_regulations_is_compliant(db_session):
    data = run_check(db_session, region="JAPAN", operation="DATA_PROCESSING", product="ACCESSORIES")
    assert data["compliant"] is True
    assert data["risk_level"] == "LOW"
    assert data["overall_score"] == 100
    assert data["estimated_cost"] is None


@pytest.mark.parametrize("field,value", [
    ("region", "MARS"),
    ("operation", "JUGGLING"),
    ("product", "FLEXVOLT_99AH"),
])
def test_check_rejects_unknown_inputs(db_session, field, value):
    args = {"region": "US_WEST", "operation": "INVENTORY", "product": "FLEXVOLT_6AH", field: value}
    result = service.check_compliance(db_session, access=ADMIN, supplier_id=SUPPLIER, metadata={}, **args)
    assert result.code == "VALIDATION_ERROR"


def test_remediation_resolves_only_automatic_fixes(db_session):
    data = run_check(db_session)
    ids = {v["regulation"]: v["id"] for v in data["violations"]}
    result = service.remediate_violations(
        db_session,
        violation_ids=[ids["OSHA_SAFETY_DOCUMENTATION"], ids["ISO14001_EMS"], "VIO-missing"],
        supplier_id=SUPPLIER,
        access=ADMIN,
    )
    assert result.success
    assert result.data["remediated"] == [ids["OSHA_SAFETY_DOCUMENTATION"]]
    assert result.data["failed"] == [
        {"id": ids["ISO14001_EMS"], "error": "Manual intervention required"},
        {"id": "VIO-missing", "error": "Violation not found"},
    ]
    assert result.data["savings"] == 2500.0

    resolved = db_session.query(ComplianceViolation).filter(
        ComplianceViolation.id == ids["OSHA_SAFETY_DOCUMENTATION"]).one()
    assert resolved.status == "RESOLVED"
    assert resolved.resolution_method == "AUTOMATIC"


def test_dashboard_reflects_open_violations(db_session):
    data = run_check(db_session)
    dashboard = service.get_compliance_dashboard(db_session, supplier_id=SUPPLIER).data
    us = next(s for s in dashboard["warehouse_statuses"] if s["warehouse"] == "US_WEST")
    assert us["risk_level"] == "CRITICAL"
    assert us["active_violations"] == 2
    assert dashboard["global_metrics"]["open_violations"] == 2
    assert dashboard["global_metrics"]["critical_violations"] == 1
    assert len(dashboard["trends"]) == 31
    assert dashboard["trends"][-1]["checks"] == 1

    osha = next(v["id"] for v in data["violations"] if v["regulation"] == "OSHA_SAFETY_DOCUMENTATION")
    service.remediate_violations(db_session, access=ADMIN, violation_ids=[osha], supplier_id=SUPPLIER)
    dashboard = service.get_compliance_dashboard(db_session, supplier_id=SUPPLIER).data
    us = next(s for s in dashboard["warehouse_statuses"] if s["warehouse"] == "US_WEST")
    assert us["risk_level"] == "LOW"
    assert dashboard["global_metrics"]["compliance_cost"] == 15000.0


def test_report_scores_period_and_trend(db_session):
    run_check(db_session)
    run_check(db_session, operation="SHIPPING", product="ACCESSORIES")
    now = utcnow()
    result = service.generate_compliance_report(
        db_session, region="US_WEST", start=now - timedelta(days=1), end=now + timedelta(minutes=1),
        supplier_id=SUPPLIER, access=ADMIN,
    )
    assert result.success, result.error
    report = result.data
    assert report["total_checks"] == 2
    assert report["passed_checks"] == 1
    assert report["overall_score"] == 50.0
    assert report["violations_by_severity"] == {"CRITICAL": 1, "INFO": 1}
    assert report["trends"]["direction"] == "DECLINING"
    assert report["id"].startswith("RPT-")
    assert datetime.fromisoformat(report["next_audit_date"]) > now + timedelta(days=179)


def test_report_rejects_inverted_period(db_session):
    now = utcnow()
    result = service.generate_compliance_report(db_session, access=ADMIN, region="US_WEST", start=now, end=now,
                                                 supplier_id=SUPPLIER)
    assert result.code == "VALIDATION_ERROR"


def test_certification_status_windows(db_session):
    now = utcnow()
    assert service.certification_status(now - timedelta(days=1), now) == "EXPIRED"
    assert service.certification_status(now + timedelta(days=10), now) == "EXPIRING"
    assert service.certification_status(now + timedelta(days=90), now) == "VALID"

    added = service.add_certification(db_session, access=ADMIN, supplier_id=SUPPLIER, warehouse="EU_GERMANY", name="CE",
                                      issued_at=now - timedelta(days=300), expires_at=now + timedelta(days=20))
    assert added.data["status"] == "EXPIRING"
    bad = service.add_certification(db_session, access=ADMIN, supplier_id=SUPPLIER, warehouse="EU_GERMANY", name="CE",
                                    issued_at=now, expires_at=now - timedelta(days=1))
    assert bad.code == "VALIDATION_ERROR"

    dashboard = service.get_compliance_dashboard(db_session, supplier_id=SUPPLIER).data
    assert dashboard["global_metrics"]["certification_status"] == {"valid": 0, "expiring": 1, "expired": 0}


def test_scoring_helpers():
    assert service.risk_level_for(["INFO", "WARNING"]) == "MEDIUM"
    assert service.risk_level_for(["BLOCKING"]) == "CRITICAL"
    assert service.risk_level_for([]) == "LOW"
    assert service.compliance_score(0) == 100
    assert service.compliance_score(12) == 0
    assert service.trend_label(90, 80) == "IMPROVING"
    assert service.trend_label(82, 80) == "STABLE"


def test_compliance_actions_need_region_grant(db_session):
    japan_only = [Grant(warehouse="JAPAN", role="MANAGER", perms=["MANAGE_COMPLIANCE"])]
    denied = service.check_compliance(db_session, region="US_WEST", operation="INVENTORY", product="FLEXVOLT_6AH",
                                      supplier_id=SUPPLIER, access=japan_only)
    assert denied.code == "PERMISSION_DENIED"

    data = run_check(db_session)
    osha = next(v["id"] for v in data["violations"] if v["regulation"] == "OSHA_SAFETY_DOCUMENTATION")
    result = service.remediate_violations(db_session, violation_ids=[osha], supplier_id=SUPPLIER, access=japan_only)
    assert result.data["remediated"] == []
    assert result.data["failed"] == [{"id": osha, "error": "MANAGE_COMPLIANCE not granted for US_WEST"}]

    now = utcnow()
    report = service.generate_compliance_report(db_session, region="US_WEST", start=now - timedelta(days=1), end=now,
                                                supplier_id=SUPPLIER, access=japan_only)
    assert report.code == "PERMISSION_DENIED"
    cert = service.add_certification(db_session, supplier_id=SUPPLIER, warehouse="US_WEST", name="OSHA VPP",
                                     issued_at=now, expires_at=now + timedelta(days=365), access=japan_only)
    assert cert.code == "PERMISSION_DENIED"
