import logging
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.db.models.common import utcnow
from app.db.models.security_audit import AuditLogEntry
from services.compliance import audit_logger as audit_module
from services.compliance.audit_logger import AuditLogger


@pytest.fixture
def logger_under_test(session_factory):
    return AuditLogger(session_factory, batch_size=3)


def stored(db):
    return db.query(AuditLogEntry).all()


def test_entries_wait_for_a_full_batch(db_session, logger_under_test):
    for i in range(2):
        logger_under_test.log_system_event(event=f"tick_{i}")
    assert logger_under_test.pending == 2
    assert stored(db_session) == []

    logger_under_test.log_system_event(event="tick_2")
    assert logger_under_test.pending == 0
    assert len(stored(db_session)) == 3


def test_critical_and_security_entries_flush_immediately(db_session, logger_under_test):
    logger_under_test.log_system_event(event="disk_full", severity="CRITICAL")
    assert len(stored(db_session)) == 1

    logger_under_test.log_security_event(event="token_reuse", actor="sup-1", risk_score=2)
    rows = {r.action: r for r in stored(db_session)}
    assert rows["token_reuse"].severity == "INFO"
    assert rows["token_reuse"].compliance_flags == ["RISK_LOW", "SECURITY_ALLOWED"]
    assert rows["token_reuse"].retention_days == 2555
    assert rows["disk_full"].result == "FAILURE"


class LockedSession:
    def add_all(self, rows):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


def test_failed_flush_requeues_batch(logger_under_test):
    logger_under_test.log_system_event(event="first")
    logger_under_test.session_factory = LockedSession
    assert logger_under_test.flush() == 0
    assert logger_under_test.pending == 1


def test_requeue_keeps_newest_entries_when_database_stays_down(logger_under_test, caplog):
    logger_under_test.session_factory = LockedSession
    with caplog.at_level(logging.ERROR, logger="audit"):
        for i in range(35):
            logger_under_test.log_system_event(event=f"tick_{i}")

    assert logger_under_test.max_pending == 30
    assert logger_under_test.pending == 30
    assert logger_under_test._queue[0]["action"] == "tick_5"
    assert logger_under_test._queue[-1]["action"] == "tick_34"
    drops = [r for r in caplog.records if "dropped" in r.getMessage()]
    assert [r.getMessage() for r in drops][0] == "Audit queue over 30 entries; dropped SYSTEM_EVENT tick_0 by system"
    assert len(drops) == 5


def test_shutdown_drains_queue(db_session, logger_under_test):
    logger_under_test.log_system_event(event="last_words")
    logger_under_test.shutdown()
    assert logger_under_test.pending == 0
    assert [r.action for r in stored(db_session)] == ["last_words"]


def test_data_access_classification(db_session, logger_under_test):
    logger_under_test.log_data_access(actor="sup-1", data_type="PERSONAL", operation="EXPORT", record_count=5000,
                                      warehouse="EU_GERMANY", legal_basis="contract")
    logger_under_test.flush()
    row = stored(db_session)[0]
    assert row.severity == "WARNING"
    assert row.details["classification"] == "RESTRICTED"
    assert row.compliance_flags == ["GDPR_RELEVANT", "BULK_ACCESS", "BASIS_CONTRACT"]
    assert row.jurisdictions == ["EU", "DE"]


def test_retention_and_severity_rules():
    assert audit_module.retention_for("COMPLIANCE", "EU_GERMANY") == 2555
    assert audit_module.retention_for("OPERATIONAL", "JAPAN") == 1095
    assert audit_module.retention_for("UNKNOWN", None) == 365
    assert audit_module.severity_for_risk(8) == "CRITICAL"
    assert audit_module.severity_for_risk(6.5) == "ERROR"
    assert audit_module.severity_for_risk(3) == "WARNING"
    assert audit_module.risk_flag(7) == "RISK_HIGH"
    assert audit_module.frameworks_for("JAPAN") == ["INTERNAL_COMPLIANCE", "JIS"]


def test_audit_report_summarises_period(db_session, logger_under_test):
    logger_under_test.log_violation_remediation(violation_id="VIO-1", method="AUTOMATIC", result="SUCCESS",
                                                supplier_id="sup-1", warehouse="US_WEST")
    logger_under_test.log_violation_remediation(violation_id="VIO-2", method="AUTOMATIC", result="FAILURE",
                                                supplier_id="sup-1", warehouse="US_WEST")
    logger_under_test.log_system_event(event="sync_failed", severity="ERROR")

    now = utcnow()
    report = logger_under_test.generate_audit_report(db_session, start=now - timedelta(minutes=5),
                                                     end=now + timedelta(minutes=5))
    assert report["total_events"] == 3
    assert report["events_by_type"] == {"VIOLATION_REMEDIATION": 2, "SYSTEM_EVENT": 1}
    assert report["compliance_score"] == 33.33
    assert report["recommendations"] == [
        "High error rate detected. Review system processes and error handling.",
    ]

    scoped = logger_under_test.generate_audit_report(db_session, start=now - timedelta(minutes=5),
                                                     end=now + timedelta(minutes=5),
                                                     filters={"warehouse": "US_WEST"})
    assert scoped["total_events"] == 2
