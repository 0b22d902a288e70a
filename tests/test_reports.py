from app.db.models.security_audit import AuditLogEntry
from services.analytics import reports
from services.compliance.audit_logger import audit_logger


def test_inventory_summary_as_csv(db_session, stock):
    result = reports.generate_report(db_session, report_type="INVENTORY_SUMMARY", format="csv", user_id="sup-1")
    assert result.success, result.error
    report = result.data
    assert report["format"] == "CSV"
    assert report["status"] == "COMPLETED"
    assert report["content"]["summary"]["total_units"] == 270
    assert report["content"]["summary"]["by_status"] == {"IN_STOCK": 2, "LOW_STOCK": 1}
    lines = report["rendered"].splitlines()
    assert lines[0] == "warehouse,sku,quantity,reserved,available,status,value"
    assert len(lines) == 4


def test_report_export_is_audited(db_session, stock):
    report = reports.generate_report(db_session, report_type="ORDER_SUMMARY", user_id="sup-1").data
    audit_logger.flush()
    entry = db_session.query(AuditLogEntry).filter(AuditLogEntry.resource_id == report["id"]).one()
    assert entry.action == "data_export"
    assert entry.details["classification"] == "CONFIDENTIAL"


def test_executive_summary_highlights(db_session, stock):
    stock["jp_6ah"].quantity = 0
    db_session.commit()
    content = reports.generate_report(db_session, report_type="EXECUTIVE_SUMMARY").data["content"]
    kpis = content["summary"]["kpis"]
    assert kpis["out_of_stock_items"] == 1
    assert kpis["compliance_rate"] == 100.0
    assert content["summary"]["highlights"] == ["1 items are out of stock"]


def test_rejects_unknown_type_and_format(db_session):
    assert reports.generate_report(db_session, report_type="HOROSCOPE").code == "VALIDATION_ERROR"
    assert reports.generate_report(db_session, report_type="ORDER_SUMMARY", format="XLSX").code == "VALIDATION_ERROR"
    bad_period = {"start": "2025-02-01T00:00:00", "end": "2025-01-01T00:00:00"}
    result = reports.generate_report(db_session, report_type="ORDER_SUMMARY", parameters=bad_period)
    assert result.code == "VALIDATION_ERROR"


def test_get_and_list_reports(db_session, warehouses):
    made = reports.generate_report(db_session, report_type="WAREHOUSE_COMPARISON",
                                   parameters={"title": "Q1 network"}).data
    fetched = reports.get_report(db_session, made["id"]).data
    assert fetched["title"] == "Q1 network"
    assert fetched["content"]["summary"]["warehouses"] == 4
    assert fetched["content"]["summary"]["top_performer"] is None

    listed = reports.list_reports(db_session, report_type="WAREHOUSE_COMPARISON").data
    assert [r["id"] for r in listed] == [made["id"]]
    assert "content" not in listed[0]
    assert reports.get_report(db_session, "missing").code == "NOT_FOUND"


def test_to_csv_handles_empty_rows():
    assert reports.to_csv([]) == ""
