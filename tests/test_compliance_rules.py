from datetime import datetime

import pytest

from services.compliance import regulation_checker, rules

NOW = datetime(2025, 6, 1, 12, 0, 0)


def ppe(quantity=20, accessible=True):
    return {item: {"quantity": quantity, "accessible": accessible} for item in rules.PPE_ITEMS}


def test_ppe_requires_inventory_data():
    result = rules.validate("US_OSHA_PPE_AVAILABILITY", {}, "FLEXVOLT_6AH", now=NOW)
    assert not result.passed
    assert result.metadata == {"missing_data": "ppe_inventory"}


def test_ppe_flags_short_and_inaccessible_items():
    inventory = ppe()
    inventory["gloves"]["quantity"] = 4
    inventory["hard_hat"]["accessible"] = False
    result = rules.validate("US_OSHA_PPE_AVAILABILITY", {"warehouse_data": {"ppe_inventory": inventory}}, now=NOW)
    assert not result.passed
    assert result.metadata["missing_equipment"] == ["gloves", "hard_hat"]
    assert result.remediation == "Restock the following PPE items: gloves, hard_hat"

    ok = rules.validate("US_OSHA_PPE_AVAILABILITY", {"warehouse_data": {"ppe_inventory": ppe()}}, now=NOW)
    assert ok.passed


def test_un3480_exempts_non_battery_products():
    meta = {"shipment_data": {"packaging": {"certifications": []}}}
    result = rules.validate("US_DOT_UN3480_PACKAGING", meta, "CHARGERS", now=NOW)
    assert result.passed
    assert result.metadata["exemption"] == "non_lithium_product"


def test_un3480_collects_every_violation():
    meta = {"shipment_data": {"packaging": {"certifications": ["UN3480"], "markings": [], "documentation": []}}}
    result = rules.validate("US_DOT_UN3480_PACKAGING", meta, "FLEXVOLT_9AH", now=NOW)
    assert not result.passed
    assert result.metadata["violations"] == ["Missing lithium battery markings", "Missing shipping documentation"]


def test_jis_documents_must_be_japanese_and_current():
    docs = {d: {"present": True, "language": "japanese", "last_updated": "2025-01-01"} for d in rules.JIS_DOCUMENTS}
    docs["training_records"]["language"] = "english"
    docs["calibration_records"]["last_updated"] = "2020-01-01T00:00:00Z"
    result = rules.validate("JP_JIS_QUALITY_DOCUMENTATION", {"quality_data": {"documentation": docs}}, now=NOW)
    assert not result.passed
    assert result.metadata["missing_docs"] == ["training_records"]
    assert result.metadata["expired_docs"] == ["calibration_records"]


def gdpr_policies():
    return {
        data_type: {"retention_days": days, "automatic_deletion": True, "consent_based_deletion": True}
        for data_type, days in rules.GDPR_MAX_RETENTION_DAYS.items()
    }


def test_gdpr_passes_with_complete_governance():
    meta = {"data_governance": {"retention_policies": gdpr_policies(),
                                "data_subject_rights": list(rules.GDPR_SUBJECT_RIGHTS)}}
    assert rules.validate("EU_GDPR_DATA_RETENTION", meta, now=NOW).passed


def test_gdpr_retention_limits_and_rights():
    policies = gdpr_policies()
    policies["employee_data"]["retention_days"] = 400
    del policies["order_data"]
    meta = {"data_governance": {"retention_policies": policies, "data_subject_rights": ["access"]}}
    result = rules.validate("EU_GDPR_DATA_RETENTION", meta, now=NOW)
    assert not result.passed
    violations = result.metadata["violations"]
    assert "No retention policy for order_data" in violations
    assert "employee_data retention period (400 days) exceeds maximum (365 days)" in violations
    assert result.metadata["missing_rights"] == ["rectification", "erasure", "portability"]


def test_ce_certificate_expiry_and_battery_standards():
    cert = {
        "expiry_date": "2025-05-01",
        "documents": list(rules.CE_DOCUMENTS),
        "standards": ["EN 55032"],
        "requires_notified_body": True,
    }
    result = rules.validate("EU_CE_CERTIFICATE_VALIDATION", {"certification_data": {"ce_certificate": cert}},
                            "FLEXVOLT_6AH", now=NOW)
    violations = result.metadata["violations"]
    assert "CE certificate has expired" in violations
    assert "Missing notified body approval number" in violations
    assert any(v.startswith("Missing conformity to standards") for v in violations)


def test_acl_safety_requirements():
    meta = {"safety_data": {
        "certifications": {"standards": list(rules.ACL_BATTERY_STANDARDS), "expiry_date": "2026-01-01"},
        "documents": list(rules.ACL_DOCUMENTS),
        "warnings": list(rules.ACL_WARNINGS),
    }}
    assert rules.validate("AU_ACL_PRODUCT_SAFETY", meta, "FLEXVOLT_15AH", now=NOW).passed
    meta["safety_data"]["warnings"] = ["voltage_warning"]
    failed = rules.validate("AU_ACL_PRODUCT_SAFETY", meta, "FLEXVOLT_15AH", now=NOW)
    assert failed.reason == "Missing safety warnings: disposal_instructions, age_restrictions"


def test_iso14001_review_must_be_annual():
    ems = {
        "elements": list(rules.EMS_ELEMENTS),
        "documentation": list(rules.EMS_DOCUMENTS),
        "last_review": "2024-01-15",
    }
    result = rules.validate("GLOBAL_ISO14001_EMS", {"environmental_data": {"management_system": ems}}, now=NOW)
    assert result.metadata["violations"] == ["EMS review overdue (must be annual)"]
    ems["last_review"] = "2025-03-01"
    assert rules.validate("GLOBAL_ISO14001_EMS", {"environmental_data": {"management_system": ems}}, now=NOW).passed


def test_unknown_rule_raises():
    with pytest.raises(KeyError):
        rules.validate("NOPE", {})


def test_rule_lookup_by_region_and_checkpoint():
    assert rules.get_rule("US_WEST", "PPE_AVAILABILITY").id == "US_OSHA_PPE_AVAILABILITY"
    assert rules.get_rule("JAPAN", "PPE_AVAILABILITY") is None
    ids = {r.id for r in rules.rules_for_region("JAPAN")}
    assert ids == {"JP_JIS_QUALITY_DOCUMENTATION", "GLOBAL_ISO14001_EMS"}


@pytest.mark.parametrize("region,operation,product,expected", [
    ("US_WEST", "INVENTORY", "FLEXVOLT_6AH", {"OSHA_SAFETY_DOCUMENTATION", "ISO14001_EMS"}),
    ("US_WEST", "SHIPPING", "FLEXVOLT_9AH", {"DOT_UN3480_PACKAGING"}),
    ("US_WEST", "SHIPPING", "ACCESSORIES", set()),
    ("EU_GERMANY", "DOCUMENTATION", "CHARGERS", {"GDPR_DATA_RETENTION", "CE_MARKING"}),
    ("JAPAN", "DATA_PROCESSING", None, set()),
])
def test_applicable_regulations(region, operation, product, expected):
    found = {r.code for r in regulation_checker.applicable_regulations(region, operation, product)}
    assert found == expected


def test_check_falls_back_to_rule_remediation():
    regulation = regulation_checker.applicable_regulations("AUSTRALIA", "SAFETY", "ACCESSORIES")[0]
    result = regulation_checker.check(regulation, {}, "ACCESSORIES", now=NOW)
    assert result.regulation == "ACL_PRODUCT_SAFETY"
    assert not result.compliant
    assert result.certification_required
    assert result.remediation == "Provide Australian safety certification documentation"
    assert regulation_checker.responsible_party("AUSTRALIA", "SAFETY") == "Australia Safety Manager"
    assert regulation_checker.responsible_party("AUSTRALIA", "TRANSPORT") == "Compliance Team"
