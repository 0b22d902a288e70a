"""Regional compliance rules.

Each rule is a pure function of the operation metadata and the product
type. Rules are keyed by ``{region}-{checkpoint}``; GLOBAL rules apply to
every region.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from app.db.models.common import naive_utc, utcnow

BATTERY_PRODUCTS = ("FLEXVOLT_6AH", "FLEXVOLT_9AH", "FLEXVOLT_15AH")


@dataclass
class RuleResult:
    passed: bool
    reason: str | None = None
    remediation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ComplianceRule:
    id: str
    name: str
    region: str
    regulation: str
    checkpoint: str
    automation_level: str  # FULL|PARTIAL|MANUAL
    remediation: str
    check: Callable[[dict, str | None, datetime], RuleResult]

    @property
    def key(self) -> str:
        return f"{self.region}-{self.checkpoint}"


def as_datetime(value) -> datetime | None:
    """Parse a datetime or ISO string into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return naive_utc(dt)


def _days_since(value, now: datetime) -> float | None:
    dt = as_datetime(value)
    if dt is None:
        return None
    return (now - dt).total_seconds() / 86400


def _expired(value, now: datetime) -> bool:
    dt = as_datetime(value)
    return dt is not None and dt <= now


def _fail(violations: list[str], remediation: str, **meta) -> RuleResult:
    return RuleResult(passed=False, reason="; ".join(violations), remediation=remediation,
                      metadata={"violations": violations, **meta})


def _missing(required, present) -> list[str]:
    present = present or []
    return [x for x in required if x not in present]


PPE_ITEMS = ("safety_glasses", "gloves", "hard_hat", "safety_shoes")
PPE_MIN_QUANTITY = 10


def check_ppe_availability(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    ppe = (metadata.get("warehouse_data") or {}).get("ppe_inventory")
    if not ppe:
        return RuleResult(False, "PPE inventory data not available",
                          "Update warehouse inventory system with PPE tracking", {"missing_data": "ppe_inventory"})
    missing = [
        item for item in PPE_ITEMS
        if not ppe.get(item)
        or (ppe[item].get("quantity") or 0) < PPE_MIN_QUANTITY
        or not ppe[item].get("accessible")
    ]
    if missing:
        return RuleResult(False, f"Missing or insufficient PPE: {', '.join(missing)}",
                          f"Restock the following PPE items: {', '.join(missing)}", {"missing_equipment": missing})
    return RuleResult(True, metadata={"all_equipment_available": True})


def check_un3480_packaging(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    packaging = (metadata.get("shipment_data") or {}).get("packaging")
    if not packaging:
        return RuleResult(False, "Packaging information not available",
                          "Provide complete packaging documentation for shipment", {"missing_data": "packaging"})
    if product_type not in BATTERY_PRODUCTS:
        return RuleResult(True, "UN3480 not applicable to non-lithium battery products",
                          metadata={"exemption": "non_lithium_product"})

    violations = []
    if "UN3480" not in (packaging.get("certifications") or []):
        violations.append("Missing UN3480 certification")
    if "LITHIUM BATTERY" not in (packaging.get("markings") or []):
        violations.append("Missing lithium battery markings")
    if "shipping_paper" not in (packaging.get("documentation") or []):
        violations.append("Missing shipping documentation")
    if violations:
        return _fail(violations, "Obtain proper UN3480 certification and complete all required documentation")
    return RuleResult(True, metadata={"un3480_compliant": True})


JIS_DOCUMENTS = ("quality_manual", "test_procedures", "calibration_records", "training_records")
JIS_MAX_DOC_AGE_DAYS = 1095


def check_jis_quality_documentation(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    docs = (metadata.get("quality_data") or {}).get("documentation")
    if not docs:
        return RuleResult(False, "Quality documentation data not available",
                          "Upload all required quality control documentation", {"missing_data": "quality_documentation"})

    missing = [
        d for d in JIS_DOCUMENTS
        if not docs.get(d) or not docs[d].get("present") or docs[d].get("language") != "japanese"
    ]
    expired = []
    for d in JIS_DOCUMENTS:
        age = _days_since((docs.get(d) or {}).get("last_updated"), now)
        if age is not None and age > JIS_MAX_DOC_AGE_DAYS:
            expired.append(d)

    violations = []
    if missing:
        violations.append(f"Missing documents: {', '.join(missing)}")
    if expired:
        violations.append(f"Expired documents: {', '.join(expired)}")
    if violations:
        return _fail(violations, "Update missing or expired quality documentation in Japanese",
                     missing_docs=missing, expired_docs=expired)
    return RuleResult(True, metadata={"all_documents_compliant": True})


GDPR_MAX_RETENTION_DAYS = {
    "customer_data": 2555,
    "order_data": 2555,
    "employee_data": 365,
    "marketing_data": 1095,
}
GDPR_SUBJECT_RIGHTS = ("access", "rectification", "erasure", "portability")


def check_gdpr_retention(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    governance = metadata.get("data_governance") or {}
    policies = governance.get("retention_policies")
    if not policies:
        return RuleResult(False, "Data retention policies not defined",
                          "Implement comprehensive data retention policies per GDPR requirements",
                          {"missing_data": "retention_policies"})

    violations = []
    for data_type, max_days in GDPR_MAX_RETENTION_DAYS.items():
        policy = policies.get(data_type)
        if not policy:
            violations.append(f"No retention policy for {data_type}")
            continue
        days = policy.get("retention_days") or 0
        if days > max_days:
            violations.append(f"{data_type} retention period ({days} days) exceeds maximum ({max_days} days)")
        if not policy.get("automatic_deletion"):
            violations.append(f"{data_type} lacks automatic deletion mechanism")
        if data_type == "marketing_data" and not policy.get("consent_based_deletion"):
            violations.append(f"{data_type} lacks consent-based deletion capability")

    missing_rights = _missing(GDPR_SUBJECT_RIGHTS, governance.get("data_subject_rights"))
    if missing_rights:
        violations.append(f"Missing data subject rights: {', '.join(missing_rights)}")
    if violations:
        return _fail(violations,
                     "Update data retention policies to comply with GDPR limits and implement missing features",
                     missing_rights=missing_rights)
    return RuleResult(True, metadata={"gdpr_compliant": True})


CE_DOCUMENTS = ("ce_certificate", "declaration_of_conformity", "technical_documentation")
CE_BATTERY_STANDARDS = ("EN 55032", "EN 55035", "EN 61000-3-2", "EN 61000-3-3")


def check_ce_certificate(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    cert = (metadata.get("certification_data") or {}).get("ce_certificate")
    if not cert:
        return RuleResult(False, "CE certificate not available",
                          "Obtain CE marking certificate for products sold in EU", {"missing_data": "ce_certificate"})

    violations = []
    if _expired(cert.get("expiry_date"), now):
        violations.append("CE certificate has expired")
    missing_docs = _missing(CE_DOCUMENTS, cert.get("documents"))
    if missing_docs:
        violations.append(f"Missing documents: {', '.join(missing_docs)}")
    if product_type in BATTERY_PRODUCTS:
        missing_std = _missing(CE_BATTERY_STANDARDS, cert.get("standards"))
        if missing_std:
            violations.append(f"Missing conformity to standards: {', '.join(missing_std)}")
    if cert.get("requires_notified_body") and not cert.get("notified_body_number"):
        violations.append("Missing notified body approval number")
    if violations:
        return _fail(violations, "Renew CE certificate and ensure all required documentation is complete")
    return RuleResult(True, metadata={"ce_compliant": True})


ACL_BATTERY_STANDARDS = ("AS/NZS 62133.2", "AS/NZS 4755.1")
ACL_DOCUMENTS = ("safety_certificate", "test_report", "user_manual")
ACL_WARNINGS = ("voltage_warning", "disposal_instructions", "age_restrictions")


def check_acl_product_safety(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    safety = metadata.get("safety_data") or {}
    certs = safety.get("certifications")
    if not certs:
        return RuleResult(False, "Safety certification data not available",
                          "Provide Australian safety certification documentation",
                          {"missing_data": "safety_certifications"})

    violations = []
    if product_type in BATTERY_PRODUCTS:
        missing_std = _missing(ACL_BATTERY_STANDARDS, certs.get("standards"))
        if missing_std:
            violations.append(f"Missing safety standards: {', '.join(missing_std)}")
    missing_docs = _missing(ACL_DOCUMENTS, safety.get("documents"))
    if missing_docs:
        violations.append(f"Missing documents: {', '.join(missing_docs)}")
    missing_warnings = _missing(ACL_WARNINGS, safety.get("warnings"))
    if missing_warnings:
        violations.append(f"Missing safety warnings: {', '.join(missing_warnings)}")
    if _expired(certs.get("expiry_date"), now):
        violations.append("Safety certificate has expired")
    if violations:
        return _fail(violations, "Obtain required Australian safety certifications and complete documentation")
    return RuleResult(True, metadata={"australian_compliant": True})


EMS_ELEMENTS = ("environmental_policy", "objectives_targets", "procedures", "monitoring", "audit")
EMS_DOCUMENTS = ("manual", "procedures", "records")
EMS_REVIEW_DAYS = 365


def check_iso14001_ems(metadata: dict, product_type: str | None, now: datetime) -> RuleResult:
    ems = (metadata.get("environmental_data") or {}).get("management_system")
    if not ems:
        return RuleResult(False, "Environmental management system data not available",
                          "Implement ISO 14001 environmental management system",
                          {"missing_data": "environmental_management_system"})

    violations = []
    missing_elements = _missing(EMS_ELEMENTS, ems.get("elements"))
    if missing_elements:
        violations.append(f"Missing EMS elements: {', '.join(missing_elements)}")
    missing_docs = _missing(EMS_DOCUMENTS, ems.get("documentation"))
    if missing_docs:
        violations.append(f"Missing documentation: {', '.join(missing_docs)}")
    age = _days_since(ems.get("last_review"), now)
    if age is None:
        violations.append("No EMS review date recorded")
    elif age > EMS_REVIEW_DAYS:
        violations.append("EMS review overdue (must be annual)")
    if ems.get("certification_required") and not ems.get("certified"):
        violations.append("ISO 14001 certification required but not obtained")
    if violations:
        return _fail(violations, "Complete ISO 14001 EMS implementation and obtain certification")
    return RuleResult(True, metadata={"iso14001_compliant": True})


RULES: dict[str, ComplianceRule] = {}


def register(rule: ComplianceRule) -> None:
    RULES[rule.key] = rule


for _rule in (
    ComplianceRule("US_OSHA_PPE_AVAILABILITY", "OSHA PPE Equipment Availability", "US_WEST",
                   "OSHA_29CFR1910", "PPE_AVAILABILITY", "FULL",
                   "Ensure all required PPE is stocked and within 50m of work areas", check_ppe_availability),
    ComplianceRule("US_DOT_UN3480_PACKAGING", "DOT UN3480 Packaging Compliance", "US_WEST",
                   "DOT_49CFR", "UN3480_COMPLIANCE", "PARTIAL",
                   "Use UN3480 certified packaging and ensure proper documentation", check_un3480_packaging),
    ComplianceRule("JP_JIS_QUALITY_DOCUMENTATION", "JIS Quality Control Documentation", "JAPAN",
                   "JIS_C8712", "QUALITY_DOCUMENTATION", "PARTIAL",
                   "Complete all required quality documentation in Japanese and ensure proper retention",
                   check_jis_quality_documentation),
    ComplianceRule("EU_GDPR_DATA_RETENTION", "GDPR Data Retention Policy", "EU_GERMANY",
                   "GDPR_2016_679", "RETENTION_POLICY", "FULL",
                   "Implement automated data retention policies with proper consent management", check_gdpr_retention),
    ComplianceRule("EU_CE_CERTIFICATE_VALIDATION", "CE Marking Certificate Validation", "EU_GERMANY",
                   "CE_2014_30_EU", "CE_CERTIFICATE", "PARTIAL",
                   "Obtain valid CE marking certificate and declaration of conformity", check_ce_certificate),
    ComplianceRule("AU_ACL_PRODUCT_SAFETY", "Australian Consumer Law Product Safety", "AUSTRALIA",
                   "ACL_2010", "SAFETY_COMPLIANCE", "PARTIAL",
                   "Obtain Australian safety certification and ensure proper documentation", check_acl_product_safety),
    ComplianceRule("GLOBAL_ISO14001_EMS", "ISO 14001 Environmental Management System", "GLOBAL",
                   "ISO_14001", "EMS_IMPLEMENTATION", "MANUAL",
                   "Complete ISO 14001 EMS implementation and documentation", check_iso14001_ems),
):
    register(_rule)


def get_rule(region: str, checkpoint: str) -> ComplianceRule | None:
    return RULES.get(f"{region}-{checkpoint}")


def rule_by_id(rule_id: str) -> ComplianceRule | None:
    for rule in RULES.values():
        if rule.id == rule_id:
            return rule
    return None


def rules_for_region(region: str) -> list[ComplianceRule]:
    return [r for r in RULES.values() if r.region in (region, "GLOBAL")]


def validate(rule_id: str, metadata: dict | None, product_type: str | None = None,
             now: datetime | None = None) -> RuleResult:
    rule = rule_by_id(rule_id)
    if rule is None:
        raise KeyError(f"Unknown compliance rule: {rule_id}")
    now = now or utcnow()
    return rule.check(metadata or {}, product_type, now)
