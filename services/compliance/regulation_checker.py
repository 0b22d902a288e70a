from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from services.compliance import rules

OPERATION_TYPES = ("INVENTORY", "SHIPPING", "HANDLING", "DOCUMENTATION", "SAFETY", "DATA_PROCESSING")
PRODUCT_TYPES = ("FLEXVOLT_6AH", "FLEXVOLT_9AH", "FLEXVOLT_15AH", "ACCESSORIES", "CHARGERS")
ALL_REGIONS = ("US_WEST", "JAPAN", "EU_GERMANY", "AUSTRALIA")
SEVERITIES = ("INFO", "WARNING", "CRITICAL", "BLOCKING")


@dataclass(frozen=True)
class Regulation:
    code: str
    rule_id: str
    category: str  # SAFETY|DOCUMENTATION|QUALITY|DATA_PROTECTION|ENVIRONMENTAL|TRANSPORT
    severity: str
    regions: tuple[str, ...]
    operations: tuple[str, ...]
    products: tuple[str, ...]
    estimated_cost: float
    automatic_fix: bool
    deadline_days: int
    certification_required: bool = False

    def applies_to(self, region: str, operation: str, product: str | None) -> bool:
        return (
            region in self.regions
            and operation in self.operations
            and (product is None or product in self.products)
        )


@dataclass
class RegulationCheckResult:
    regulation: str
    compliant: bool
    severity: str
    category: str
    reason: str | None
    remediation: str | None
    estimated_cost: float
    automatic_fix: bool
    deadline_days: int
    certification_required: bool


REGULATIONS: tuple[Regulation, ...] = (
    Regulation("OSHA_SAFETY_DOCUMENTATION", "US_OSHA_PPE_AVAILABILITY", "SAFETY", "CRITICAL",
               ("US_WEST",), ("INVENTORY", "HANDLING", "SAFETY"), PRODUCT_TYPES,
               2500.0, True, 14),
    Regulation("DOT_UN3480_PACKAGING", "US_DOT_UN3480_PACKAGING", "TRANSPORT", "BLOCKING",
               ("US_WEST",), ("SHIPPING",), rules.BATTERY_PRODUCTS,
               5000.0, False, 7, certification_required=True),
    Regulation("JIS_QUALITY_STANDARDS", "JP_JIS_QUALITY_DOCUMENTATION", "QUALITY", "WARNING",
               ("JAPAN",), ("INVENTORY", "HANDLING", "DOCUMENTATION"), PRODUCT_TYPES,
               3000.0, True, 30),
    Regulation("GDPR_DATA_RETENTION", "EU_GDPR_DATA_RETENTION", "DATA_PROTECTION", "CRITICAL",
               ("EU_GERMANY",), ("DATA_PROCESSING", "DOCUMENTATION"), PRODUCT_TYPES,
               10000.0, True, 30),
    Regulation("CE_MARKING", "EU_CE_CERTIFICATE_VALIDATION", "DOCUMENTATION", "BLOCKING",
               ("EU_GERMANY",), ("INVENTORY", "SHIPPING", "DOCUMENTATION"), rules.BATTERY_PRODUCTS + ("CHARGERS",),
               7500.0, False, 60, certification_required=True),
    Regulation("ACL_PRODUCT_SAFETY", "AU_ACL_PRODUCT_SAFETY", "SAFETY", "CRITICAL",
               ("AUSTRALIA",), ("INVENTORY", "SHIPPING", "SAFETY"), PRODUCT_TYPES,
               4000.0, False, 30, certification_required=True),
    Regulation("ISO14001_EMS", "GLOBAL_ISO14001_EMS", "ENVIRONMENTAL", "INFO",
               ALL_REGIONS, ("INVENTORY", "HANDLING", "SAFETY"), PRODUCT_TYPES,
               15000.0, False, 180),
)

RESPONSIBLE_PARTIES = {
    "US_WEST": {
        "SAFETY": "US Safety Officer",
        "DOCUMENTATION": "US Compliance Manager",
        "QUALITY": "US Quality Assurance Team",
    },
    "JAPAN": {
        "SAFETY": "Japan Safety Inspector",
        "DOCUMENTATION": "Japan Compliance Officer",
        "QUALITY": "Japan Quality Control Team",
    },
    "EU_GERMANY": {
        "SAFETY": "EU Safety Coordinator",
        "DOCUMENTATION": "EU Data Protection Officer",
        "QUALITY": "EU Quality Manager",
    },
    "AUSTRALIA": {
        "SAFETY": "Australia Safety Manager",
        "DOCUMENTATION": "Australia Compliance Officer",
        "QUALITY": "Australia Quality Team",
    },
}
DEFAULT_RESPONSIBLE_PARTY = "Compliance Team"


def applicable_regulations(region: str, operation: str, product: str | None) -> list[Regulation]:
    return [r for r in REGULATIONS if r.applies_to(region, operation, product)]


def responsible_party(region: str, category: str) -> str:
    return RESPONSIBLE_PARTIES.get(region, {}).get(category, DEFAULT_RESPONSIBLE_PARTY)


def check(regulation: Regulation, metadata: dict | None, product: str | None,
          now: datetime | None = None) -> RegulationCheckResult:
    outcome = rules.validate(regulation.rule_id, metadata, product, now=now)
    rule = rules.rule_by_id(regulation.rule_id)
    return RegulationCheckResult(
        regulation=regulation.code,
        compliant=outcome.passed,
        severity=regulation.severity,
        category=regulation.category,
        reason=outcome.reason,
        remediation=outcome.remediation or (rule.remediation if rule else None),
        estimated_cost=regulation.estimated_cost,
        automatic_fix=regulation.automatic_fix,
        deadline_days=regulation.deadline_days,
        certification_required=regulation.certification_required,
    )
