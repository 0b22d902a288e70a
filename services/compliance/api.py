from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import unwrap
from app.core.security import Principal, require_authenticated, require_permissions, require_roles
from app.db.models.common import naive_utc
from app.db.session import get_db
from services.compliance import service
from services.compliance.audit_logger import audit_logger

router = APIRouter(prefix="/compliance", tags=["compliance"])


class CheckIn(BaseModel):
    warehouse: str
    operation_type: str
    product_type: str
    metadata: dict = Field(default_factory=dict)


class ReportIn(BaseModel):
    warehouse: str
    start: datetime
    end: datetime


class RemediateIn(BaseModel):
    violation_ids: list[str] = Field(min_length=1)


class CertificationIn(BaseModel):
    warehouse: str
    name: str = Field(min_length=1)
    issued_at: datetime
    expires_at: datetime


@router.post("/checks")
def check(payload: CheckIn, db: Session = Depends(get_db),
          p: Principal = Depends(require_permissions(["MANAGE_COMPLIANCE"]))):
    return unwrap(service.check_compliance(
        db,
        region=payload.warehouse,
        operation=payload.operation_type,
        product=payload.product_type,
        supplier_id=p.supplier_id,
        access=p.grants,
        metadata=payload.metadata,
    ))


@router.post("/reports")
def report(payload: ReportIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.generate_compliance_report(
        db, region=payload.warehouse, start=payload.start, end=payload.end, supplier_id=p.supplier_id,
        access=p.grants,
    ))


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.get_compliance_dashboard(db, supplier_id=p.supplier_id))


@router.post("/violations/remediate")
def remediate(payload: RemediateIn, db: Session = Depends(get_db),
              p: Principal = Depends(require_permissions(["MANAGE_COMPLIANCE"]))):
    return unwrap(service.remediate_violations(db, violation_ids=payload.violation_ids,
                                               supplier_id=p.supplier_id, access=p.grants))


@router.post("/certifications")
def add_certification(payload: CertificationIn, db: Session = Depends(get_db),
                      p: Principal = Depends(require_permissions(["MANAGE_COMPLIANCE"]))):
    return unwrap(service.add_certification(db, supplier_id=p.supplier_id, access=p.grants, **payload.model_dump()))


@router.get("/audit-report")
def audit_report(
    start: datetime,
    end: datetime,
    warehouse: str | None = None,
    category: str | None = None,
    event_type: str | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(["ADMIN"])),
):
    start, end = naive_utc(start), naive_utc(end)
    if start >= end:
        raise HTTPException(status_code=400, detail={"error": "VALIDATION_ERROR", "message": "start must be before end"})
    filters = {"warehouse": warehouse, "category": category, "event_type": event_type}
    return audit_logger.generate_audit_report(db, start=start, end=end, filters=filters)
