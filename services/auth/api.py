from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from app.core.errors import HTTP_STATUS_BY_CODE, ServiceResult, unwrap
from app.core.middleware import client_ip_from
from app.core.rate_limit import limiter
from app.core.security import Principal, bearer, require_authenticated, require_roles
from app.db.session import get_db
from services.auth import service

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    company_name: str = Field(min_length=1)
    contact_name: str = Field(min_length=1)
    phone_number: str | None = None
    tier: str = "STANDARD"


class LoginIn(BaseModel):
    email: EmailStr
    password: str
    warehouse: str | None = None
    mfa_code: str | None = None


class RefreshIn(BaseModel):
    refresh_token: str


class MfaSetupIn(BaseModel):
    password: str


class MfaVerifyIn(BaseModel):
    code: str


class GrantIn(BaseModel):
    warehouse: str
    role: str = "VIEWER"
    permissions: list[str] | None = None
    expires_at: datetime | None = None


def _unwrap_auth(result: ServiceResult):
    """unwrap() that keeps extra failure data such as requires_mfa."""
    if result.success or not result.data:
        return unwrap(result)
    status = HTTP_STATUS_BY_CODE.get(result.code or "", 500)
    raise HTTPException(status_code=status, detail={"error": result.code, "message": result.error, **result.data})


@router.post("/register")
@limiter.limit("5/minute")
def register(request: Request, payload: RegisterIn, db: Session = Depends(get_db)):
    return unwrap(service.register(db, **payload.model_dump(), ip=client_ip_from(request)))


@router.post("/login")
@limiter.limit("10/minute")
def login(request: Request, payload: LoginIn, db: Session = Depends(get_db)):
    return _unwrap_auth(service.login(
        db,
        email=payload.email,
        password=payload.password,
        warehouse=payload.warehouse,
        mfa_code=payload.mfa_code,
        ip=client_ip_from(request),
        user_agent=request.headers.get("user-agent"),
    ))


@router.post("/refresh")
@limiter.limit("30/minute")
def refresh(request: Request, payload: RefreshIn, db: Session = Depends(get_db)):
    return unwrap(service.refresh(
        db,
        refresh_token=payload.refresh_token,
        ip=client_ip_from(request),
        user_agent=request.headers.get("user-agent"),
    ))


@router.get("/session")
def session(creds: HTTPAuthorizationCredentials | None = Depends(bearer), db: Session = Depends(get_db)):
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return unwrap(service.validate_session(db, token=creds.credentials))


@router.post("/logout")
def logout(creds: HTTPAuthorizationCredentials | None = Depends(bearer), db: Session = Depends(get_db)):
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return unwrap(service.logout(db, token=creds.credentials))


@router.post("/mfa/setup")
def mfa_setup(payload: MfaSetupIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.setup_mfa(db, supplier_id=p.supplier_id, password=payload.password))


@router.post("/mfa/verify")
def mfa_verify(payload: MfaVerifyIn, db: Session = Depends(get_db), p: Principal = Depends(require_authenticated)):
    return unwrap(service.verify_mfa_setup(db, supplier_id=p.supplier_id, code=payload.code))


@router.put("/suppliers/{supplier_id}/warehouse-access")
def grant_access(
    supplier_id: str,
    payload: GrantIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_roles(["ADMIN"])),
):
    return unwrap(service.grant_warehouse_access(
        db, supplier_id=supplier_id, **payload.model_dump(), granted_by=p.supplier_id,
    ))
