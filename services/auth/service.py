from __future__ import annotations

import logging
import os
import re
from datetime import timedelta

from jose import JWTError
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import (
    AuthenticationFailed,
    Conflict,
    NotFound,
    PermissionDenied,
    RateLimited,
    ServiceResult,
    ValidationFailed,
    service_operation,
)
from app.core.rate_limit import RATE_LIMIT_ENABLED, AttemptLimiter
from app.core.security import (
    ALL_WAREHOUSES,
    JWT_TTL_MIN,
    PERMISSIONS,
    ROLE_PERMISSIONS,
    create_access_token,
    decode_access_token,
    grants_for,
    hash_password,
    mint_refresh_token,
    revoke_jti,
    revoke_refresh_tokens_for_session,
    rotate_refresh_token,
    verify_password,
)
from app.db.models.auth import MfaSecret, Supplier, SupplierSession, WarehouseAccess
from app.db.models.common import utcnow
from app.db.models.warehouse import REGIONS
from services.auth import mfa
from services.compliance.audit_logger import audit_logger

logger = logging.getLogger("auth")

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "8"))
LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", "5"))
LOGIN_WINDOW_MIN = int(os.getenv("LOGIN_WINDOW_MIN", "15"))
LOCKOUT_MIN = int(os.getenv("LOCKOUT_MIN", "15"))

# Tiers that are expected to turn MFA on.
MFA_TIERS = ("PREMIUM", "ENTERPRISE")

login_limiter = AttemptLimiter(LOGIN_MAX_ATTEMPTS, LOGIN_WINDOW_MIN, enabled=RATE_LIMIT_ENABLED)
register_limiter = AttemptLimiter(3, 60, enabled=RATE_LIMIT_ENABLED)


def _auth_event(db: Session, event: str, *, success: bool, supplier_id: str | None = None, **details) -> None:
    severity = "INFO" if success else "WARNING"
    audit(
        db,
        actor=supplier_id or details.get("email") or "anonymous",
        action=event,
        resource_type="supplier",
        resource_id=supplier_id,
        details=details,
        event_type="AUTHENTICATION",
        category="SECURITY",
        severity=severity,
        success=success,
        retention_days=2555,
    )
    log = logger.info if success else logger.warning
    log("%s supplier=%s", event, supplier_id or details.get("email"))


def supplier_out(s: Supplier) -> dict:
    return {
        "id": s.id,
        "email": s.email,
        "company_name": s.company_name,
        "contact_name": s.contact_name,
        "phone_number": s.phone_number,
        "status": s.status,
        "tier": s.tier,
        "mfa_enabled": s.mfa_enabled,
        "warehouse_access": [
            {"warehouse": g.warehouse, "role": g.role, "permissions": g.perms}
            for g in grants_for(s)
        ],
        "last_login_at": s.last_login_at.isoformat() if s.last_login_at else None,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


def _record_failure(db: Session, supplier: Supplier, ip: str | None) -> None:
    now = utcnow()
    supplier.failed_login_attempts = (supplier.failed_login_attempts or 0) + 1
    supplier.last_failed_login_at = now
    if supplier.failed_login_attempts >= LOGIN_MAX_ATTEMPTS:
        supplier.locked_until = now + timedelta(minutes=LOCKOUT_MIN)
        logger.warning("Locked supplier %s after %s failed attempts from %s",
                       supplier.id, supplier.failed_login_attempts, ip)
        audit_logger.log_security_event(
            event="ACCOUNT_LOCKED", actor=supplier.id, risk_score=7, result="BLOCKED",
            resource_type="supplier", resource_id=supplier.id,
            details={"failed_attempts": supplier.failed_login_attempts, "ip": ip},
        )


def _check_mfa(db: Session, supplier: Supplier, code: str) -> bool:
    secret = db.query(MfaSecret).filter(MfaSecret.supplier_id == supplier.id).first()
    if not secret or not secret.verified:
        return False
    if mfa.verify_totp(secret.secret, code):
        return True
    remaining = mfa.consume_backup_code(list(secret.backup_code_hashes or []), code)
    if remaining is None:
        return False
    secret.backup_code_hashes = remaining
    logger.info("Backup code used by supplier %s (%s left)", supplier.id, len(remaining))
    return True


@service_operation("An error occurred during login. Please try again.")
def login(
    db: Session,
    *,
    email: str,
    password: str,
    ip: str | None = None,
    user_agent: str | None = None,
    warehouse: str | None = None,
    mfa_code: str | None = None,
):
    email = email.strip().lower()
    if not login_limiter.hit(f"login:{ip}:{email}"):
        _auth_event(db, "LOGIN_RATE_LIMITED", success=False, email=email, ip=ip)
        raise RateLimited("Too many login attempts. Please try again later.")

    now = utcnow()
    supplier = db.query(Supplier).filter(Supplier.email == email).first()
    if supplier and supplier.locked_until and supplier.locked_until > now:
        _auth_event(db, "LOGIN_ACCOUNT_LOCKED", success=False, supplier_id=supplier.id, email=email)
        raise AuthenticationFailed("Account is temporarily locked due to security reasons.")

    if not supplier:
        _auth_event(db, "LOGIN_USER_NOT_FOUND", success=False, email=email)
        raise AuthenticationFailed("Invalid email or password.")

    if not verify_password(password, supplier.password_hash):
        _record_failure(db, supplier, ip)
        _auth_event(db, "LOGIN_INVALID_PASSWORD", success=False, supplier_id=supplier.id, email=email)
        raise AuthenticationFailed("Invalid email or password.")

    if supplier.status != "ACTIVE":
        _auth_event(db, "LOGIN_INACTIVE_ACCOUNT", success=False, supplier_id=supplier.id, status=supplier.status)
        raise PermissionDenied(f"Account is {supplier.status.lower()}. Please contact support.")

    grants = grants_for(supplier, now)
    if warehouse and not any(g.warehouse in (ALL_WAREHOUSES, warehouse) for g in grants):
        _auth_event(db, "LOGIN_WAREHOUSE_ACCESS_DENIED", success=False, supplier_id=supplier.id,
                    requested_warehouse=warehouse, available=[g.warehouse for g in grants])
        raise PermissionDenied(f"Access denied to {warehouse} warehouse.")

    if supplier.mfa_enabled:
        if not mfa_code:
            _auth_event(db, "LOGIN_MFA_REQUIRED", success=False, supplier_id=supplier.id)
            return ServiceResult.fail("Multi-factor authentication required.", "UNAUTHORIZED",
                                      data={"requires_mfa": True})
        if not _check_mfa(db, supplier, mfa_code):
            _record_failure(db, supplier, ip)
            _auth_event(db, "LOGIN_INVALID_MFA", success=False, supplier_id=supplier.id)
            return ServiceResult.fail("Invalid MFA code.", "UNAUTHORIZED", data={"requires_mfa": True})

    session = SupplierSession(
        supplier_id=supplier.id,
        warehouse=warehouse or (grants[0].warehouse if grants else None),
        ip_address=ip,
        user_agent=user_agent,
        expires_at=now + timedelta(hours=SESSION_TTL_HOURS),
        last_used_at=now,
    )
    db.add(session)
    db.flush()

    access_token = create_access_token(supplier, session.id)
    refresh_token = mint_refresh_token(db, supplier.id, session.id, created_ip=ip, user_agent=user_agent)

    supplier.failed_login_attempts = 0
    supplier.last_failed_login_at = None
    supplier.locked_until = None
    supplier.last_login_at = now
    supplier.last_login_ip = ip
    db.commit()

    setup_required = not supplier.mfa_enabled and supplier.tier in MFA_TIERS
    _auth_event(db, "LOGIN_SUCCESS", success=True, supplier_id=supplier.id, session_id=session.id,
                warehouse=session.warehouse, mfa_setup_required=setup_required)
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
        "expires_in": JWT_TTL_MIN * 60,
        "session_id": session.id,
        "warehouse": session.warehouse,
        "supplier": supplier_out(supplier),
        "mfa_setup_required": setup_required,
    }


def validate_password_strength(password: str) -> None:
    if len(password or "") < 8:
        raise ValidationFailed("Password must be at least 8 characters")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise ValidationFailed("Password must contain at least one letter and one digit")


@service_operation("An error occurred during registration. Please try again.")
def register(
    db: Session,
    *,
    email: str,
    password: str,
    company_name: str,
    contact_name: str,
    phone_number: str | None = None,
    tier: str = "STANDARD",
    ip: str | None = None,
) -> dict:
    email = email.strip().lower()
    if not register_limiter.hit(f"register:{ip}"):
        _auth_event(db, "REGISTER_RATE_LIMITED", success=False, email=email, ip=ip)
        raise RateLimited("Too many registration attempts. Please try again later.")
    validate_password_strength(password)
    if db.query(Supplier).filter(Supplier.email == email).first():
        _auth_event(db, "REGISTER_EMAIL_EXISTS", success=False, email=email)
        raise Conflict("An account with this email already exists.")

    # The first supplier bootstraps the portal as a global admin.
    is_first = db.query(Supplier).count() == 0
    supplier = Supplier(
        email=email,
        password_hash=hash_password(password),
        company_name=company_name,
        contact_name=contact_name,
        phone_number=phone_number,
        tier=tier,
        status="ACTIVE" if is_first else "PENDING",
    )
    db.add(supplier)
    db.flush()
    if is_first:
        db.add(WarehouseAccess(supplier_id=supplier.id, warehouse=ALL_WAREHOUSES, role="ADMIN",
                               permissions=list(ROLE_PERMISSIONS["ADMIN"])))
    db.commit()
    db.refresh(supplier)

    _auth_event(db, "REGISTER_SUCCESS", success=True, supplier_id=supplier.id, email=email, bootstrap=is_first)
    return supplier_out(supplier)


@service_operation("Token refresh failed")
def refresh(db: Session, *, refresh_token: str, ip: str | None = None, user_agent: str | None = None) -> dict:
    old, new_raw = rotate_refresh_token(db, refresh_token, created_ip=ip, user_agent=user_agent)
    supplier = db.query(Supplier).filter(Supplier.id == old.supplier_id).first()
    if not supplier or supplier.status != "ACTIVE":
        raise AuthenticationFailed("Invalid or expired refresh token")
    if old.session_id:
        sess = db.query(SupplierSession).filter(SupplierSession.id == old.session_id).first()
        if not sess or sess.revoked or sess.expires_at <= utcnow():
            raise AuthenticationFailed("Session expired")
        sess.last_used_at = utcnow()
    access_token = create_access_token(supplier, old.session_id)
    db.commit()
    _auth_event(db, "TOKEN_REFRESHED", success=True, supplier_id=supplier.id)
    return {
        "access_token": access_token,
        "refresh_token": new_raw,
        "token_type": "bearer",
        "expires_in": JWT_TTL_MIN * 60,
    }


@service_operation("Session validation failed")
def validate_session(db: Session, *, token: str) -> dict:
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise AuthenticationFailed("Invalid or expired token")

    sess = db.query(SupplierSession).filter(SupplierSession.id == payload.get("sid")).first()
    if not sess or sess.revoked or sess.expires_at <= utcnow():
        raise AuthenticationFailed("Session expired or revoked")
    supplier = db.query(Supplier).filter(Supplier.id == payload.get("sub")).first()
    if not supplier or supplier.status != "ACTIVE":
        raise AuthenticationFailed("Supplier is not active")

    sess.last_used_at = utcnow()
    db.commit()
    return {"supplier": supplier_out(supplier), "session_id": sess.id, "warehouse": sess.warehouse}


def _supplier(db: Session, supplier_id: str) -> Supplier:
    s = db.query(Supplier).filter(Supplier.id == supplier_id).first()
    if not s:
        raise NotFound("Supplier not found")
    return s


@service_operation("MFA setup failed")
def setup_mfa(db: Session, *, supplier_id: str, password: str) -> dict:
    supplier = _supplier(db, supplier_id)
    if not verify_password(password, supplier.password_hash):
        _auth_event(db, "MFA_SETUP_INVALID_PASSWORD", success=False, supplier_id=supplier.id)
        raise AuthenticationFailed("Invalid password")

    secret = mfa.generate_secret()
    codes = mfa.generate_backup_codes()
    row = db.query(MfaSecret).filter(MfaSecret.supplier_id == supplier.id).first()
    if not row:
        row = MfaSecret(supplier_id=supplier.id, secret=secret)
        db.add(row)
    row.secret = secret
    row.verified = False
    row.backup_code_hashes = [mfa.hash_backup_code(c) for c in codes]
    db.commit()

    _auth_event(db, "MFA_SETUP_STARTED", success=True, supplier_id=supplier.id)
    return {
        "secret": secret,
        "otpauth_uri": mfa.provisioning_uri(secret, supplier.email),
        "backup_codes": codes,
    }


@service_operation("MFA verification failed")
def verify_mfa_setup(db: Session, *, supplier_id: str, code: str) -> dict:
    supplier = _supplier(db, supplier_id)
    row = db.query(MfaSecret).filter(MfaSecret.supplier_id == supplier.id).first()
    if not row:
        raise ValidationFailed("MFA setup has not been started")
    if not mfa.verify_totp(row.secret, code):
        _auth_event(db, "MFA_VERIFY_FAILED", success=False, supplier_id=supplier.id)
        raise ValidationFailed("Invalid MFA code.")

    row.verified = True
    supplier.mfa_enabled = True
    db.commit()
    _auth_event(db, "MFA_ENABLED", success=True, supplier_id=supplier.id)
    return {"mfa_enabled": True}


@service_operation("Logout failed")
def logout(db: Session, *, token: str | None = None, session_id: str | None = None,
           supplier_id: str | None = None) -> dict:
    jti = None
    if token:
        try:
            payload = decode_access_token(token)
        except JWTError:
            payload = {}
        jti = payload.get("jti")
        session_id = session_id or payload.get("sid")
        supplier_id = supplier_id or payload.get("sub")
    if not session_id and not jti:
        raise ValidationFailed("Nothing to log out")

    revoked_tokens = 0
    if session_id:
        sess = db.query(SupplierSession).filter(SupplierSession.id == session_id).first()
        if sess:
            sess.revoked = True
        revoked_tokens = revoke_refresh_tokens_for_session(db, session_id)
    if jti:
        revoke_jti(db, jti, reason="logout")
    db.commit()

    _auth_event(db, "LOGOUT", success=True, supplier_id=supplier_id, session_id=session_id)
    return {"logged_out": True, "revoked_refresh_tokens": revoked_tokens}


@service_operation("Failed to grant warehouse access")
def grant_warehouse_access(
    db: Session,
    *,
    supplier_id: str,
    warehouse: str,
    role: str,
    permissions: list[str] | None = None,
    expires_at=None,
    granted_by: str | None = None,
    activate: bool = True,
) -> dict:
    if warehouse != ALL_WAREHOUSES and warehouse not in REGIONS:
        raise ValidationFailed(f"Unknown warehouse: {warehouse}")
    if role not in ROLE_PERMISSIONS:
        raise ValidationFailed(f"Unknown role: {role}")
    unknown = [p for p in (permissions or []) if p not in PERMISSIONS]
    if unknown:
        raise ValidationFailed(f"Unknown permissions: {', '.join(unknown)}")

    supplier = _supplier(db, supplier_id)
    wa = (
        db.query(WarehouseAccess)
        .filter(WarehouseAccess.supplier_id == supplier.id, WarehouseAccess.warehouse == warehouse)
        .first()
    )
    if not wa:
        wa = WarehouseAccess(supplier_id=supplier.id, warehouse=warehouse)
        db.add(wa)
    wa.role = role
    wa.permissions = list(permissions or ROLE_PERMISSIONS[role])
    wa.granted_at = utcnow()
    wa.expires_at = expires_at
    if activate and supplier.status == "PENDING":
        supplier.status = "ACTIVE"

    audit(db, actor=granted_by or "system", action="auth.grant_warehouse_access", resource_type="supplier",
          resource_id=supplier.id, details={"warehouse": warehouse, "role": role, "permissions": wa.permissions},
          category="ADMINISTRATIVE", severity="WARNING", warehouse=None if warehouse == ALL_WAREHOUSES else warehouse,
          commit=False)
    db.commit()
    db.refresh(supplier)
    return supplier_out(supplier)
