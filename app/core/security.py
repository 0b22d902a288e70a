from __future__ import annotations

import os
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.core.errors import AuthenticationFailed
from app.db.session import get_db
from app.db.models.auth import Supplier, SupplierSession
from app.db.models.common import utcnow
from app.db.models.iam_tokens import RefreshToken, RevokedJTI

bearer = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "15"))

IAM_ISSUER = os.getenv("IAM_ISSUER", "flexvolt-portal")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "flexvolt-suppliers")
REFRESH_TTL_DAYS = int(os.getenv("REFRESH_TTL_DAYS", "7"))

ALL_WAREHOUSES = "ALL"

PERMISSIONS = [
    "VIEW_INVENTORY",
    "UPDATE_INVENTORY",
    "TRANSFER_INVENTORY",
    "MANAGE_ORDERS",
    "VIEW_ANALYTICS",
    "MANAGE_COMPLIANCE",
    "MANAGE_WAREHOUSE",
]

# Permissions a grant carries when it lists none explicitly.
ROLE_PERMISSIONS = {
    "ADMIN": list(PERMISSIONS),
    "MANAGER": [
        "VIEW_INVENTORY", "UPDATE_INVENTORY", "TRANSFER_INVENTORY",
        "MANAGE_ORDERS", "VIEW_ANALYTICS", "MANAGE_COMPLIANCE", "MANAGE_WAREHOUSE",
    ],
    "OPERATOR": ["VIEW_INVENTORY", "UPDATE_INVENTORY", "MANAGE_ORDERS"],
    "VIEWER": ["VIEW_INVENTORY", "VIEW_ANALYTICS"],
}


@dataclass
class Grant:
    warehouse: str
    role: str = "VIEWER"
    perms: list[str] = field(default_factory=list)

    def covers(self, warehouse: str | None) -> bool:
        return warehouse is None or self.warehouse in (ALL_WAREHOUSES, warehouse)


@dataclass
class Principal:
    supplier_id: str | None = None
    email: str = "anonymous"
    tier: str = "STANDARD"
    session_id: str | None = None
    jti: str | None = None
    grants: list[Grant] | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.supplier_id is not None

    @property
    def roles(self) -> list[str]:
        return sorted({g.role for g in (self.grants or [])})

    @property
    def warehouses(self) -> list[str]:
        return sorted({g.warehouse for g in (self.grants or [])})

    def has_role(self, role: str, warehouse: str | None = None) -> bool:
        return any(g.role == role and g.covers(warehouse) for g in (self.grants or []))

    def has_permission(self, perm: str, warehouse: str | None = None) -> bool:
        return can(self.grants or [], perm, warehouse)


def can(access: Iterable[Grant], perm: str, warehouse: str | None = None) -> bool:
    """True when some grant covering the warehouse region lists perm."""
    for g in access:
        if perm in (g.perms or []) and g.covers(warehouse):
            return True
    return False


def can_view(access: Iterable[Grant], warehouse: str) -> bool:
    return any(g.covers(warehouse) for g in access)


def visible_regions(access: Iterable[Grant]) -> set[str] | None:
    """Regions the grants can read; None when one grant covers every warehouse."""
    regions = set()
    for g in access:
        if g.warehouse == ALL_WAREHOUSES:
            return None
        regions.add(g.warehouse)
    return regions


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Malformed or unknown hash format
        return False


def grants_for(supplier: Supplier, now: datetime | None = None) -> list[Grant]:
    now = now or utcnow()
    grants: list[Grant] = []
    for wa in supplier.warehouse_access:
        if wa.expires_at is not None and wa.expires_at <= now:
            continue
        perms = list(wa.permissions or []) or ROLE_PERMISSIONS.get(wa.role, [])
        grants.append(Grant(warehouse=wa.warehouse, role=wa.role, perms=sorted(set(perms))))
    return grants


def _make_jti() -> str:
    return secrets.token_urlsafe(16)


def create_access_token(supplier: Supplier, session_id: str) -> str:
    now = utcnow()
    payload = {
        "iss": IAM_ISSUER,
        "aud": IAM_AUDIENCE,
        "jti": _make_jti(),
        "sub": supplier.id,
        "sid": session_id,
        "email": supplier.email,
        "tier": supplier.tier,
        "grants": [
            {"warehouse": g.warehouse, "role": g.role, "perms": g.perms}
            for g in grants_for(supplier, now)
        ],
        "iat": now,
        "exp": now + timedelta(minutes=JWT_TTL_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_access_token(token: str) -> dict:
    """Decode and verify; raises JWTError on any problem."""
    return jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALG],
        audience=IAM_AUDIENCE,
        issuer=IAM_ISSUER,
    )


def _hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def mint_refresh_token(
    db: Session,
    supplier_id: str,
    session_id: str | None = None,
    created_ip: str | None = None,
    user_agent: str | None = None,
) -> str:
    """Stage a refresh token row; return the raw token string.

    The caller commits.
    """
    raw = secrets.token_urlsafe(48)
    db.add(
        RefreshToken(
            supplier_id=supplier_id,
            session_id=session_id,
            token_hash=_hash_refresh_token(raw),
            expires_at=utcnow() + timedelta(days=REFRESH_TTL_DAYS),
            revoked_at=None,
            created_ip=created_ip,
            user_agent=user_agent,
        )
    )
    return raw


def rotate_refresh_token(
    db: Session,
    raw_refresh_token: str,
    created_ip: str | None = None,
    user_agent: str | None = None,
) -> tuple[RefreshToken, str]:
    """Validate a refresh token, revoke it, and stage a new one.

    Returns (old_token_row, new_raw_refresh_token).
    """
    rt = db.query(RefreshToken).filter(RefreshToken.token_hash == _hash_refresh_token(raw_refresh_token)).first()
    now = utcnow()
    if not rt or rt.revoked_at is not None or rt.expires_at <= now:
        raise AuthenticationFailed("Invalid or expired refresh token")

    rt.revoked_at = now
    new_raw = mint_refresh_token(
        db,
        supplier_id=rt.supplier_id,
        session_id=rt.session_id,
        created_ip=created_ip,
        user_agent=user_agent,
    )
    return rt, new_raw


def revoke_refresh_tokens_for_session(db: Session, session_id: str) -> int:
    now = utcnow()
    count = 0
    for rt in db.query(RefreshToken).filter(RefreshToken.session_id == session_id, RefreshToken.revoked_at.is_(None)).all():
        rt.revoked_at = now
        count += 1
    return count


def revoke_jti(db: Session, jti: str, reason: str | None = None) -> None:
    if db.query(RevokedJTI).filter(RevokedJTI.jti == jti).first():
        return
    db.add(RevokedJTI(jti=jti, revoked_at=utcnow(), reason=reason, is_active=True))


def principal_from_token(db: Session, token: str) -> Principal:
    """Resolve a bearer token to a Principal, anonymous when anything is off."""
    try:
        payload = decode_access_token(token)
    except JWTError:
        return Principal()

    jti = payload.get("jti")
    if jti:
        revoked = db.query(RevokedJTI).filter(RevokedJTI.jti == jti, RevokedJTI.is_active == True).first()  # noqa: E712
        if revoked:
            return Principal()

    supplier_id = payload.get("sub")
    supplier = db.query(Supplier).filter(Supplier.id == supplier_id).first()
    if not supplier or supplier.status != "ACTIVE":
        return Principal()

    session_id = payload.get("sid")
    if session_id:
        sess = db.query(SupplierSession).filter(SupplierSession.id == session_id).first()
        if not sess or sess.revoked or sess.expires_at <= utcnow():
            return Principal()

    grants: list[Grant] = []
    for g in payload.get("grants") or []:
        if not isinstance(g, dict):
            continue
        grants.append(Grant(warehouse=str(g.get("warehouse")), role=str(g.get("role")), perms=list(g.get("perms") or [])))

    return Principal(
        supplier_id=supplier.id,
        email=supplier.email,
        tier=supplier.tier,
        session_id=session_id,
        jti=jti,
        grants=grants,
    )


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> Principal:
    if not creds or not creds.credentials:
        return Principal()
    return principal_from_token(db, creds.credentials)


def require_authenticated(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def require_roles(required: Iterable[str], warehouse: str | None = None) -> Callable:
    required_set = set(required)

    def _dep(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.is_authenticated:
            raise HTTPException(status_code=401, detail="Not authenticated")
        missing = [r for r in required_set if not principal.has_role(r, warehouse=warehouse)]
        if missing:
            detail = {
                "error": "missing_roles",
                "missing": sorted(missing),
                "warehouse": warehouse,
            }
            raise HTTPException(status_code=403, detail=detail)
        return principal

    return _dep


def require_permissions(required: Iterable[str], warehouse: str | None = None) -> Callable:
    required_set = set(required)

    def _dep(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.is_authenticated:
            raise HTTPException(status_code=401, detail="Not authenticated")
        missing = [p for p in required_set if not principal.has_permission(p, warehouse=warehouse)]
        if missing:
            detail = {
                "error": "missing_permissions",
                "missing": sorted(missing),
                "warehouse": warehouse,
            }
            raise HTTPException(status_code=403, detail=detail)
        return principal

    return _dep
