"""Supplier authentication: registration, login, lockout, MFA, refresh and logout."""

from app.core.security import principal_from_token
from app.db.models.auth import Supplier
from app.db.models.security_audit import AuditLogEntry
from services.auth import mfa, service

PASSWORD = "Sup3rSecret1"


def login(db, email, password=PASSWORD, **kwargs):
    return service.login(db, email=email, password=password, ip="10.0.0.5", user_agent="pytest", **kwargs)


def test_first_registration_bootstraps_admin(db_session):
    first = service.register(db_session, email="Owner@FlexVolt.example", password=PASSWORD,
                             company_name="FlexVolt", contact_name="Owner")
    assert first.success, first.error
    assert first.data["email"] == "owner@flexvolt.example"
    assert first.data["status"] == "ACTIVE"
    assert first.data["warehouse_access"][0]["warehouse"] == "ALL"
    assert first.data["warehouse_access"][0]["role"] == "ADMIN"

    second = service.register(db_session, email="partner@example.com", password=PASSWORD,
                              company_name="Partner", contact_name="P")
    assert second.data["status"] == "PENDING"
    assert second.data["warehouse_access"] == []


def test_register_rejects_weak_password_and_duplicates(db_session, admin):
    weak = service.register(db_session, email="x@example.com", password="short", company_name="X", contact_name="X")
    assert weak.code == "VALIDATION_ERROR"
    dup = service.register(db_session, email=admin.email, password=PASSWORD, company_name="X", contact_name="X")
    assert dup.code == "CONFLICT"


def test_login_issues_tokens_and_session(db_session, admin):
    result = login(db_session, admin.email)
    assert result.success, result.error
    data = result.data
    assert data["token_type"] == "bearer"
    assert data["warehouse"] == "ALL"
    assert data["mfa_setup_required"] is False

    principal = principal_from_token(db_session, data["access_token"])
    assert principal.supplier_id == admin.id
    assert principal.session_id == data["session_id"]
    assert principal.has_permission("MANAGE_COMPLIANCE", "EU_GERMANY")

    events = {e.action for e in db_session.query(AuditLogEntry).all()}
    assert "LOGIN_SUCCESS" in events


def test_wrong_password_and_unknown_email_look_the_same(db_session, admin):
    wrong = login(db_session, admin.email, password="Wrong-pass1")
    unknown = login(db_session, "nobody@example.com")
    assert wrong.code == unknown.code == "UNAUTHORIZED"
    assert wrong.error == unknown.error == "Invalid email or password."


def test_lockout_after_repeated_failures(db_session, admin):
    for _ in range(service.LOGIN_MAX_ATTEMPTS):
        assert login(db_session, admin.email, password="Wrong-pass1").code == "UNAUTHORIZED"
    db_session.refresh(admin)
    assert admin.failed_login_attempts == service.LOGIN_MAX_ATTEMPTS
    assert admin.locked_until is not None
    lock_event = db_session.query(AuditLogEntry).filter(AuditLogEntry.action == "ACCOUNT_LOCKED").one()
    assert lock_event.category == "SECURITY"
    assert lock_event.result == "FAILURE"

    locked = login(db_session, admin.email)
    assert locked.code == "UNAUTHORIZED"
    assert "locked" in locked.error


def test_successful_login_resets_failure_counter(db_session, admin):
    login(db_session, admin.email, password="Wrong-pass1")
    assert login(db_session, admin.email).success
    db_session.refresh(admin)
    assert admin.failed_login_attempts == 0


def test_inactive_supplier_cannot_login(db_session, supplier_factory):
    pending = supplier_factory("pending@example.com", status="PENDING")
    result = login(db_session, pending.email)
    assert result.code == "PERMISSION_DENIED"
    assert result.error == "Account is pending. Please contact support."


def test_login_scoped_to_granted_region(db_session, supplier_factory):
    jp = supplier_factory("jp@example.com", grants=[("JAPAN", "OPERATOR")])
    denied = login(db_session, jp.email, warehouse="US_WEST")
    assert denied.code == "PERMISSION_DENIED"
    allowed = login(db_session, jp.email, warehouse="JAPAN")
    assert allowed.success
    assert allowed.data["warehouse"] == "JAPAN"


def test_premium_tier_is_prompted_for_mfa_setup(db_session, supplier_factory):
    premium = supplier_factory("premium@example.com", grants=[("ALL", "VIEWER")], tier="PREMIUM")
    assert login(db_session, premium.email).data["mfa_setup_required"] is True


def test_mfa_enrolment_and_login(db_session, admin):
    setup = service.setup_mfa(db_session, supplier_id=admin.id, password=PASSWORD)
    assert setup.success, setup.error
    secret = setup.data["secret"]
    assert setup.data["otpauth_uri"].startswith("otpauth://totp/")

    assert service.verify_mfa_setup(db_session, supplier_id=admin.id, code="000000").code == "VALIDATION_ERROR"
    assert service.verify_mfa_setup(db_session, supplier_id=admin.id, code=mfa.totp(secret)).success

    challenge = login(db_session, admin.email)
    assert challenge.code == "UNAUTHORIZED"
    assert challenge.data == {"requires_mfa": True}

    assert login(db_session, admin.email, mfa_code=mfa.totp(secret)).success

    backup = setup.data["backup_codes"][0]
    assert login(db_session, admin.email, mfa_code=backup).success
    reused = login(db_session, admin.email, mfa_code=backup)
    assert reused.code == "UNAUTHORIZED"
    assert reused.error == "Invalid MFA code."


def test_mfa_setup_requires_password(db_session, admin):
    assert service.setup_mfa(db_session, supplier_id=admin.id, password="nope").code == "UNAUTHORIZED"


def test_refresh_rotates_token(db_session, admin):
    tokens = login(db_session, admin.email).data
    rotated = service.refresh(db_session, refresh_token=tokens["refresh_token"])
    assert rotated.success, rotated.error
    assert rotated.data["refresh_token"] != tokens["refresh_token"]
    replay = service.refresh(db_session, refresh_token=tokens["refresh_token"])
    assert replay.code == "UNAUTHORIZED"


def test_logout_revokes_session_and_token(db_session, admin):
    tokens = login(db_session, admin.email).data
    assert service.validate_session(db_session, token=tokens["access_token"]).success

    out = service.logout(db_session, token=tokens["access_token"])
    assert out.data == {"logged_out": True, "revoked_refresh_tokens": 1}
    assert service.validate_session(db_session, token=tokens["access_token"]).code == "UNAUTHORIZED"
    assert not principal_from_token(db_session, tokens["access_token"]).is_authenticated
    assert service.refresh(db_session, refresh_token=tokens["refresh_token"]).code == "UNAUTHORIZED"


def test_grant_access_activates_pending_supplier(db_session, supplier_factory, admin):
    pending = supplier_factory("newbie@example.com", status="PENDING")
    result = service.grant_warehouse_access(
        db_session, supplier_id=pending.id, warehouse="EU_GERMANY", role="OPERATOR", granted_by=admin.id,
    )
    assert result.success, result.error
    assert result.data["status"] == "ACTIVE"
    grant = result.data["warehouse_access"][0]
    assert grant["warehouse"] == "EU_GERMANY"
    assert "MANAGE_ORDERS" in grant["permissions"]

    bad = service.grant_warehouse_access(db_session, supplier_id=pending.id, warehouse="MARS", role="OPERATOR")
    assert bad.code == "VALIDATION_ERROR"
    assert db_session.query(Supplier).filter(Supplier.id == pending.id).one().status == "ACTIVE"
