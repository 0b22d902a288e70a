from services.auth import mfa

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"  # base32 of "12345678901234567890"


def test_totp_matches_rfc6238_vectors():
    assert mfa.totp(RFC_SECRET, at=59) == "287082"
    assert mfa.totp(RFC_SECRET, at=1111111109) == "081804"
    assert mfa.totp(RFC_SECRET, at=1111111111) == "050471"


def test_verify_accepts_adjacent_step_only():
    assert mfa.verify_totp(RFC_SECRET, "287082", at=59)
    assert mfa.verify_totp(RFC_SECRET, "287 082", at=59 + 30)
    assert not mfa.verify_totp(RFC_SECRET, "287082", at=59 + 90)
    assert not mfa.verify_totp(RFC_SECRET, "abc123", at=59)
    assert not mfa.verify_totp(RFC_SECRET, "", at=59)


def test_generated_secret_round_trips():
    secret = mfa.generate_secret()
    assert mfa.verify_totp(secret, mfa.totp(secret, at=1_700_000_000), at=1_700_000_000)


def test_provisioning_uri():
    uri = mfa.provisioning_uri(RFC_SECRET, "ops@supplier.example")
    assert uri.startswith("otpauth://totp/FlexVolt%20Supplier%20Portal%3Aops%40supplier.example?")
    assert f"secret={RFC_SECRET}" in uri
    assert "period=30" in uri


def test_backup_codes_are_single_use():
    codes = mfa.generate_backup_codes()
    assert len(codes) == mfa.BACKUP_CODE_COUNT
    hashes = [mfa.hash_backup_code(c) for c in codes]
    remaining = mfa.consume_backup_code(hashes, codes[0].lower())
    assert remaining is not None and len(remaining) == len(codes) - 1
    assert mfa.consume_backup_code(remaining, codes[0]) is None
