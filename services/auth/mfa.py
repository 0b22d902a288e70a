"""Time-based one-time passwords (RFC 6238) and backup codes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote, urlencode

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
BACKUP_CODE_COUNT = 8
ISSUER = "FlexVolt Supplier Portal"


def generate_secret(nbytes: int = 20) -> str:
    return base64.b32encode(secrets.token_bytes(nbytes)).decode("ascii").rstrip("=")


def _key(secret: str) -> bytes:
    s = secret.strip().replace(" ", "").upper()
    return base64.b32decode(s + "=" * (-len(s) % 8))


def hotp(key: bytes, counter: int, digits: int = TOTP_DIGITS) -> str:
    mac = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    code = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(code % (10 ** digits)).zfill(digits)


def totp(secret: str, at: float | None = None) -> str:
    at = time.time() if at is None else at
    return hotp(_key(secret), int(at // TOTP_STEP_SECONDS))


def verify_totp(secret: str, code: str, at: float | None = None, window: int = TOTP_WINDOW) -> bool:
    code = "".join((code or "").split())
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    at = time.time() if at is None else at
    key = _key(secret)
    counter = int(at // TOTP_STEP_SECONDS)
    return any(
        hmac.compare_digest(hotp(key, counter + drift), code)
        for drift in range(-window, window + 1)
    )


def provisioning_uri(secret: str, account: str, issuer: str = ISSUER) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode({
        "secret": secret,
        "issuer": issuer,
        "algorithm": "SHA1",
        "digits": TOTP_DIGITS,
        "period": TOTP_STEP_SECONDS,
    })
    return f"otpauth://totp/{label}?{params}"


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256("".join(code.split()).upper().encode("utf-8")).hexdigest()


def consume_backup_code(hashes: list[str], code: str) -> list[str] | None:
    """Return the remaining hashes when code matches one, else None."""
    h = hash_backup_code(code or "")
    if h not in hashes:
        return None
    return [x for x in hashes if x != h]
