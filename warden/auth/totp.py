from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime
from io import BytesIO

import pyotp
import qrcode

SECRET_LENGTH = 32
VALID_WINDOW = 1
BACKUP_CODE_COUNT = 10
BACKUP_CODE_BYTES = 4


def generate_secret() -> str:
    return pyotp.random_base32(length=SECRET_LENGTH)


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def qr_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def verify_totp(secret: str, code: str, now: datetime | None = None) -> bool:
    """Check a 6-digit code against the current step and one step either side."""
    totp = pyotp.TOTP(secret)
    if now is None:
        return totp.verify(code, valid_window=VALID_WINDOW)
    return totp.verify(code, for_time=now, valid_window=VALID_WINDOW)


def current_code(secret: str, now: datetime | None = None) -> str:
    totp = pyotp.TOTP(secret)
    if now is None:
        return totp.now()
    return totp.at(now)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()
