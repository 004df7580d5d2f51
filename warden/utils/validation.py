from __future__ import annotations

import re

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TOTP_CODE_PATTERN = re.compile(r"^\d{6}$")
BACKUP_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$", re.IGNORECASE)
BASE32_PATTERN = re.compile(r"^[A-Z2-7]+$")
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

_EMAIL_IN_TEXT = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_LONG_HEX = re.compile(r"[a-f0-9]{32,}", re.IGNORECASE)
_PASSWORD_KV = re.compile(r"password[=:]\s*\S+", re.IGNORECASE)

MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 2


def is_valid_uuid(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return UUID_PATTERN.match(value) is not None


def is_valid_email(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return EMAIL_PATTERN.match(value.strip()) is not None


def is_valid_totp_format(code: object) -> bool:
    if not isinstance(code, str):
        return False
    return TOTP_CODE_PATTERN.match(code) is not None


def is_valid_backup_code_format(code: object) -> bool:
    if not isinstance(code, str):
        return False
    return BACKUP_CODE_PATTERN.match(code) is not None


def is_valid_secret_format(secret: object) -> bool:
    if not isinstance(secret, str) or len(secret) < 16:
        return False
    return BASE32_PATTERN.match(secret.upper()) is not None


def is_valid_token_format(token: object) -> bool:
    if not isinstance(token, str):
        return False
    return TOKEN_PATTERN.match(token) is not None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def sanitize_log_details(details: str | None) -> str | None:
    """Strip emails, long hex tokens and inline passwords from free text."""
    if not details:
        return details
    sanitized = _EMAIL_IN_TEXT.sub("[EMAIL]", details)
    sanitized = _LONG_HEX.sub("[TOKEN]", sanitized)
    return _PASSWORD_KV.sub("password=[REDACTED]", sanitized)


def mask_ip(ip: str | None) -> str | None:
    if not ip or ip == "unknown":
        return ip
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.xxx.xxx"
    return ip
