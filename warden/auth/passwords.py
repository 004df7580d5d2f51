from __future__ import annotations

from passlib.hash import argon2

from warden.errors import ValidationError
from warden.utils.validation import MIN_PASSWORD_LENGTH

_DUMMY_HASH: str | None = None


def hash_password(password: str) -> str:
    return argon2.hash(password)


def dummy_password_hash() -> str:
    """Stand-in hash verified when no account matches the login email."""
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = argon2.hash("unknown-account-placeholder")
    return _DUMMY_HASH


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return argon2.verify(password, password_hash)
    except ValueError:
        return False


def check_password_strength(password: object) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError("weak_password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password
