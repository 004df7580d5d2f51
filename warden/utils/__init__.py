from .timeutils import normalize_time, utcnow
from .validation import (
    is_valid_backup_code_format,
    is_valid_email,
    is_valid_secret_format,
    is_valid_token_format,
    is_valid_totp_format,
    is_valid_uuid,
    mask_ip,
    normalize_email,
    sanitize_log_details,
)

__all__ = [
    "is_valid_backup_code_format",
    "is_valid_email",
    "is_valid_secret_format",
    "is_valid_token_format",
    "is_valid_totp_format",
    "is_valid_uuid",
    "mask_ip",
    "normalize_email",
    "normalize_time",
    "sanitize_log_details",
    "utcnow",
]
