from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from warden.utils.validation import mask_ip, sanitize_log_details

logger = logging.getLogger("warden.security")

SEVERITY_BY_EVENT_TYPE = {
    "rate_limit": "warning",
    "suspicious_activity": "warning",
    "two_factor_failure": "warning",
    "two_factor_lockout": "warning",
    "unauthorized": "error",
    "api_error": "error",
    "decryption_failure": "error",
}

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"warden.{name}")


def severity_for(event_type: str) -> str:
    return SEVERITY_BY_EVENT_TYPE.get(event_type, "info")


def log_security_event(
    event_type: str,
    severity: str | None = None,
    ip_address: str | None = None,
    endpoint: str | None = None,
    details: str | None = None,
    user_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    level = severity or severity_for(event_type)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "severity": level,
        "ip": mask_ip(ip_address),
        "endpoint": endpoint,
        "user_id": user_id,
        "details": sanitize_log_details(details),
        "metadata": dict(metadata) if metadata else {},
    }
    logger.log(_LEVELS.get(level, logging.INFO), json.dumps(entry, default=str))
