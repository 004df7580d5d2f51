from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import httpx
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warden.errors import PersistenceError
from warden.models import AuditLog, SecurityLog
from warden.utils.timeutils import utcnow
from warden.utils.validation import mask_ip, sanitize_log_details

from .logger import severity_for

AUDIT_ACTIONS = ("INSERT", "UPDATE", "DELETE")
SEVERITIES = ("info", "warning", "error", "critical")


class SecurityLogger:
    """Writes security events and data-change audit records.

    Rows are append-only (see ``ImmutableLogMixin``); each persisted entry is
    mirrored as one JSON line on the ``warden.audit`` logger and, when a
    webhook is configured, forwarded to it.
    """

    def __init__(
        self,
        session: Session,
        logger: logging.Logger | None = None,
        webhook_url: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.session = session
        self.logger = logger or logging.getLogger("warden.audit")
        self.webhook_url = webhook_url
        self.http_client = http_client

    def record_security_event(
        self,
        event_type: str,
        severity: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        endpoint: str | None = None,
        details: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> SecurityLog:
        level = severity or severity_for(event_type)
        if level not in SEVERITIES:
            raise ValueError(f"Unknown severity: {level}")
        entry = SecurityLog(
            event_type=event_type,
            severity=level,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            endpoint=endpoint,
            details=sanitize_log_details(details),
            event_metadata=dict(metadata) if metadata else {},
            created_at=utcnow(),
        )
        self._persist(entry, "security")
        self._forward(entry)
        return entry

    def record_audit_event(
        self,
        table_name: str,
        record_id: str,
        action: str,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = AuditLog(
            table_name=table_name,
            record_id=str(record_id),
            action=action,
            old_values=dict(old_values) if old_values else None,
            new_values=dict(new_values) if new_values else None,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        self._persist(entry, "audit")
        return entry

    def _persist(self, entry: Any, category: str) -> None:
        self.session.add(entry)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("log_write_failed", f"Could not persist {category} log entry") from exc
        self.session.refresh(entry)
        self._log_entry(category, entry)

    def _log_entry(self, category: str, entry: Any) -> None:
        payload = {"category": category}
        for attr in inspect(entry).mapper.column_attrs:
            payload[attr.columns[0].name] = getattr(entry, attr.key)
        if payload.get("ip_address"):
            payload["ip_address"] = mask_ip(payload["ip_address"])
        self.logger.info(json.dumps(payload, default=str))

    def _forward(self, entry: SecurityLog) -> None:
        if not self.webhook_url:
            return
        body = {
            "type": entry.event_type,
            "severity": entry.severity,
            "ip": entry.ip_address,
            "endpoint": entry.endpoint,
            "details": entry.details,
            "timestamp": entry.created_at.isoformat() if entry.created_at else None,
        }
        try:
            if self.http_client is not None:
                self.http_client.post(self.webhook_url, json=body)
            else:
                httpx.post(self.webhook_url, json=body, timeout=2.0)
        except httpx.HTTPError as exc:
            self.logger.warning("security webhook delivery failed: %s", exc)
