from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, event, func

from .db import Base
from warden.utils.timeutils import utcnow


class ImmutableLogMixin:
    @classmethod
    def __declare_last__(cls) -> None:
        event.listen(cls, "before_update", cls._deny_mutation)
        event.listen(cls, "before_delete", cls._deny_mutation)

    @staticmethod
    def _deny_mutation(mapper, connection, target) -> None:
        raise ValueError("Log entries are immutable")


class TwoFactorAttempt(ImmutableLogMixin, Base):
    __tablename__ = "two_factor_attempts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    ip_address = Column(String(64), index=True)
    user_agent = Column(String)
    success = Column(Boolean, nullable=False)
    code_type = Column(String(16), nullable=False, default="totp")
    attempted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class SecurityLog(ImmutableLogMixin, Base):
    __tablename__ = "security_logs"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default="info")
    user_id = Column(String(36))
    ip_address = Column(String(64))
    user_agent = Column(String)
    endpoint = Column(String(255))
    details = Column(String)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AuditLog(ImmutableLogMixin, Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    table_name = Column(String(64), nullable=False)
    record_id = Column(String(64), nullable=False)
    action = Column(String(16), nullable=False)
    old_values = Column(JSON)
    new_values = Column(JSON)
    user_id = Column(String(36))
    ip_address = Column(String(64))
    user_agent = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
