from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from .db import Base


class OperatorSecret(Base):
    __tablename__ = "operator_secrets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_secret = Column(String, nullable=False)
    otp_secret = Column(String(64), nullable=False)
    provisioning_link_shown = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
