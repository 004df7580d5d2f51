from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from warden.crypto import CryptoEngine
from warden.errors import AlreadyUsed, AuthenticationError, NotConfigured, RateExceeded, ValidationError
from warden.logging.logger import log_security_event
from warden.models import BackupCode as BackupCodeRecord
from warden.models import TwoFactorAttempt, User
from warden.utils.timeutils import normalize_time, utcnow
from warden.utils.validation import is_valid_backup_code_format, is_valid_totp_format

from . import totp

logger = logging.getLogger("warden.two_factor")

SECRET_MAX_LENGTH = 100
BACKUP_CODE_TTL_DAYS = 365
MIN_WINDOW_MINUTES = 1
MAX_WINDOW_MINUTES = 1440


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"
    PENDING_DISABLE = "pending_disable"
    PENDING_BACKUP_REGENERATION = "pending_backup_regeneration"


@dataclass(frozen=True)
class TotpCode:
    code: str

    code_type = "totp"


@dataclass(frozen=True)
class BackupCode:
    code: str

    code_type = "backup"


CodeAttempt = Union[TotpCode, BackupCode]


@dataclass(frozen=True)
class SetupPayload:
    secret: str
    provisioning_uri: str
    qr_code: str


@dataclass(frozen=True)
class LoginVerification:
    user_id: str
    code_type: str
    remaining_backup_codes: int


def clamp_window_minutes(minutes: int) -> int:
    return max(MIN_WINDOW_MINUTES, min(MAX_WINDOW_MINUTES, int(minutes)))


class TwoFactorService:
    """TOTP enrolment, backup codes and second-factor login checks.

    Persistent state lives on the user row: an enabled flag with its
    encrypted secret, or an encrypted pending secret while setup is open.
    Disable and backup-code regeneration pass through a transient state
    that is written to the audit trail.
    """

    def __init__(
        self,
        session: Session,
        crypto: CryptoEngine,
        security_logger=None,
        issuer: str = "Warden",
        max_failures: int = 5,
        window_minutes: int = 15,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.crypto = crypto
        self.security_logger = security_logger
        self.issuer = issuer
        self.max_failures = max_failures
        self.window_minutes = clamp_window_minutes(window_minutes)
        self.clock = clock or utcnow

    @classmethod
    def from_settings(cls, session: Session, settings, crypto: CryptoEngine, security_logger=None, clock=None):
        return cls(
            session,
            crypto,
            security_logger=security_logger,
            issuer=settings.otp_issuer_name,
            max_failures=settings.two_factor_max_failures,
            window_minutes=settings.two_factor_window_minutes,
            clock=clock,
        )

    def state(self, user: User) -> TwoFactorState:
        if user.two_factor_enabled:
            return TwoFactorState.ENABLED
        if user.two_factor_pending_secret:
            return TwoFactorState.PENDING_SETUP
        return TwoFactorState.DISABLED

    def begin_setup(self, user: User) -> SetupPayload:
        if user.two_factor_enabled:
            raise ValidationError("two_factor_already_enabled", "Two-factor authentication is already enabled")
        before = self.state(user)
        secret = totp.generate_secret()
        account = self.crypto.decrypt_or_raw(user.email) or user.id
        uri = totp.provisioning_uri(secret, account, self.issuer)
        user.two_factor_pending_secret = self.crypto.encrypt(secret, max_length=SECRET_MAX_LENGTH)
        self.session.commit()
        self._audit_transition(user, before, TwoFactorState.PENDING_SETUP)
        return SetupPayload(secret=secret, provisioning_uri=uri, qr_code=totp.qr_data_url(uri))

    def confirm_setup(
        self,
        user: User,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[str]:
        if user.two_factor_enabled:
            raise ValidationError("two_factor_already_enabled", "Two-factor authentication is already enabled")
        if not user.two_factor_pending_secret:
            raise NotConfigured("setup_not_started", "Two-factor setup has not been started")
        self._require_totp_format(code)
        self._guard_failures(user.id, ip_address)
        secret = self.crypto.decrypt_required(user.two_factor_pending_secret)
        moment = self._now()
        if not totp.verify_totp(secret, code, moment):
            self._fail(user, ip_address, user_agent, TotpCode.code_type)
        user.two_factor_secret = self.crypto.encrypt(secret, max_length=SECRET_MAX_LENGTH)
        user.two_factor_pending_secret = None
        user.two_factor_enabled = True
        user.two_factor_enabled_at = moment
        codes = self._replace_backup_codes(user.id, moment)
        self.session.commit()
        self._record_attempt(user.id, ip_address, user_agent, True, TotpCode.code_type)
        self._audit_transition(user, TwoFactorState.PENDING_SETUP, TwoFactorState.ENABLED)
        self._security_event("two_factor_enabled", user.id, ip_address, user_agent, "Two-factor authentication enabled")
        return codes

    def disable(
        self,
        user: User,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._reauthenticate(user, code, ip_address, user_agent)
        self._audit_transition(user, TwoFactorState.ENABLED, TwoFactorState.PENDING_DISABLE)
        self.session.execute(delete(BackupCodeRecord).where(BackupCodeRecord.user_id == user.id))
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_pending_secret = None
        user.two_factor_enabled_at = None
        self.session.commit()
        self._audit_transition(user, TwoFactorState.PENDING_DISABLE, TwoFactorState.DISABLED)
        self._security_event("two_factor_disabled", user.id, ip_address, user_agent, "Two-factor authentication disabled")

    def regenerate_backup_codes(
        self,
        user: User,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[str]:
        self._reauthenticate(user, code, ip_address, user_agent)
        self._audit_transition(user, TwoFactorState.ENABLED, TwoFactorState.PENDING_BACKUP_REGENERATION)
        codes = self._replace_backup_codes(user.id, self._now())
        self.session.commit()
        self._audit_transition(user, TwoFactorState.PENDING_BACKUP_REGENERATION, TwoFactorState.ENABLED)
        self._security_event("backup_codes_regenerated", user.id, ip_address, user_agent, "Backup codes regenerated")
        return codes

    def verify_login(
        self,
        user: User,
        attempt: CodeAttempt,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginVerification:
        if isinstance(attempt, TotpCode):
            self._require_totp_format(attempt.code)
        elif isinstance(attempt, BackupCode):
            if not is_valid_backup_code_format(attempt.code):
                raise ValidationError("invalid_code_format", "Backup code must be 8 characters")
        else:
            raise ValidationError("invalid_code_type", "Unsupported code type")
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise NotConfigured()
        self._guard_failures(user.id, ip_address)
        moment = self._now()
        if isinstance(attempt, TotpCode):
            secret = self.crypto.decrypt_required(user.two_factor_secret)
            if not totp.verify_totp(secret, attempt.code, moment):
                self._fail(user, ip_address, user_agent, attempt.code_type)
        else:
            self._consume_backup_code(user, attempt.code, moment, ip_address, user_agent)
        user.two_factor_last_used = moment
        self.session.commit()
        self._record_attempt(user.id, ip_address, user_agent, True, attempt.code_type)
        self._security_event(
            "two_factor_success",
            user.id,
            ip_address,
            user_agent,
            f"Second factor accepted ({attempt.code_type})",
        )
        return LoginVerification(
            user_id=user.id,
            code_type=attempt.code_type,
            remaining_backup_codes=self.remaining_backup_codes(user.id),
        )

    def remaining_backup_codes(self, user_id: str) -> int:
        moment = self._now()
        stmt = select(func.count(BackupCodeRecord.id)).where(
            BackupCodeRecord.user_id == user_id,
            BackupCodeRecord.used_at.is_(None),
            or_(BackupCodeRecord.expires_at.is_(None), BackupCodeRecord.expires_at > moment),
        )
        return int(self.session.execute(stmt).scalar_one())

    def recent_failures(self, user_id: str, ip_address: str | None = None) -> int:
        cutoff = self._now() - timedelta(minutes=self.window_minutes)
        subject = TwoFactorAttempt.user_id == user_id
        if ip_address:
            subject = or_(subject, TwoFactorAttempt.ip_address == ip_address)
        stmt = select(func.count(TwoFactorAttempt.id)).where(
            subject,
            TwoFactorAttempt.success.is_(False),
            TwoFactorAttempt.attempted_at >= cutoff,
        )
        return int(self.session.execute(stmt).scalar_one())

    def claim_backup_code(self, record_id: int, moment: datetime | None = None) -> bool:
        """Mark one backup code used; False when another request got there first."""
        result = self.session.execute(
            update(BackupCodeRecord)
            .where(BackupCodeRecord.id == record_id, BackupCodeRecord.used_at.is_(None))
            .values(used_at=moment or self._now())
        )
        self.session.commit()
        return result.rowcount == 1

    def _consume_backup_code(
        self,
        user: User,
        code: str,
        moment: datetime,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        stmt = select(BackupCodeRecord).where(
            BackupCodeRecord.user_id == user.id,
            BackupCodeRecord.code_hash == totp.hash_backup_code(code),
            or_(BackupCodeRecord.expires_at.is_(None), BackupCodeRecord.expires_at > moment),
        )
        record = self.session.execute(stmt).scalars().first()
        if record is None:
            self._fail(user, ip_address, user_agent, BackupCode.code_type)
        if record.used_at is not None or not self.claim_backup_code(record.id, moment):
            self._record_attempt(user.id, ip_address, user_agent, False, BackupCode.code_type)
            self._security_event(
                "two_factor_failure",
                user.id,
                ip_address,
                user_agent,
                "Backup code already used",
            )
            raise AlreadyUsed("backup_code_used", "Invalid code")

    def _reauthenticate(self, user: User, code: str, ip_address: str | None, user_agent: str | None) -> None:
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise NotConfigured()
        self._require_totp_format(code)
        self._guard_failures(user.id, ip_address)
        secret = self.crypto.decrypt_required(user.two_factor_secret)
        if not totp.verify_totp(secret, code, self._now()):
            self._fail(user, ip_address, user_agent, TotpCode.code_type)
        self._record_attempt(user.id, ip_address, user_agent, True, TotpCode.code_type)

    def _replace_backup_codes(self, user_id: str, moment: datetime) -> list[str]:
        self.session.execute(delete(BackupCodeRecord).where(BackupCodeRecord.user_id == user_id))
        codes = totp.generate_backup_codes()
        expires_at = moment + timedelta(days=BACKUP_CODE_TTL_DAYS)
        for code in codes:
            self.session.add(
                BackupCodeRecord(
                    user_id=user_id,
                    code_hash=totp.hash_backup_code(code),
                    created_at=moment,
                    expires_at=expires_at,
                )
            )
        return codes

    def _guard_failures(self, user_id: str, ip_address: str | None) -> None:
        failures = self.recent_failures(user_id, ip_address)
        if failures >= self.max_failures:
            self._security_event(
                "two_factor_lockout",
                user_id,
                ip_address,
                None,
                f"{failures} failed attempts within {self.window_minutes} minutes",
            )
            raise RateExceeded("too_many_attempts", "Too many attempts", retry_after=self.window_minutes * 60)

    def _fail(self, user: User, ip_address: str | None, user_agent: str | None, code_type: str) -> None:
        self._record_attempt(user.id, ip_address, user_agent, False, code_type)
        self._security_event("two_factor_failure", user.id, ip_address, user_agent, f"Invalid {code_type} code")
        raise AuthenticationError("invalid_code", "Invalid code")

    def _record_attempt(
        self,
        user_id: str,
        ip_address: str | None,
        user_agent: str | None,
        success: bool,
        code_type: str,
    ) -> None:
        self.session.add(
            TwoFactorAttempt(
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                code_type=code_type,
                attempted_at=self._now(),
            )
        )
        self.session.commit()

    def _audit_transition(self, user: User, before: TwoFactorState, after: TwoFactorState) -> None:
        logger.info("two-factor state %s -> %s for user %s", before.value, after.value, user.id)
        if self.security_logger is None:
            return
        self.security_logger.record_audit_event(
            "users",
            user.id,
            "UPDATE",
            old_values={"two_factor_state": before.value},
            new_values={"two_factor_state": after.value},
            user_id=user.id,
        )

    def _security_event(
        self,
        event_type: str,
        user_id: str,
        ip_address: str | None,
        user_agent: str | None,
        details: str,
    ) -> None:
        if self.security_logger is None:
            log_security_event(event_type, ip_address=ip_address, details=details, user_id=user_id)
            return
        self.security_logger.record_security_event(
            event_type,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )

    def _require_totp_format(self, code: str) -> None:
        if not is_valid_totp_format(code):
            raise ValidationError("invalid_code_format", "Code must be 6 digits")

    def _now(self) -> datetime:
        return normalize_time(self.clock())
