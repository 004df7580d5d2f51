from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from warden.crypto import CryptoEngine, search_hash
from warden.errors import AlreadyUsed, EmailDeliveryError, NotFound, ValidationError
from warden.models import EmailVerificationToken, PasswordResetToken, User
from warden.services.email import EmailSender, password_reset_email, verification_email
from warden.utils.timeutils import normalize_time, utcnow
from warden.utils.validation import is_valid_email, is_valid_token_format, normalize_email

from .passwords import check_password_strength, hash_password

logger = logging.getLogger("warden.verification")

VERIFICATION_TTL = timedelta(hours=24)
RESET_TTL = timedelta(hours=1)
TOKEN_BYTES = 32


class _TokenMailer:
    def __init__(
        self,
        session: Session,
        crypto: CryptoEngine,
        sender: EmailSender,
        app_url: str = "http://localhost:8000",
        security_logger=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.crypto = crypto
        self.sender = sender
        self.app_url = app_url.rstrip("/")
        self.security_logger = security_logger
        self.clock = clock or utcnow

    def _now(self) -> datetime:
        return normalize_time(self.clock())

    def _live_user(self, user_id: str) -> User | None:
        return self.session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        ).scalar_one_or_none()

    def _user_by_email(self, email: str) -> User | None:
        return self.session.execute(
            select(User).where(User.email_hash == search_hash(normalize_email(email)), User.deleted_at.is_(None))
        ).scalar_one_or_none()

    def _security_event(self, event_type: str, user_id: str | None, details: str) -> None:
        if self.security_logger is not None:
            self.security_logger.record_security_event(event_type, user_id=user_id, details=details)


class EmailVerificationService(_TokenMailer):
    """Single-use 24 hour tokens that confirm ownership of the account email."""

    def issue_token(self, user_id: str) -> str:
        moment = self._now()
        self.session.execute(
            update(EmailVerificationToken)
            .where(EmailVerificationToken.user_id == user_id, EmailVerificationToken.used_at.is_(None))
            .values(used_at=moment)
        )
        token = secrets.token_hex(TOKEN_BYTES)
        self.session.add(
            EmailVerificationToken(
                user_id=user_id,
                token=token,
                expires_at=moment + VERIFICATION_TTL,
                created_at=moment,
            )
        )
        self.session.commit()
        return token

    def send_verification(self, user: User) -> bool:
        token = self.issue_token(user.id)
        link = f"{self.app_url}/verify-email?token={token}"
        content = verification_email(self.crypto.decrypt_or_raw(user.name) or "", link)
        address = self.crypto.decrypt_or_raw(user.email)
        sent = self.sender.send(address, content.subject, content.html, content.text)
        if not sent:
            logger.warning("verification email for user %s was not delivered", user.id)
        return sent

    def verify(self, token: str) -> str:
        """Mark the owner's email verified and return the user id."""
        record = self.lookup(token)
        user = self._live_user(record.user_id)
        if user is None:
            raise ValidationError("invalid_token", "Invalid or expired token")
        if self._is_verified(record.user_id):
            return record.user_id
        if record.used_at is not None:
            raise AlreadyUsed("token_used", "Token has already been used")
        if normalize_time(record.expires_at) < self._now():
            raise ValidationError("token_expired", "Invalid or expired token")
        if not self.claim(record):
            raise AlreadyUsed("token_used", "Token has already been used")
        return record.user_id

    def lookup(self, token: str) -> EmailVerificationToken:
        if not is_valid_token_format(token):
            raise ValidationError("invalid_token", "Invalid or expired token")
        record = self.session.execute(
            select(EmailVerificationToken).where(EmailVerificationToken.token == token.lower())
        ).scalar_one_or_none()
        if record is None:
            raise ValidationError("invalid_token", "Invalid or expired token")
        return record

    def claim(self, record: EmailVerificationToken) -> bool:
        """Consume the token and verify the user in one transaction.

        A request that loses the race for the token still succeeds when the
        winner has already verified the same user.
        """
        moment = self._now()
        result = self.session.execute(
            update(EmailVerificationToken)
            .where(EmailVerificationToken.id == record.id, EmailVerificationToken.used_at.is_(None))
            .values(used_at=moment)
        )
        if result.rowcount == 0:
            self.session.rollback()
            return self._is_verified(record.user_id)
        self.session.execute(
            update(User)
            .where(User.id == record.user_id, User.email_verified.is_(False))
            .values(email_verified=True, email_verified_at=moment)
        )
        self.session.commit()
        self._security_event("email_verified", record.user_id, "Email address verified")
        return True

    def resend(self, user_id: str | None = None, email: str | None = None) -> bool:
        if user_id:
            user = self._live_user(user_id)
        elif email and is_valid_email(email):
            user = self._user_by_email(email)
        else:
            raise ValidationError("invalid_email", "A valid email is required")
        if user is None:
            raise NotFound("user_not_found", "User not found")
        if user.email_verified:
            raise ValidationError("already_verified", "Email is already verified")
        if not self.send_verification(user):
            raise EmailDeliveryError()
        return True

    def _is_verified(self, user_id: str) -> bool:
        verified = self.session.execute(select(User.email_verified).where(User.id == user_id)).scalar_one_or_none()
        return bool(verified)


class PasswordResetService(_TokenMailer):
    """One hour reset tokens; requests never reveal whether an account exists."""

    def request_reset(self, email: str) -> None:
        if not is_valid_email(email):
            raise ValidationError("invalid_email", "A valid email is required")
        user = self._user_by_email(email)
        if user is None or not user.is_active:
            logger.info("password reset requested for unknown or inactive account")
            return
        token = self._issue_token(user.id)
        link = f"{self.app_url}/reset-password?token={token}"
        content = password_reset_email(self.crypto.decrypt_or_raw(user.name) or "", link)
        if not self.sender.send(self.crypto.decrypt_or_raw(user.email), content.subject, content.html, content.text):
            logger.error("password reset email for user %s was not delivered", user.id)
        self._security_event("password_reset_requested", user.id, "Password reset requested")

    def validate(self, token: str) -> bool:
        return self._find_active(token) is not None

    def reset_password(self, token: str, password: str) -> str:
        check_password_strength(password)
        record = self._find_active(token)
        if record is None:
            raise ValidationError("invalid_token", "Invalid or expired token")
        moment = self._now()
        result = self.session.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.id == record.id, PasswordResetToken.used_at.is_(None))
            .values(used_at=moment)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise ValidationError("invalid_token", "Invalid or expired token")
        self.session.execute(
            update(User).where(User.id == record.user_id).values(password_hash=hash_password(password), updated_at=moment)
        )
        self.session.commit()
        if self.security_logger is not None:
            self.security_logger.record_audit_event(
                "users",
                record.user_id,
                "UPDATE",
                new_values={"password_changed": True},
                user_id=record.user_id,
            )
        self._security_event("password_reset", record.user_id, "Password reset completed")
        return record.user_id

    def _issue_token(self, user_id: str) -> str:
        moment = self._now()
        self.session.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.user_id == user_id, PasswordResetToken.used_at.is_(None))
            .values(used_at=moment)
        )
        token = secrets.token_hex(TOKEN_BYTES)
        self.session.add(
            PasswordResetToken(user_id=user_id, token=token, expires_at=moment + RESET_TTL, created_at=moment)
        )
        self.session.commit()
        return token

    def _find_active(self, token: str) -> PasswordResetToken | None:
        if not is_valid_token_format(token):
            return None
        stmt = (
            select(PasswordResetToken)
            .join(User, User.id == PasswordResetToken.user_id)
            .where(
                PasswordResetToken.token == token.lower(),
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > self._now(),
                User.is_active.is_(True),
                User.deleted_at.is_(None),
            )
        )
        return self.session.execute(stmt).scalars().first()
