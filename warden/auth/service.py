from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warden.crypto import CryptoEngine, search_hash
from warden.errors import AlreadyUsed, AuthenticationError, AuthorizationError, ValidationError
from warden.models import User
from warden.utils.timeutils import normalize_time, utcnow
from warden.utils.validation import MIN_NAME_LENGTH, is_valid_email, normalize_email

from .passwords import check_password_strength, dummy_password_hash, hash_password, verify_password
from .tokens import TokenPair, TokenService
from .two_factor import BackupCode, TotpCode, TwoFactorService
from .verification import EmailVerificationService

logger = logging.getLogger("warden.auth")

EMAIL_MAX_LENGTH = 255
NAME_MAX_LENGTH = 255
PHONE_MAX_LENGTH = 32


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    verification_email_sent: bool


@dataclass(frozen=True)
class LoginOutcome:
    user_id: str
    requires_two_factor: bool
    tokens: TokenPair | None = None
    challenge_token: str | None = None


class AuthService:
    def __init__(
        self,
        session: Session,
        crypto: CryptoEngine,
        tokens: TokenService,
        two_factor: TwoFactorService,
        verification: EmailVerificationService | None = None,
        security_logger=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.crypto = crypto
        self.tokens = tokens
        self.two_factor = two_factor
        self.verification = verification
        self.security_logger = security_logger
        self.clock = clock or utcnow

    def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RegistrationResult:
        clean_name = (name or "").strip() if isinstance(name, str) else ""
        if len(clean_name) < MIN_NAME_LENGTH:
            raise ValidationError("invalid_name", f"Name must be at least {MIN_NAME_LENGTH} characters")
        if not is_valid_email(email):
            raise ValidationError("invalid_email", "A valid email is required")
        check_password_strength(password)
        normalized = normalize_email(email)
        email_hash = search_hash(normalized)
        existing = self.session.execute(select(User.id).where(User.email_hash == email_hash)).first()
        if existing is not None:
            raise AlreadyUsed("email_in_use", "Email is already registered")
        user = User(
            email=self.crypto.encrypt(normalized, EMAIL_MAX_LENGTH),
            email_hash=email_hash,
            name=self.crypto.encrypt(clean_name, NAME_MAX_LENGTH),
            phone=self.crypto.encrypt((phone or "").strip() or None, PHONE_MAX_LENGTH),
            password_hash=hash_password(password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise AlreadyUsed("email_in_use", "Email is already registered") from exc
        self.session.refresh(user)
        if self.security_logger is not None:
            self.security_logger.record_audit_event(
                "users",
                user.id,
                "INSERT",
                new_values={"email_hash": email_hash, "email_verified": False},
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        sent = self.verification.send_verification(user) if self.verification is not None else False
        logger.info("registered user %s (verification email sent: %s)", user.id, sent)
        return RegistrationResult(user=user, verification_email_sent=sent)

    def authenticate(
        self,
        email: str,
        password: str,
        remember: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginOutcome:
        if not is_valid_email(email) or not isinstance(password, str) or not password:
            raise AuthenticationError()
        normalized = normalize_email(email)
        user = self.get_user_by_email(normalized)
        if user is None:
            verify_password(password, dummy_password_hash())
        if user is None or not verify_password(password, user.password_hash):
            self._security_event("login_failed", user.id if user else None, ip_address, user_agent, "Invalid credentials")
            raise AuthenticationError()
        if not user.is_active:
            self._security_event("login_blocked", user.id, ip_address, user_agent, "Inactive account")
            raise AuthorizationError("account_inactive", "Account is inactive")
        if user.two_factor_enabled:
            return LoginOutcome(
                user_id=user.id,
                requires_two_factor=True,
                challenge_token=self.tokens.issue_challenge_token(user.id, normalized, remember),
            )
        pair = self._start_session(user, normalized, remember)
        self._security_event("login_success", user.id, ip_address, user_agent, "Password login")
        return LoginOutcome(user_id=user.id, requires_two_factor=False, tokens=pair)

    def complete_two_factor_login(
        self,
        challenge_token: str,
        code: str,
        use_backup_code: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        claims = self.tokens.require(challenge_token, "two_factor")
        user = self.get_user(claims.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError()
        code = (code or "").strip()
        attempt = BackupCode(code.upper()) if use_backup_code else TotpCode(code)
        self.two_factor.verify_login(user, attempt, ip_address, user_agent)
        pair = self._start_session(user, claims.email, claims.remember)
        self._security_event("login_success", user.id, ip_address, user_agent, f"Two-factor login ({attempt.code_type})")
        return pair

    def refresh(self, refresh_token: str) -> TokenPair:
        """Issue a new access token; the refresh token itself is kept as is."""
        claims = self.tokens.require(refresh_token, "refresh")
        user = self.get_user(claims.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("invalid_token", "Invalid or expired token")
        moment = normalize_time(self.clock())
        return TokenPair(
            access_token=self.tokens.issue_access_token(claims.user_id, claims.email, claims.remember),
            refresh_token=refresh_token,
            remember=claims.remember,
            access_expires_at=moment + self.tokens.access_ttl,
            refresh_expires_at=claims.expires_at,
        )

    def get_user(self, user_id: str) -> User | None:
        return self.session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        ).scalar_one_or_none()

    def get_user_by_email(self, email: str) -> User | None:
        return self.session.execute(
            select(User).where(User.email_hash == search_hash(email), User.deleted_at.is_(None))
        ).scalar_one_or_none()

    def _start_session(self, user: User, email: str | None, remember: bool) -> TokenPair:
        user.last_login_at = normalize_time(self.clock())
        self.session.commit()
        return self.tokens.issue_pair(user.id, email, remember)

    def _security_event(
        self,
        event_type: str,
        user_id: str | None,
        ip_address: str | None,
        user_agent: str | None,
        details: str,
    ) -> None:
        if self.security_logger is None:
            return
        self.security_logger.record_security_event(
            event_type,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
