from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from warden.errors import AuthenticationError
from warden.utils.timeutils import utcnow

logger = logging.getLogger("warden.tokens")

ALGORITHM = "HS256"
TOKEN_TYPES = ("access", "refresh", "two_factor")
REQUIRED_CLAIMS = ("sub", "iat", "exp", "typ", "jti")
CHALLENGE_TTL_MINUTES = 5


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str | None
    remember: bool
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    remember: bool
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenService:
    """Issues and verifies HS256 session tokens.

    Tokens carry no server-side state: there is no revocation list, so a
    token stays valid until ``exp`` even after logout.
    """

    def __init__(
        self,
        secret: str,
        access_ttl_minutes: int = 15,
        refresh_ttl_days: int = 7,
        remember_refresh_ttl_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self.secret = secret
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(days=refresh_ttl_days)
        self.remember_refresh_ttl = timedelta(days=remember_refresh_ttl_days)
        self.challenge_ttl = timedelta(minutes=CHALLENGE_TTL_MINUTES)
        self.clock = clock or utcnow

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] | None = None) -> "TokenService":
        return cls(
            settings.jwt_secret,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_days=settings.refresh_token_ttl_days,
            remember_refresh_ttl_days=settings.remember_refresh_token_ttl_days,
            clock=clock,
        )

    def issue_access_token(self, user_id: str, email: str | None = None, remember: bool = False) -> str:
        return self._encode(user_id, email, remember, "access", self.access_ttl)

    def issue_refresh_token(self, user_id: str, email: str | None = None, remember: bool = False) -> str:
        ttl = self.remember_refresh_ttl if remember else self.refresh_ttl
        return self._encode(user_id, email, remember, "refresh", ttl)

    def issue_challenge_token(self, user_id: str, email: str | None = None, remember: bool = False) -> str:
        return self._encode(user_id, email, remember, "two_factor", self.challenge_ttl)

    def issue_pair(self, user_id: str, email: str | None = None, remember: bool = False) -> TokenPair:
        moment = self._now()
        refresh_ttl = self.remember_refresh_ttl if remember else self.refresh_ttl
        return TokenPair(
            access_token=self.issue_access_token(user_id, email, remember),
            refresh_token=self.issue_refresh_token(user_id, email, remember),
            remember=remember,
            access_expires_at=moment + self.access_ttl,
            refresh_expires_at=moment + refresh_ttl,
        )

    def verify(self, token: str | None, expected_type: str | None = None) -> TokenClaims | None:
        """Return the claims of a valid token, or None for any failure."""
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": list(REQUIRED_CLAIMS),
                },
            )
        except jwt.InvalidTokenError as exc:
            logger.debug("token rejected: %s", exc)
            return None
        try:
            claims = TokenClaims(
                user_id=str(payload["sub"]),
                email=payload.get("email"),
                remember=bool(payload.get("remember", False)),
                token_type=str(payload["typ"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                jti=str(payload["jti"]),
            )
        except (TypeError, ValueError, OverflowError):
            return None
        if claims.token_type not in TOKEN_TYPES:
            return None
        if expected_type is not None and claims.token_type != expected_type:
            return None
        if claims.expires_at <= self._now():
            return None
        return claims

    def require(self, token: str | None, expected_type: str) -> TokenClaims:
        claims = self.verify(token, expected_type)
        if claims is None:
            raise AuthenticationError("invalid_token", "Invalid or expired token")
        return claims

    def _encode(self, user_id: str, email: str | None, remember: bool, token_type: str, ttl: timedelta) -> str:
        moment = self._now()
        payload = {
            "sub": str(user_id),
            "email": email,
            "remember": bool(remember),
            "typ": token_type,
            "iat": int(moment.timestamp()),
            "exp": int((moment + ttl).timestamp()),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def _now(self) -> datetime:
        moment = self.clock()
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment
