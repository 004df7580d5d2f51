from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warden.logging.logger import log_security_event
from warden.models import Subscription, User
from warden.utils.timeutils import normalize_time, utcnow
from warden.utils.validation import is_valid_uuid

from .rate_limit import resolve_client_identifier
from .tokens import TokenService

logger = logging.getLogger("warden.authorization")

ACCESS_COOKIE = "access-token"
REFRESH_COOKIE = "refresh-token"
UNAUTHORIZED = "Unauthorized"
FORBIDDEN = "Access denied"


@dataclass(frozen=True)
class RequestContext:
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None
    path: str | None = None
    user_agent: str | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if str(key).lower() == wanted:
                return value
        return None

    @property
    def ip_address(self) -> str:
        return resolve_client_identifier(self.headers, self.client_host)

    @property
    def agent(self) -> str | None:
        return self.user_agent or self.header("user-agent")

    def access_token(self) -> str | None:
        token = self.cookies.get(ACCESS_COOKIE)
        if token:
            return token
        authorization = self.header("authorization") or ""
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        return None


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str | None
    remember: bool = False


@dataclass(frozen=True)
class AuthorizationResult:
    authorized: bool
    user: AuthenticatedUser | None = None
    error: str | None = None


class Authorizer:
    def __init__(
        self,
        session: Session,
        tokens: TokenService,
        security_logger=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.tokens = tokens
        self.security_logger = security_logger
        self.clock = clock or utcnow

    def require_auth(self, ctx: RequestContext) -> AuthorizationResult:
        claims = self.tokens.verify(ctx.access_token(), "access")
        if claims is None:
            return self._deny(ctx, UNAUTHORIZED, "Missing or invalid access token")
        if not is_valid_uuid(claims.user_id):
            return self._deny(ctx, UNAUTHORIZED, "Access token subject is not a valid id")
        return AuthorizationResult(
            authorized=True,
            user=AuthenticatedUser(id=claims.user_id, email=claims.email, remember=claims.remember),
        )

    def require_ownership(self, ctx: RequestContext, owner_id: str | None) -> AuthorizationResult:
        result = self.require_auth(ctx)
        if not result.authorized:
            return result
        if not owner_id:
            return result
        if not is_valid_uuid(owner_id):
            return self._deny(ctx, FORBIDDEN, "Resource owner id is malformed", result.user.id)
        if owner_id != result.user.id:
            return self._deny(ctx, FORBIDDEN, "Resource belongs to another user", result.user.id)
        return result

    def require_subscription(self, user_id: str) -> bool:
        if not is_valid_uuid(user_id):
            return False
        moment = normalize_time(self.clock())
        stmt = select(Subscription.id).where(
            Subscription.user_id == user_id,
            Subscription.status == "active",
            or_(Subscription.expires_at.is_(None), Subscription.expires_at > moment),
        )
        try:
            return self.session.execute(stmt).first() is not None
        except SQLAlchemyError as exc:
            logger.error("subscription lookup failed for user %s: %s", user_id, exc)
            return False

    def require_admin(self, ctx: RequestContext) -> AuthorizationResult:
        result = self.require_auth(ctx)
        if not result.authorized:
            return result
        user = self.session.execute(
            select(User).where(User.id == result.user.id, User.deleted_at.is_(None))
        ).scalar_one_or_none()
        if user is None or not user.is_active or not user.is_admin:
            return self._deny(ctx, FORBIDDEN, "Administrator role required", result.user.id)
        return result

    def _deny(self, ctx: RequestContext, error: str, details: str, user_id: str | None = None) -> AuthorizationResult:
        if self.security_logger is not None:
            self.security_logger.record_security_event(
                "unauthorized",
                user_id=user_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.agent,
                endpoint=ctx.path,
                details=details,
            )
        else:
            log_security_event("unauthorized", ip_address=ctx.ip_address, endpoint=ctx.path, details=details, user_id=user_id)
        return AuthorizationResult(authorized=False, error=error)
