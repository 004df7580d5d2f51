from __future__ import annotations

import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Sequence

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from warden.auth import (
    AuthService,
    Authorizer,
    EmailVerificationService,
    PasswordResetService,
    RateLimiterRegistry,
    RequestContext,
    TokenPair,
    TokenService,
    TwoFactorService,
)
from warden.auth.authorization import ACCESS_COOKIE, REFRESH_COOKIE, UNAUTHORIZED
from warden.config import Settings, load_settings
from warden.crypto import CryptoEngine
from warden.errors import (
    AlreadyUsed,
    AuthenticationError,
    AuthorizationError,
    NotConfigured,
    NotFound,
    RateExceeded,
    ValidationError,
    WardenError,
)
from warden.logging import SecurityLogger, get_logger
from warden.models import User
from warden.services import EmailSender, LogReportService, build_sender, parse_filters

logger = get_logger("api")

CHALLENGE_COOKIE = "two-factor-challenge"
REMEMBER_COOKIE_SECONDS = 30 * 24 * 3600
CHALLENGE_COOKIE_SECONDS = 300

STATUS_BY_ERROR = {
    ValidationError: 400,
    NotConfigured: 400,
    AuthenticationError: 401,
    AuthorizationError: 403,
    NotFound: 404,
    AlreadyUsed: 409,
    RateExceeded: 429,
}


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str
    remember: bool = False


class VerifyLoginRequest(BaseModel):
    code: str
    use_backup_code: bool = False
    challenge_token: str | None = None


class CodeRequest(BaseModel):
    code: str


class EmailRequest(BaseModel):
    email: str | None = None


class ResetPasswordRequest(BaseModel):
    token: str
    password: str


@dataclass
class RequestScope:
    session: Session
    security: SecurityLogger
    two_factor: TwoFactorService
    auth: AuthService
    verification: EmailVerificationService
    password_reset: PasswordResetService
    authorizer: Authorizer
    context: RequestContext
    state: Any = None


def _status_for(exc: WardenError) -> int:
    for error_type, status in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status
    return 500


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        headers=dict(request.headers),
        cookies=dict(request.cookies),
        client_host=request.client.host if request.client else None,
        path=request.url.path,
        user_agent=request.headers.get("user-agent"),
    )


def create_app(
    settings: Settings | None = None,
    engine=None,
    email_sender: EmailSender | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.rate_limits.close()
        app.state.engine.dispose()

    app = FastAPI(title="Warden API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine or create_engine(settings.database_url, future=True, pool_pre_ping=True)
    app.state.session_factory = sessionmaker(bind=app.state.engine, expire_on_commit=False, future=True)
    app.state.crypto = CryptoEngine.from_settings(settings)
    app.state.tokens = TokenService.from_settings(settings, clock=clock)
    app.state.rate_limits = RateLimiterRegistry.from_settings(settings, clock=clock)
    app.state.email_sender = email_sender or build_sender(settings)
    secure_cookies = settings.is_production

    def get_scope(request: Request) -> Iterator[RequestScope]:
        db = app.state.session_factory()
        security = SecurityLogger(
            db,
            webhook_url=settings.security_webhook_url if settings.is_production else None,
        )
        crypto = app.state.crypto
        two_factor = TwoFactorService.from_settings(db, settings, crypto, security_logger=security, clock=clock)
        verification = EmailVerificationService(
            db, crypto, app.state.email_sender, settings.app_url, security_logger=security, clock=clock
        )
        try:
            yield RequestScope(
                session=db,
                security=security,
                two_factor=two_factor,
                auth=AuthService(
                    db,
                    crypto,
                    app.state.tokens,
                    two_factor,
                    verification=verification,
                    security_logger=security,
                    clock=clock,
                ),
                verification=verification,
                password_reset=PasswordResetService(
                    db, crypto, app.state.email_sender, settings.app_url, security_logger=security, clock=clock
                ),
                authorizer=Authorizer(db, app.state.tokens, security_logger=security, clock=clock),
                context=request_context(request),
                state=request.state,
            )
        finally:
            db.close()

    def limit(scope: RequestScope, names: Sequence[str]) -> None:
        ctx = scope.context
        result = app.state.rate_limits.check_multiple(
            names, ctx.ip_address, endpoint=ctx.path, security_logger=scope.security
        )
        if not result.allowed:
            raise RateExceeded("rate_limited", "Too many requests", retry_after=result.retry_after)
        if scope.state is not None:
            scope.state.rate_limit = result

    def current_user(scope: RequestScope) -> User:
        result = scope.authorizer.require_auth(scope.context)
        if not result.authorized:
            raise AuthenticationError("unauthorized", UNAUTHORIZED)
        user = scope.auth.get_user(result.user.id)
        if user is None or not user.is_active:
            raise AuthenticationError("unauthorized", UNAUTHORIZED)
        return user

    def require_admin(scope: RequestScope) -> None:
        result = scope.authorizer.require_admin(scope.context)
        if result.authorized:
            return
        if result.error == UNAUTHORIZED:
            raise AuthenticationError("unauthorized", result.error)
        raise AuthorizationError("forbidden", result.error)

    def set_session_cookies(response: Response, pair: TokenPair) -> None:
        response.set_cookie(
            ACCESS_COOKIE,
            pair.access_token,
            max_age=int(app.state.tokens.access_ttl.total_seconds()),
            httponly=True,
            secure=secure_cookies,
            samesite="strict",
            path="/",
        )
        response.set_cookie(
            REFRESH_COOKIE,
            pair.refresh_token,
            max_age=REMEMBER_COOKIE_SECONDS if pair.remember else None,
            httponly=True,
            secure=secure_cookies,
            samesite="strict",
            path="/",
        )

    @app.exception_handler(WardenError)
    async def handle_warden_error(request: Request, exc: WardenError):
        status = _status_for(exc)
        headers = {}
        if isinstance(exc, RateExceeded) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
            headers["X-RateLimit-Remaining"] = "0"
            headers["X-RateLimit-Reset"] = str(exc.retry_after)
        if status >= 500:
            logger.error("request to %s failed: %s", request.url.path, exc.code)
            body = {"success": False, "error": "internal_error", "message": "Request could not be completed"}
        else:
            body = {"success": False, "error": exc.code, "message": exc.message}
        return JSONResponse(body, status_code=status, headers=headers)

    @app.middleware("http")
    async def rate_limit_headers(request: Request, call_next):
        response = await call_next(request)
        result = getattr(request.state, "rate_limit", None)
        if result is not None and result.allowed:
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            response.headers["X-RateLimit-Reset"] = str(math.ceil(result.reset_seconds))
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse({"success": False, "error": "invalid_input", "message": "Invalid request"}, status_code=400)

    @app.get("/health")
    def health():
        try:
            with app.state.engine.connect() as connection:
                connection.execute(text("select 1"))
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=503, detail="database_unavailable") from exc
        return {"status": "ok"}

    @app.post("/api/auth/register", status_code=201)
    def register(payload: RegisterRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("strict",))
        ctx = scope.context
        result = scope.auth.register(
            payload.name,
            payload.email,
            payload.password,
            payload.phone,
            ip_address=ctx.ip_address,
            user_agent=ctx.agent,
        )
        return {
            "success": True,
            "user_id": result.user.id,
            "verification_email_sent": result.verification_email_sent,
        }

    @app.post("/api/auth/login")
    def login(payload: LoginRequest, response: Response, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("auth",))
        ctx = scope.context
        outcome = scope.auth.authenticate(
            payload.email, payload.password, payload.remember, ip_address=ctx.ip_address, user_agent=ctx.agent
        )
        if outcome.requires_two_factor:
            response.set_cookie(
                CHALLENGE_COOKIE,
                outcome.challenge_token,
                max_age=CHALLENGE_COOKIE_SECONDS,
                httponly=True,
                secure=secure_cookies,
                samesite="strict",
                path="/",
            )
            return {"success": True, "requires_two_factor": True, "challenge_token": outcome.challenge_token}
        set_session_cookies(response, outcome.tokens)
        return {"success": True, "requires_two_factor": False, "user_id": outcome.user_id}

    @app.post("/api/auth/2fa/verify-login")
    def verify_login(payload: VerifyLoginRequest, response: Response, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("strict",))
        ctx = scope.context
        challenge = payload.challenge_token or ctx.cookies.get(CHALLENGE_COOKIE)
        try:
            pair = scope.auth.complete_two_factor_login(
                challenge,
                payload.code,
                use_backup_code=payload.use_backup_code,
                ip_address=ctx.ip_address,
                user_agent=ctx.agent,
            )
        except AlreadyUsed as exc:
            raise AuthenticationError("invalid_code", "Invalid code") from exc
        set_session_cookies(response, pair)
        response.delete_cookie(CHALLENGE_COOKIE, path="/")
        return {"success": True}

    @app.post("/api/auth/refresh")
    def refresh(response: Response, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("general",))
        pair = scope.auth.refresh(scope.context.cookies.get(REFRESH_COOKIE))
        set_session_cookies(response, pair)
        return {"success": True}

    @app.post("/api/auth/logout")
    def logout(response: Response, scope: RequestScope = Depends(get_scope)):
        claims = app.state.tokens.verify(scope.context.access_token(), "access")
        response.delete_cookie(ACCESS_COOKIE, path="/")
        response.delete_cookie(REFRESH_COOKIE, path="/")
        response.delete_cookie(CHALLENGE_COOKIE, path="/")
        if claims is not None:
            scope.security.record_security_event(
                "logout", user_id=claims.user_id, ip_address=scope.context.ip_address, endpoint=scope.context.path
            )
        return {"success": True}

    @app.get("/api/auth/verify-email")
    def verify_email(token: str | None = None, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        if not token:
            raise ValidationError("missing_token", "Token is required")
        scope.verification.verify(token)
        return {"success": True}

    @app.post("/api/auth/verify-email")
    def resend_verification(payload: EmailRequest | None = None, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("strict",))
        claims = app.state.tokens.verify(scope.context.access_token(), "access")
        if claims is not None:
            scope.verification.resend(user_id=claims.user_id)
        else:
            scope.verification.resend(email=payload.email if payload else None)
        return {"success": True}

    @app.post("/api/auth/forgot-password")
    def forgot_password(payload: EmailRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("strict",))
        scope.password_reset.request_reset(payload.email or "")
        return {"success": True, "message": "If the account exists, a reset link has been sent"}

    @app.get("/api/auth/reset-password")
    def validate_reset_token(token: str | None = None, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        return {"valid": bool(token) and scope.password_reset.validate(token)}

    @app.post("/api/auth/reset-password")
    def reset_password(payload: ResetPasswordRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("strict",))
        scope.password_reset.reset_password(payload.token, payload.password)
        return {"success": True}

    @app.post("/api/auth/2fa/setup")
    def two_factor_setup(scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        user = current_user(scope)
        setup = scope.two_factor.begin_setup(user)
        return {"secret": setup.secret, "qr_code": setup.qr_code, "provisioning_uri": setup.provisioning_uri}

    @app.post("/api/auth/2fa/verify-setup")
    def two_factor_verify_setup(payload: CodeRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        user = current_user(scope)
        codes = scope.two_factor.confirm_setup(user, payload.code, scope.context.ip_address, scope.context.agent)
        return {"success": True, "backup_codes": codes}

    @app.post("/api/auth/2fa/disable")
    def two_factor_disable(payload: CodeRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        user = current_user(scope)
        scope.two_factor.disable(user, payload.code, scope.context.ip_address, scope.context.agent)
        return {"success": True}

    @app.get("/api/auth/2fa/backup-codes")
    def backup_code_status(scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        user = current_user(scope)
        return {"enabled": bool(user.two_factor_enabled), "remaining": scope.two_factor.remaining_backup_codes(user.id)}

    @app.post("/api/auth/2fa/backup-codes")
    def regenerate_backup_codes(payload: CodeRequest, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("api",))
        user = current_user(scope)
        codes = scope.two_factor.regenerate_backup_codes(
            user, payload.code, scope.context.ip_address, scope.context.agent
        )
        return {"success": True, "backup_codes": codes}

    def log_query(request: Request) -> tuple:
        params = dict(request.query_params)
        try:
            filters = parse_filters(params)
            page = int(params.get("page") or 1)
            size = int(params.get("limit") or 50)
        except ValueError as exc:
            raise ValidationError("invalid_filter", "Invalid filter value") from exc
        return filters, page, size

    @app.get("/api/admin/logs/security")
    def security_logs(request: Request, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("general",))
        require_admin(scope)
        filters, page, size = log_query(request)
        reports = LogReportService(scope.session)
        if request.query_params.get("format") == "csv":
            return Response(
                reports.export_security_csv(filters),
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=security-logs.csv"},
            )
        body = reports.security_logs(filters, page, size).to_dict()
        if request.query_params.get("stats") in ("1", "true"):
            body["stats"] = reports.security_stats(filters.start_date, filters.end_date)
        return body

    @app.get("/api/admin/logs/audit")
    def audit_logs(request: Request, scope: RequestScope = Depends(get_scope)):
        limit(scope, ("general",))
        require_admin(scope)
        filters, page, size = log_query(request)
        reports = LogReportService(scope.session)
        body = reports.audit_logs(filters, page, size).to_dict()
        if request.query_params.get("stats") in ("1", "true"):
            body["stats"] = reports.audit_stats(filters.start_date, filters.end_date)
        return body

    @app.get("/api/admin/rate-limit-status")
    def rate_limit_status(scope: RequestScope = Depends(get_scope)):
        require_admin(scope)
        return {"limiters": app.state.rate_limits.status()}

    return app
