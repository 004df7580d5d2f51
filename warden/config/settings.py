"""Environment-backed application settings with strict validation."""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "OTP_ISSUER_NAME",
)

PRODUCTION_ENV_VARS = (
    "JWT_SECRET",
    "ENCRYPTION_KEY",
)

DEFAULT_RATE_LIMITS = {
    "general": (100, 60, 60),
    "api": (10, 60, 300),
    "strict": (5, 60, 600),
    "auth": (10, 900, 900),
}


def _read_env_var(name: str, env: Mapping[str, str | None]) -> str:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return str(value)


def _read_optional(name: str, env: Mapping[str, str | None]) -> str | None:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def _read_int(name: str, env: Mapping[str, str | None], default: int) -> int:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer") from exc


def _read_bool(name: str, env: Mapping[str, str | None], default: bool = False) -> bool:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class RateLimitSettings:
    points: int
    window_seconds: int
    block_seconds: int


@dataclass(frozen=True)
class Settings:
    database_url: str
    otp_issuer_name: str
    app_env: str
    jwt_secret: str
    encryption_key: str | None
    app_url: str = "http://localhost:8000"
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 7
    remember_refresh_token_ttl_days: int = 30
    two_factor_max_failures: int = 5
    two_factor_window_minutes: int = 15
    rate_limits: Mapping[str, RateLimitSettings] = field(default_factory=dict)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_ssl: bool = False
    email_from: str | None = None
    security_webhook_url: str | None = None
    dashboard_session_secret: str | None = None
    dashboard_otp_secret: str | None = None

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def _load_rate_limits(env: Mapping[str, str | None]) -> dict[str, RateLimitSettings]:
    limits = {}
    for name, (points, window, block) in DEFAULT_RATE_LIMITS.items():
        prefix = f"RATE_LIMIT_{name.upper()}"
        limits[name] = RateLimitSettings(
            points=_read_int(f"{prefix}_POINTS", env, points),
            window_seconds=_read_int(f"{prefix}_WINDOW", env, window),
            block_seconds=_read_int(f"{prefix}_BLOCK", env, block),
        )
    return limits


def load_settings(env: Mapping[str, str | None] | None = None) -> Settings:
    """Load and validate environment variables into a Settings object."""
    source_env = os.environ if env is None else env

    missing = [key for key in REQUIRED_ENV_VARS if not str(source_env.get(key) or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    app_env = str(source_env.get("APP_ENV", "development")).strip() or "development"

    if app_env == "production":
        missing = [key for key in PRODUCTION_ENV_VARS if not str(source_env.get(key) or "").strip()]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    jwt_secret = _read_optional("JWT_SECRET", source_env)
    if jwt_secret is None:
        logger.warning("JWT_SECRET is not set; using an ephemeral signing secret (env=%s)", app_env)
        jwt_secret = secrets.token_hex(32)

    settings = Settings(
        database_url=_read_env_var("DATABASE_URL", source_env),
        otp_issuer_name=_read_env_var("OTP_ISSUER_NAME", source_env),
        app_env=app_env,
        jwt_secret=jwt_secret,
        encryption_key=_read_optional("ENCRYPTION_KEY", source_env),
        app_url=_read_optional("APP_URL", source_env) or "http://localhost:8000",
        access_token_ttl_minutes=_read_int("ACCESS_TOKEN_TTL_MINUTES", source_env, 15),
        refresh_token_ttl_days=_read_int("REFRESH_TOKEN_TTL_DAYS", source_env, 7),
        remember_refresh_token_ttl_days=_read_int("REMEMBER_REFRESH_TOKEN_TTL_DAYS", source_env, 30),
        two_factor_max_failures=_read_int("TWO_FACTOR_MAX_FAILURES", source_env, 5),
        two_factor_window_minutes=_read_int("TWO_FACTOR_WINDOW_MINUTES", source_env, 15),
        rate_limits=_load_rate_limits(source_env),
        smtp_host=_read_optional("SMTP_HOST", source_env),
        smtp_port=_read_int("SMTP_PORT", source_env, 587),
        smtp_user=_read_optional("SMTP_USER", source_env),
        smtp_password=_read_optional("SMTP_PASSWORD", source_env),
        smtp_use_ssl=_read_bool("SMTP_USE_SSL", source_env),
        email_from=_read_optional("EMAIL_FROM", source_env),
        security_webhook_url=_read_optional("SECURITY_WEBHOOK_URL", source_env),
        dashboard_session_secret=_read_optional("DASHBOARD_SESSION_SECRET", source_env),
        dashboard_otp_secret=_read_optional("DASHBOARD_OTP_SECRET", source_env),
    )

    logger.info("Loaded application settings for env=%s", settings.app_env)
    return settings
