"""Configuration loading and settings management."""

from .settings import PRODUCTION_ENV_VARS, REQUIRED_ENV_VARS, RateLimitSettings, Settings, load_settings

__all__ = ["PRODUCTION_ENV_VARS", "REQUIRED_ENV_VARS", "RateLimitSettings", "Settings", "load_settings"]
