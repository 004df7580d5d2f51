from __future__ import annotations


class WardenError(Exception):
    """Base class for every error the security core raises on purpose."""

    default_code = "error"

    def __init__(self, code: str | None = None, message: str | None = None) -> None:
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationError(WardenError):
    default_code = "invalid_input"


class AuthenticationError(WardenError):
    default_code = "invalid_credentials"


class AuthorizationError(WardenError):
    default_code = "forbidden"


class RateExceeded(WardenError):
    default_code = "rate_limited"

    def __init__(self, code: str | None = None, message: str | None = None, retry_after: int | None = None) -> None:
        super().__init__(code, message)
        self.retry_after = retry_after


class CryptoFailure(WardenError):
    default_code = "decryption_failed"


class NotConfigured(WardenError):
    default_code = "two_factor_not_configured"


class AlreadyUsed(WardenError):
    default_code = "already_used"


class PersistenceError(WardenError):
    default_code = "persistence_error"


class EmailDeliveryError(WardenError):
    default_code = "email_delivery_failed"


class NotFound(WardenError):
    default_code = "not_found"
