from .authorization import AuthenticatedUser, AuthorizationResult, Authorizer, RequestContext
from .rate_limit import RateLimiter, RateLimiterRegistry, RateLimitResult, resolve_client_identifier
from .service import AuthService, LoginOutcome, RegistrationResult
from .tokens import TokenClaims, TokenPair, TokenService
from .two_factor import BackupCode, CodeAttempt, SetupPayload, TotpCode, TwoFactorService, TwoFactorState
from .verification import EmailVerificationService, PasswordResetService

__all__ = [
    "AuthService",
    "AuthenticatedUser",
    "AuthorizationResult",
    "Authorizer",
    "BackupCode",
    "CodeAttempt",
    "EmailVerificationService",
    "LoginOutcome",
    "PasswordResetService",
    "RateLimitResult",
    "RateLimiter",
    "RateLimiterRegistry",
    "RegistrationResult",
    "RequestContext",
    "SetupPayload",
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "TotpCode",
    "TwoFactorService",
    "TwoFactorState",
    "resolve_client_identifier",
]
