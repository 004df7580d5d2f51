from .auth import BackupCode, EmailVerificationToken, PasswordResetToken, Subscription, User
from .db import Base
from .log import AuditLog, SecurityLog, TwoFactorAttempt
from .settings import OperatorSecret

__all__ = [
	"AuditLog",
	"BackupCode",
	"Base",
	"EmailVerificationToken",
	"OperatorSecret",
	"PasswordResetToken",
	"SecurityLog",
	"Subscription",
	"TwoFactorAttempt",
	"User",
]
