from .audit import AUDIT_ACTIONS, SEVERITIES, SecurityLogger
from .logger import get_logger, log_security_event, severity_for

__all__ = ["AUDIT_ACTIONS", "SEVERITIES", "SecurityLogger", "get_logger", "log_security_event", "severity_for"]
