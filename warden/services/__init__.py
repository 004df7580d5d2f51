from .email import EmailContent, EmailSender, NullEmailSender, SmtpEmailSender, build_sender
from .log_reports import LogFilters, LogReportService, Page, parse_filters

__all__ = [
    "EmailContent",
    "EmailSender",
    "LogFilters",
    "LogReportService",
    "NullEmailSender",
    "Page",
    "SmtpEmailSender",
    "build_sender",
    "parse_filters",
]
