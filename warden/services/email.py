"""Outbound transactional email: account verification and password reset."""

from __future__ import annotations

import html
import logging
import smtplib
from contextlib import contextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Iterator, Protocol

logger = logging.getLogger("warden.email")


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str
    text: str


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        ...


class NullEmailSender:
    """Used when SMTP is not configured; records what would have been sent."""

    def __init__(self) -> None:
        self.outbox: list[tuple[str, EmailContent]] = []

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        self.outbox.append((to, EmailContent(subject=subject, html=html, text=text)))
        logger.warning("SMTP is not configured; email %r was not delivered", subject)
        return False


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        use_ssl: bool = False,
        timeout: int = 15,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_ssl = use_ssl
        self.timeout = timeout

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        if self.use_ssl:
            server: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if not self.use_ssl:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            yield server
        finally:
            try:
                server.quit()
            except smtplib.SMTPException:
                logger.debug("SMTP quit failed", exc_info=True)

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        if not self.sender:
            logger.error("EMAIL_FROM is not configured; cannot send %r", subject)
            return False
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")
        try:
            with self._connection() as smtp:
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email delivery failed for %r: %s", subject, exc)
            return False
        logger.info("email dispatched: %s", subject)
        return True


def build_sender(settings) -> EmailSender:
    if not settings.smtp_host:
        return NullEmailSender()
    return SmtpEmailSender(
        settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.email_from,
        use_ssl=settings.smtp_use_ssl,
    )


def verification_email(name: str, link: str) -> EmailContent:
    safe_name = html.escape(name)
    safe_link = html.escape(link, quote=True)
    return EmailContent(
        subject="Confirm your email address",
        html=(
            f"<p>Hello {safe_name},</p>"
            f"<p>Confirm your email address by opening the link below. It expires in 24 hours.</p>"
            f'<p><a href="{safe_link}">{safe_link}</a></p>'
        ),
        text=f"Hello {name},\n\nConfirm your email address (expires in 24 hours):\n{link}\n",
    )


def password_reset_email(name: str, link: str) -> EmailContent:
    safe_name = html.escape(name)
    safe_link = html.escape(link, quote=True)
    return EmailContent(
        subject="Reset your password",
        html=(
            f"<p>Hello {safe_name},</p>"
            f"<p>A password reset was requested for your account. The link expires in 1 hour.</p>"
            f'<p><a href="{safe_link}">{safe_link}</a></p>'
            f"<p>If you did not request it, ignore this message.</p>"
        ),
        text=(
            f"Hello {name},\n\nReset your password (expires in 1 hour):\n{link}\n\n"
            "If you did not request it, ignore this message.\n"
        ),
    )
