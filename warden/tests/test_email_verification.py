from __future__ import annotations

import os
import re
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from warden.auth import EmailVerificationService, PasswordResetService
from warden.auth.passwords import hash_password, verify_password
from warden.crypto import CryptoEngine, search_hash
from warden.errors import AlreadyUsed, EmailDeliveryError, NotFound, ValidationError
from warden.logging import SecurityLogger
from warden.models import AuditLog, Base, EmailVerificationToken, SecurityLog, User

MASTER_KEY = bytes(range(32))
TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")


class FakeClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


class RecordingSender:
    def __init__(self, delivered: bool = True) -> None:
        self.delivered = delivered
        self.outbox: list[dict] = []

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        self.outbox.append({"to": to, "subject": subject, "html": html, "text": text})
        return self.delivered

    def last_token(self) -> str:
        return TOKEN_IN_LINK.search(self.outbox[-1]["text"]).group(1)


def make_user(session: Session, crypto: CryptoEngine, email: str, password: str = "old-password") -> User:
    user = User(
        email=crypto.encrypt(email),
        email_hash=search_hash(email),
        name=crypto.encrypt("Bia <Lima>"),
        password_hash=hash_password(password),
    )
    session.add(user)
    session.commit()
    return user


class EmailVerificationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.crypto = CryptoEngine(MASTER_KEY, iterations=1000)
        self.clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        self.sender = RecordingSender()
        self.service = EmailVerificationService(
            self.session,
            self.crypto,
            self.sender,
            app_url="https://warden.example.com/",
            security_logger=SecurityLogger(self.session),
            clock=self.clock,
        )
        self.user = make_user(self.session, self.crypto, "bia@example.com")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_send_verification_builds_link_and_escapes_name(self) -> None:
        self.assertTrue(self.service.send_verification(self.user))
        message = self.sender.outbox[0]
        self.assertEqual(message["to"], "bia@example.com")
        self.assertIn("https://warden.example.com/verify-email?token=", message["text"])
        self.assertIn("Bia &lt;Lima&gt;", message["html"])
        self.assertEqual(len(self.sender.last_token()), 64)

    def test_verify_marks_user_and_consumes_token(self) -> None:
        self.service.send_verification(self.user)
        token = self.sender.last_token()
        self.assertEqual(self.service.verify(token), self.user.id)
        self.session.refresh(self.user)
        self.assertTrue(self.user.email_verified)
        self.assertIsNotNone(self.user.email_verified_at)
        record = self.session.query(EmailVerificationToken).filter_by(token=token).one()
        self.assertIsNotNone(record.used_at)
        self.assertEqual(self.session.query(SecurityLog).filter_by(event_type="email_verified").count(), 1)
        # a second click on the same link is harmless once the user is verified
        self.assertEqual(self.service.verify(token), self.user.id)

    def test_new_token_invalidates_older_ones(self) -> None:
        first = self.service.issue_token(self.user.id)
        second = self.service.issue_token(self.user.id)
        with self.assertRaises(AlreadyUsed):
            self.service.verify(first)
        self.assertEqual(self.service.verify(second), self.user.id)

    def test_expired_token(self) -> None:
        token = self.service.issue_token(self.user.id)
        self.clock.advance(hours=24, seconds=1)
        with self.assertRaises(ValidationError) as ctx:
            self.service.verify(token)
        self.assertEqual(ctx.exception.code, "token_expired")

    def test_malformed_and_unknown_tokens(self) -> None:
        for token in ("", "abc", "z" * 64, "a" * 64):
            with self.subTest(token=token):
                with self.assertRaises(ValidationError) as ctx:
                    self.service.verify(token)
                self.assertEqual(ctx.exception.code, "invalid_token")

    def test_resend(self) -> None:
        self.assertTrue(self.service.resend(email="BIA@example.com"))
        self.assertTrue(self.service.resend(user_id=self.user.id))
        self.assertEqual(len(self.sender.outbox), 2)
        with self.assertRaises(NotFound):
            self.service.resend(email="nobody@example.com")
        with self.assertRaises(ValidationError):
            self.service.resend(email="not-an-email")

    def test_resend_refuses_verified_users_and_reports_delivery(self) -> None:
        self.sender.delivered = False
        with self.assertRaises(EmailDeliveryError):
            self.service.resend(user_id=self.user.id)
        self.service.verify(self.sender.last_token())
        with self.assertRaises(ValidationError) as ctx:
            self.service.resend(user_id=self.user.id)
        self.assertEqual(ctx.exception.code, "already_verified")


class EmailVerificationRaceTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = create_engine(
            f"sqlite+pysqlite:///{self.path}",
            future=True,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(self.engine)
        self.crypto = CryptoEngine(MASTER_KEY, iterations=1000)
        self.first = Session(self.engine)
        self.second = Session(self.engine)

    def tearDown(self) -> None:
        self.first.close()
        self.second.close()
        self.engine.dispose()
        os.remove(self.path)

    def test_concurrent_clicks_both_succeed_once(self) -> None:
        sender = RecordingSender()
        service_a = EmailVerificationService(self.first, self.crypto, sender)
        service_b = EmailVerificationService(self.second, self.crypto, sender)
        user = make_user(self.first, self.crypto, "race@example.com")
        token = service_a.issue_token(user.id)

        record_seen_by_b = service_b.lookup(token)
        self.assertEqual(service_a.verify(token), user.id)
        self.assertTrue(service_b.claim(record_seen_by_b))

        used = self.first.query(EmailVerificationToken).filter(EmailVerificationToken.used_at.isnot(None)).count()
        self.assertEqual(used, 1)


class PasswordResetTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.crypto = CryptoEngine(MASTER_KEY, iterations=1000)
        self.clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        self.sender = RecordingSender()
        self.service = PasswordResetService(
            self.session,
            self.crypto,
            self.sender,
            app_url="https://warden.example.com",
            security_logger=SecurityLogger(self.session),
            clock=self.clock,
        )
        self.user = make_user(self.session, self.crypto, "caio@example.com")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_reset_flow(self) -> None:
        self.service.request_reset("caio@example.com")
        self.assertIn("https://warden.example.com/reset-password?token=", self.sender.outbox[0]["text"])
        token = self.sender.last_token()
        self.assertTrue(self.service.validate(token))
        self.assertEqual(self.service.reset_password(token, "new-password"), self.user.id)
        self.session.refresh(self.user)
        self.assertTrue(verify_password("new-password", self.user.password_hash))
        self.assertFalse(verify_password("old-password", self.user.password_hash))
        self.assertFalse(self.service.validate(token))
        with self.assertRaises(ValidationError):
            self.service.reset_password(token, "another-password")
        change = self.session.query(AuditLog).filter_by(action="UPDATE").one()
        self.assertEqual(change.new_values, {"password_changed": True})
        self.assertEqual(self.session.query(SecurityLog).filter_by(event_type="password_reset").count(), 1)

    def test_unknown_account_is_silent(self) -> None:
        self.service.request_reset("nobody@example.com")
        self.assertEqual(self.sender.outbox, [])

    def test_inactive_account_gets_no_token(self) -> None:
        self.user.is_active = False
        self.session.commit()
        self.service.request_reset("caio@example.com")
        self.assertEqual(self.sender.outbox, [])

    def test_invalid_email_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.request_reset("caio")

    def test_token_expires_after_an_hour(self) -> None:
        self.service.request_reset("caio@example.com")
        token = self.sender.last_token()
        self.clock.advance(hours=1, seconds=1)
        self.assertFalse(self.service.validate(token))
        with self.assertRaises(ValidationError):
            self.service.reset_password(token, "new-password")

    def test_weak_password_is_rejected_before_the_token_is_used(self) -> None:
        self.service.request_reset("caio@example.com")
        token = self.sender.last_token()
        with self.assertRaises(ValidationError) as ctx:
            self.service.reset_password(token, "123")
        self.assertEqual(ctx.exception.code, "weak_password")
        self.assertTrue(self.service.validate(token))


if __name__ == "__main__":
    unittest.main()
