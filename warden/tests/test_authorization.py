from __future__ import annotations

import unittest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from warden.auth import Authorizer, RequestContext, TokenService
from warden.logging import SecurityLogger
from warden.models import Base, SecurityLog, Subscription, User

SECRET = "authorization-test-secret-0123456789"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class AuthorizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.tokens = TokenService(SECRET, clock=lambda: NOW)
        self.authorizer = Authorizer(self.session, self.tokens, SecurityLogger(self.session), clock=lambda: NOW)
        self.user = User(email="enc", email_hash="a" * 64, name="enc", password_hash="x")
        self.session.add(self.user)
        self.session.commit()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def context(self, token: str | None = None, bearer: bool = False, path: str = "/api/profile") -> RequestContext:
        headers = {"X-Forwarded-For": "203.0.113.10", "User-Agent": "tests"}
        cookies = {}
        if token and bearer:
            headers["Authorization"] = f"Bearer {token}"
        elif token:
            cookies["access-token"] = token
        return RequestContext(headers=headers, cookies=cookies, client_host="127.0.0.1", path=path)

    def test_cookie_token_is_accepted(self) -> None:
        token = self.tokens.issue_access_token(self.user.id, "ana@example.com", remember=True)
        result = self.authorizer.require_auth(self.context(token))
        self.assertTrue(result.authorized)
        self.assertEqual(result.user.id, self.user.id)
        self.assertEqual(result.user.email, "ana@example.com")
        self.assertTrue(result.user.remember)

    def test_bearer_token_is_accepted(self) -> None:
        token = self.tokens.issue_access_token(self.user.id)
        self.assertTrue(self.authorizer.require_auth(self.context(token, bearer=True)).authorized)

    def test_cookie_wins_over_header(self) -> None:
        good = self.tokens.issue_access_token(self.user.id)
        ctx = RequestContext(headers={"authorization": "Bearer garbage"}, cookies={"access-token": good})
        self.assertTrue(self.authorizer.require_auth(ctx).authorized)

    def test_missing_or_wrong_tokens_are_denied_and_logged(self) -> None:
        refresh = self.tokens.issue_refresh_token(self.user.id)
        for token in (None, "garbage", refresh):
            with self.subTest(token=token):
                result = self.authorizer.require_auth(self.context(token))
                self.assertFalse(result.authorized)
                self.assertEqual(result.error, "Unauthorized")
        events = self.session.query(SecurityLog).filter_by(event_type="unauthorized").all()
        self.assertEqual(len(events), 3)
        self.assertEqual(events[0].severity, "error")
        self.assertEqual(events[0].ip_address, "203.0.113.10")
        self.assertEqual(events[0].endpoint, "/api/profile")

    def test_non_uuid_subject_is_denied(self) -> None:
        token = self.tokens.issue_access_token("12345")
        self.assertFalse(self.authorizer.require_auth(self.context(token)).authorized)

    def test_expired_token_is_denied(self) -> None:
        token = TokenService(SECRET, clock=lambda: NOW - timedelta(minutes=16)).issue_access_token(self.user.id)
        self.assertFalse(self.authorizer.require_auth(self.context(token)).authorized)

    def test_ownership(self) -> None:
        token = self.tokens.issue_access_token(self.user.id)
        ctx = self.context(token)
        self.assertTrue(self.authorizer.require_ownership(ctx, self.user.id).authorized)
        self.assertTrue(self.authorizer.require_ownership(ctx, None).authorized)
        other = self.authorizer.require_ownership(ctx, str(uuid.uuid4()))
        self.assertFalse(other.authorized)
        self.assertEqual(other.error, "Access denied")
        self.assertFalse(self.authorizer.require_ownership(ctx, "not-a-uuid").authorized)
        denied = self.session.query(SecurityLog).filter_by(event_type="unauthorized").all()
        self.assertEqual([entry.user_id for entry in denied], [self.user.id, self.user.id])

    def test_subscription(self) -> None:
        self.assertFalse(self.authorizer.require_subscription(self.user.id))
        self.session.add(Subscription(user_id=self.user.id, status="active", expires_at=NOW + timedelta(days=3)))
        self.session.commit()
        self.assertTrue(self.authorizer.require_subscription(self.user.id))
        self.assertFalse(self.authorizer.require_subscription("bad-id"))

    def test_expired_or_cancelled_subscription(self) -> None:
        self.session.add(Subscription(user_id=self.user.id, status="active", expires_at=NOW - timedelta(days=1)))
        self.session.add(Subscription(user_id=self.user.id, status="cancelled"))
        self.session.commit()
        self.assertFalse(self.authorizer.require_subscription(self.user.id))

    def test_subscription_lookup_failure_denies(self) -> None:
        broken = MagicMock()
        broken.execute.side_effect = OperationalError("SELECT", {}, Exception("database is gone"))
        authorizer = Authorizer(broken, self.tokens, clock=lambda: NOW)
        with self.assertLogs("warden.authorization", level="ERROR"):
            self.assertFalse(authorizer.require_subscription(self.user.id))

    def test_admin(self) -> None:
        token = self.tokens.issue_access_token(self.user.id)
        self.assertFalse(self.authorizer.require_admin(self.context(token)).authorized)
        self.user.is_admin = True
        self.session.commit()
        self.assertTrue(self.authorizer.require_admin(self.context(token)).authorized)
        self.user.is_active = False
        self.session.commit()
        self.assertFalse(self.authorizer.require_admin(self.context(token)).authorized)

    def test_without_security_logger_denials_go_to_log(self) -> None:
        authorizer = Authorizer(self.session, self.tokens)
        with self.assertLogs("warden.security", level="ERROR"):
            self.assertFalse(authorizer.require_auth(self.context()).authorized)


class RequestContextTests(unittest.TestCase):
    def test_ip_and_agent(self) -> None:
        ctx = RequestContext(headers={"X-Real-IP": "192.0.2.1", "User-Agent": "curl"}, client_host="10.0.0.2")
        self.assertEqual(ctx.ip_address, "192.0.2.1")
        self.assertEqual(ctx.agent, "curl")
        self.assertEqual(RequestContext(client_host="10.0.0.2").ip_address, "10.0.0.2")

    def test_non_bearer_header_is_ignored(self) -> None:
        ctx = RequestContext(headers={"Authorization": "Basic dXNlcjpwYXNz"})
        self.assertIsNone(ctx.access_token())


if __name__ == "__main__":
    unittest.main()
