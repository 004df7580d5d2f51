from __future__ import annotations

import os
import re
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session

from warden.auth import totp
from warden.auth.authorization import ACCESS_COOKIE, REFRESH_COOKIE
from warden.config import load_settings
from warden.main import CHALLENGE_COOKIE, create_app
from warden.models import Base, SecurityLog, User

TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")

BASE_ENV = {
    "DATABASE_URL": "sqlite://",
    "OTP_ISSUER_NAME": "Warden",
    "APP_ENV": "test",
    "APP_URL": "https://warden.example.com",
    "JWT_SECRET": "api-test-signing-secret-0123456789",
    "ENCRYPTION_KEY": "0f" * 32,
}


class FakeClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


class RecordingSender:
    def __init__(self) -> None:
        self.outbox: list[dict] = []

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        self.outbox.append({"to": to, "subject": subject, "html": html, "text": text})
        return True

    def last_token(self) -> str:
        return TOKEN_IN_LINK.search(self.outbox[-1]["text"]).group(1)


class ApiTestCase(unittest.TestCase):
    env_overrides: dict = {"RATE_LIMIT_STRICT_POINTS": "100", "RATE_LIMIT_API_POINTS": "100"}

    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = create_engine(
            f"sqlite+pysqlite:///{self.path}",
            future=True,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(self.engine)
        self.clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        self.sender = RecordingSender()
        settings = load_settings(dict(BASE_ENV, **self.env_overrides))
        self.app = create_app(settings, engine=self.engine, email_sender=self.sender, clock=self.clock)
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.engine.dispose()
        os.remove(self.path)

    def register(self, email: str = "ana@example.com", password: str = "s3cret-pass"):
        return self.client.post(
            "/api/auth/register",
            json={"name": "Ana Souza", "email": email, "password": password},
        )

    def login(self, email: str = "ana@example.com", password: str = "s3cret-pass", remember: bool = False):
        return self.client.post("/api/auth/login", json={"email": email, "password": password, "remember": remember})

    def make_admin(self, user_id: str) -> None:
        with Session(self.engine) as session:
            session.execute(update(User).where(User.id == user_id).values(is_admin=True))
            session.commit()


class HealthAndRegistrationTests(ApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_register(self) -> None:
        response = self.register()
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertTrue(body["verification_email_sent"])
        self.assertEqual(self.sender.outbox[0]["to"], "ana@example.com")

    def test_register_duplicate_and_invalid(self) -> None:
        self.register()
        duplicate = self.register("ANA@example.com")
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"], "email_in_use")
        weak = self.register("bia@example.com", "123")
        self.assertEqual(weak.status_code, 400)
        self.assertEqual(weak.json()["error"], "weak_password")
        missing = self.client.post("/api/auth/register", json={"email": "caio@example.com"})
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json()["error"], "invalid_input")

    def test_verify_email_link(self) -> None:
        self.register()
        token = self.sender.last_token()
        self.assertEqual(self.client.get("/api/auth/verify-email", params={"token": token}).status_code, 200)
        self.assertEqual(self.client.get("/api/auth/verify-email", params={"token": "a" * 64}).status_code, 400)
        self.assertEqual(self.client.get("/api/auth/verify-email").status_code, 400)

    def test_resend_verification_by_email(self) -> None:
        self.register()
        response = self.client.post("/api/auth/verify-email", json={"email": "ana@example.com"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.sender.outbox), 2)
        unknown = self.client.post("/api/auth/verify-email", json={"email": "nobody@example.com"})
        self.assertEqual(unknown.status_code, 404)


class SessionTests(ApiTestCase):
    def test_login_sets_http_only_cookies(self) -> None:
        self.register()
        response = self.login(remember=True)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["requires_two_factor"])
        set_cookie = response.headers.get_list("set-cookie")
        access = next(value for value in set_cookie if value.startswith(f"{ACCESS_COOKIE}="))
        refresh = next(value for value in set_cookie if value.startswith(f"{REFRESH_COOKIE}="))
        self.assertIn("HttpOnly", access)
        self.assertIn("samesite=strict", access.lower())
        self.assertIn("Max-Age=900", access)
        self.assertIn(f"Max-Age={30 * 24 * 3600}", refresh)

    def test_bad_credentials(self) -> None:
        self.register()
        response = self.login(password="wrong-pass")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "invalid_credentials")

    def test_refresh_and_logout(self) -> None:
        self.register()
        self.login()
        self.clock.advance(minutes=20)
        self.assertEqual(self.client.get("/api/auth/2fa/backup-codes").status_code, 401)
        self.assertEqual(self.client.post("/api/auth/refresh").status_code, 200)
        self.assertEqual(self.client.get("/api/auth/2fa/backup-codes").status_code, 200)
        self.assertEqual(self.client.post("/api/auth/logout").status_code, 200)
        self.assertEqual(self.client.get("/api/auth/2fa/backup-codes").status_code, 401)
        self.assertEqual(self.client.post("/api/auth/refresh").status_code, 401)

    def test_bearer_header_is_accepted(self) -> None:
        self.register()
        token = self.login().cookies.get(ACCESS_COOKIE)
        self.client.cookies.clear()
        response = self.client.get("/api/auth/2fa/backup-codes", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"enabled": False, "remaining": 0})


class TwoFactorApiTests(ApiTestCase):
    def enable_two_factor(self) -> tuple[str, list[str]]:
        self.register()
        self.login()
        setup = self.client.post("/api/auth/2fa/setup")
        self.assertEqual(setup.status_code, 200)
        secret = setup.json()["secret"]
        self.assertTrue(setup.json()["qr_code"].startswith("data:image/png;base64,"))
        confirm = self.client.post(
            "/api/auth/2fa/verify-setup", json={"code": totp.current_code(secret, self.clock())}
        )
        self.assertEqual(confirm.status_code, 200)
        self.client.post("/api/auth/logout")
        return secret, confirm.json()["backup_codes"]

    def test_setup_requires_authentication(self) -> None:
        response = self.client.post("/api/auth/2fa/setup")
        self.assertEqual(response.status_code, 401)

    def test_login_with_totp(self) -> None:
        secret, _ = self.enable_two_factor()
        response = self.login()
        body = response.json()
        self.assertTrue(body["requires_two_factor"])
        self.assertIsNone(response.cookies.get(ACCESS_COOKIE))
        self.assertIsNotNone(self.client.cookies.get(CHALLENGE_COOKIE))

        verified = self.client.post(
            "/api/auth/2fa/verify-login", json={"code": totp.current_code(secret, self.clock())}
        )
        self.assertEqual(verified.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/2fa/backup-codes").json(), {"enabled": True, "remaining": 10})

    def test_backup_code_reuse_is_rejected(self) -> None:
        _, codes = self.enable_two_factor()
        challenge = self.login().json()["challenge_token"]
        first = self.client.post(
            "/api/auth/2fa/verify-login",
            json={"code": codes[0], "use_backup_code": True, "challenge_token": challenge},
        )
        self.assertEqual(first.status_code, 200)
        second = self.client.post(
            "/api/auth/2fa/verify-login",
            json={"code": codes[0], "use_backup_code": True, "challenge_token": challenge},
        )
        self.assertEqual(second.status_code, 401)
        self.assertEqual(second.json()["error"], "invalid_code")

    def test_lockout_returns_429(self) -> None:
        secret, _ = self.enable_two_factor()
        challenge = self.login().json()["challenge_token"]
        valid = {totp.current_code(secret, self.clock() + timedelta(seconds=30 * step)) for step in (-1, 0, 1)}
        bad = next(digit * 6 for digit in "0123456789" if digit * 6 not in valid)
        for _ in range(5):
            response = self.client.post("/api/auth/2fa/verify-login", json={"code": bad, "challenge_token": challenge})
            self.assertEqual(response.status_code, 401)
        locked = self.client.post(
            "/api/auth/2fa/verify-login",
            json={"code": totp.current_code(secret, self.clock()), "challenge_token": challenge},
        )
        self.assertEqual(locked.status_code, 429)
        self.assertEqual(locked.headers["retry-after"], str(15 * 60))

    def test_malformed_code(self) -> None:
        self.enable_two_factor()
        challenge = self.login().json()["challenge_token"]
        response = self.client.post("/api/auth/2fa/verify-login", json={"code": "12", "challenge_token": challenge})
        self.assertEqual(response.status_code, 400)

    def test_regenerate_and_disable(self) -> None:
        secret, _ = self.enable_two_factor()
        self.login()
        self.client.post("/api/auth/2fa/verify-login", json={"code": totp.current_code(secret, self.clock())})
        regenerated = self.client.post(
            "/api/auth/2fa/backup-codes", json={"code": totp.current_code(secret, self.clock())}
        )
        self.assertEqual(regenerated.status_code, 200)
        self.assertEqual(len(regenerated.json()["backup_codes"]), 10)
        disabled = self.client.post("/api/auth/2fa/disable", json={"code": totp.current_code(secret, self.clock())})
        self.assertEqual(disabled.status_code, 200)
        self.client.post("/api/auth/logout")
        self.assertFalse(self.login().json()["requires_two_factor"])


class PasswordResetApiTests(ApiTestCase):
    def test_reset_flow(self) -> None:
        self.register()
        unknown = self.client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        known = self.client.post("/api/auth/forgot-password", json={"email": "ana@example.com"})
        self.assertEqual(unknown.json(), known.json())
        token = self.sender.last_token()
        self.assertEqual(self.client.get("/api/auth/reset-password", params={"token": token}).json(), {"valid": True})
        reset = self.client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new-pass"})
        self.assertEqual(reset.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/reset-password", params={"token": token}).json(), {"valid": False})
        self.assertEqual(self.login(password="s3cret-pass").status_code, 401)
        self.assertEqual(self.login(password="brand-new-pass").status_code, 200)


class RateLimitApiTests(ApiTestCase):
    env_overrides: dict = {}

    def test_strict_limit_blocks_registration(self) -> None:
        statuses = [self.register(f"user{index}@example.com").status_code for index in range(6)]
        self.assertEqual(statuses, [201, 201, 201, 201, 201, 429])
        blocked = self.register("late@example.com")
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(blocked.headers["retry-after"], "600")
        self.assertEqual(blocked.headers["x-ratelimit-remaining"], "0")
        self.assertEqual(blocked.headers["x-ratelimit-reset"], "600")
        self.assertEqual(blocked.json()["error"], "rate_limited")
        with Session(self.engine) as session:
            self.assertGreaterEqual(session.query(SecurityLog).filter_by(event_type="rate_limit").count(), 1)

    def test_allowed_responses_report_quota(self) -> None:
        first = self.client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.headers["x-ratelimit-remaining"], "4")
        self.assertEqual(first.headers["x-ratelimit-reset"], "60")
        self.clock.advance(seconds=20)
        second = self.client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        self.assertEqual(second.headers["x-ratelimit-remaining"], "3")
        self.assertEqual(second.headers["x-ratelimit-reset"], "40")
        self.assertNotIn("x-ratelimit-remaining", self.client.get("/health").headers)

    def test_forwarded_clients_are_counted_separately(self) -> None:
        for index in range(5):
            self.register(f"user{index}@example.com")
        other = self.client.post(
            "/api/auth/register",
            json={"name": "Other", "email": "other@example.com", "password": "s3cret-pass"},
            headers={"X-Forwarded-For": "198.51.100.9"},
        )
        self.assertEqual(other.status_code, 201)


class AdminApiTests(ApiTestCase):
    def test_logs_require_admin(self) -> None:
        self.assertEqual(self.client.get("/api/admin/logs/security").status_code, 401)
        user_id = self.register().json()["user_id"]
        self.login()
        self.assertEqual(self.client.get("/api/admin/logs/security").status_code, 403)
        self.make_admin(user_id)
        self.assertEqual(self.client.get("/api/admin/logs/security").status_code, 200)

    def test_security_logs_pagination_stats_and_csv(self) -> None:
        user_id = self.register().json()["user_id"]
        self.make_admin(user_id)
        self.login(password="wrong-pass")
        self.login()
        response = self.client.get("/api/admin/logs/security", params={"limit": 1, "stats": "1"})
        body = response.json()
        self.assertEqual(body["pagination"]["limit"], 1)
        self.assertEqual(len(body["data"]), 1)
        self.assertGreaterEqual(body["pagination"]["total"], 2)
        self.assertIn("login_failed", body["stats"]["by_event_type"])

        filtered = self.client.get("/api/admin/logs/security", params={"event_type": "login_failed"}).json()
        self.assertEqual(filtered["pagination"]["total"], 1)

        export = self.client.get("/api/admin/logs/security", params={"format": "csv"})
        self.assertEqual(export.headers["content-type"].split(";")[0], "text/csv")
        self.assertTrue(export.text.startswith("id,created_at,event_type"))

        invalid = self.client.get("/api/admin/logs/security", params={"start_date": "yesterday"})
        self.assertEqual(invalid.status_code, 400)

    def test_audit_logs_and_rate_limit_status(self) -> None:
        user_id = self.register().json()["user_id"]
        self.make_admin(user_id)
        self.login()
        audit = self.client.get("/api/admin/logs/audit", params={"stats": "true"}).json()
        self.assertEqual(audit["stats"]["by_action"].get("INSERT"), 1)
        status = self.client.get("/api/admin/rate-limit-status").json()
        self.assertEqual(set(status["limiters"]), {"general", "api", "strict", "auth"})


if __name__ == "__main__":
    unittest.main()
