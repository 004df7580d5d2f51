from __future__ import annotations

import base64
import binascii
import secrets
from functools import wraps

import pyotp
from flask import Flask, Response, jsonify, redirect, render_template, request, session, url_for
from flask_wtf.csrf import CSRFProtect, generate_csrf
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from warden.auth import RateLimiterRegistry, resolve_client_identifier
from warden.config import Settings, load_settings
from warden.logging import SecurityLogger
from warden.models import OperatorSecret
from warden.services import LogReportService, parse_filters


def create_dashboard_app(
    settings: Settings | None = None,
    engine=None,
    rate_limits: RateLimiterRegistry | None = None,
) -> Flask:
    settings = settings or load_settings()
    app = Flask(__name__, template_folder="templates")
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SECURE"] = settings.app_env not in ("test", "development")
    app.config["SESSION_COOKIE_SAMESITE"] = "Strict"
    app.config["PERMANENT_SESSION_LIFETIME"] = 900
    app.config["WTF_CSRF_ENABLED"] = settings.app_env != "test"

    engine = engine or create_engine(settings.database_url, future=True, pool_pre_ping=True)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    CSRFProtect(app)
    limits = rate_limits or RateLimiterRegistry.from_settings(settings)

    def get_session() -> Session:
        return SessionLocal()

    def normalize_otp_secret(raw_secret: str | None) -> str:
        if not raw_secret:
            return pyotp.random_base32()
        try:
            base64.b32decode(raw_secret, casefold=True)
            return raw_secret
        except (binascii.Error, ValueError):
            return pyotp.random_base32()

    def get_or_create_secrets() -> tuple[OperatorSecret, bool]:
        db = get_session()
        env_otp_secret = None
        if settings.dashboard_otp_secret:
            env_otp_secret = normalize_otp_secret(settings.dashboard_otp_secret)
        try:
            record = db.query(OperatorSecret).order_by(OperatorSecret.id.asc()).first()
            if record:
                target_secret = env_otp_secret or normalize_otp_secret(record.otp_secret)
                if target_secret != record.otp_secret:
                    record.otp_secret = target_secret
                    db.commit()
                    db.refresh(record)
                return record, False
            record = OperatorSecret(
                session_secret=settings.dashboard_session_secret or secrets.token_urlsafe(32),
                otp_secret=env_otp_secret or normalize_otp_secret(None),
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            return record, True
        finally:
            db.close()

    secrets_record, created_secret = get_or_create_secrets()
    app.secret_key = secrets_record.session_secret
    otp_secret = secrets_record.otp_secret
    app.config["OTP_SECRET"] = otp_secret
    app.config["OTP_PROVISIONING_URI"] = pyotp.TOTP(otp_secret).provisioning_uri(
        name="operator", issuer_name=settings.otp_issuer_name
    )
    app.config["SHOW_OTP_SECRET"] = created_secret

    def client_ip() -> str:
        return resolve_client_identifier(dict(request.headers), request.remote_addr)

    def record_event(event_type: str, details: str) -> None:
        db = get_session()
        try:
            SecurityLogger(db).record_security_event(
                event_type,
                ip_address=client_ip(),
                user_agent=request.headers.get("User-Agent"),
                endpoint=request.path,
                details=details,
            )
        finally:
            db.close()

    def require_operator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not session.get("operator_auth"):
                if request.path.startswith("/api/"):
                    return jsonify({"error": "unauthorized"}), 401
                return redirect(url_for("login"))
            return fn(*args, **kwargs)

        return wrapper

    @app.route("/")
    @require_operator
    def index():
        return render_template("dashboard.html")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            result = limits.check("strict", client_ip(), endpoint=request.path)
            if not result.allowed:
                return render_template("login.html", error="rate_limited", show_secret=False), 429, {
                    "Retry-After": str(result.retry_after)
                }
            code = request.form.get("code", "")
            totp = pyotp.TOTP(app.config["OTP_SECRET"])
            if not totp.verify(code, valid_window=1):
                record_event("operator_login_failed", "Invalid operator code")
                return render_template("login.html", error="invalid_code", show_secret=False), 401
            session.clear()
            session["operator_auth"] = True
            session.permanent = True
            record_event("operator_login", "Operator console login")
            return redirect(url_for("index"))
        db = get_session()
        try:
            record = db.query(OperatorSecret).order_by(OperatorSecret.id.asc()).first()
            show_link = False
            if record and not record.provisioning_link_shown:
                show_link = True
                record.provisioning_link_shown = True
                db.commit()
        finally:
            db.close()
        return render_template(
            "login.html",
            error=None,
            show_secret=show_link,
            otp_secret=app.config["OTP_SECRET"] if show_link else None,
            provisioning_uri=app.config["OTP_PROVISIONING_URI"] if show_link else None,
        )

    @app.route("/logout", methods=["POST"])
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.after_request
    def after_request(response):
        if app.config["WTF_CSRF_ENABLED"]:
            response.set_cookie(
                "XSRF-TOKEN",
                generate_csrf(),
                secure=settings.app_env != "development",
                httponly=False,
                samesite="Strict",
            )
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    def read_query():
        args = request.args.to_dict()
        filters = parse_filters(args)
        page = int(args.get("page") or 1)
        size = int(args.get("limit") or 50)
        return filters, page, size

    @app.route("/api/logs/security")
    @require_operator
    def security_logs():
        try:
            filters, page, size = read_query()
        except ValueError:
            return jsonify({"error": "invalid_filter"}), 400
        db = get_session()
        try:
            payload = LogReportService(db).security_logs(filters, page, size).to_dict()
        finally:
            db.close()
        return jsonify(payload)

    @app.route("/api/logs/audit")
    @require_operator
    def audit_logs():
        try:
            filters, page, size = read_query()
        except ValueError:
            return jsonify({"error": "invalid_filter"}), 400
        db = get_session()
        try:
            payload = LogReportService(db).audit_logs(filters, page, size).to_dict()
        finally:
            db.close()
        return jsonify(payload)

    @app.route("/api/stats")
    @require_operator
    def stats():
        try:
            filters, _, _ = read_query()
        except ValueError:
            return jsonify({"error": "invalid_filter"}), 400
        db = get_session()
        try:
            reports = LogReportService(db)
            payload = {
                "security": reports.security_stats(filters.start_date, filters.end_date),
                "audit": reports.audit_stats(filters.start_date, filters.end_date),
            }
        finally:
            db.close()
        return jsonify(payload)

    @app.route("/api/logs/security.csv")
    @require_operator
    def export_security_logs():
        try:
            filters, _, _ = read_query()
        except ValueError:
            return jsonify({"error": "invalid_filter"}), 400
        db = get_session()
        try:
            body = LogReportService(db).export_security_csv(filters)
        finally:
            db.close()
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=security-logs.csv"},
        )

    @app.route("/api/rate-limits")
    @require_operator
    def rate_limit_status():
        return jsonify(limits.status())

    @app.route("/api/rate-limits/reset", methods=["POST"])
    @require_operator
    def reset_rate_limits():
        data = request.get_json(silent=True) or {}
        identifier = data.get("identifier") if isinstance(data, dict) else None
        limits.reset(identifier or None)
        record_event("rate_limit_reset", f"Rate limits reset ({'one client' if identifier else 'all clients'})")
        return jsonify({"reset": identifier or "all"})

    return app
