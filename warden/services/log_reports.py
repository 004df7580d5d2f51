from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence

import pandas as pd
from sqlalchemy import func, inspect, or_, select
from sqlalchemy.orm import Session

from warden.models import AuditLog, SecurityLog
from warden.utils.timeutils import normalize_time, utcnow

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_EXPORT_ROWS = 10_000
TOP_EVENT_TYPES = 20
TOP_CLIENTS = 10
DAILY_WINDOW_DAYS = 30
LIKE_ESCAPE = "\\"

SECURITY_COLUMNS = [
    "id",
    "created_at",
    "event_type",
    "severity",
    "user_id",
    "ip_address",
    "user_agent",
    "endpoint",
    "details",
]


@dataclass(frozen=True)
class LogFilters:
    event_type: str | None = None
    severity: str | None = None
    user_id: str | None = None
    ip_address: str | None = None
    table_name: str | None = None
    action: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]]
    total: int
    page: int
    limit: int
    filters: dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.items,
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "total_pages": self.total_pages,
            },
        }


def clamp_pagination(page: int | None, limit: int | None) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit or DEFAULT_PAGE_SIZE)))
    return page, limit


def serialize_entry(entry: Any) -> dict[str, Any]:
    row = {}
    for attr in inspect(entry).mapper.column_attrs:
        value = getattr(entry, attr.key)
        if isinstance(value, datetime):
            value = normalize_time(value).isoformat()
        row[attr.columns[0].name] = value
    return row


class LogReportService:
    """Read side of the security and audit logs for operators."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def security_logs(self, filters: LogFilters | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Page:
        filters = filters or LogFilters()
        page, limit = clamp_pagination(page, limit)
        conditions = self._security_conditions(filters)
        total = self.session.execute(select(func.count(SecurityLog.id)).where(*conditions)).scalar_one()
        rows = (
            self.session.execute(
                select(SecurityLog)
                .where(*conditions)
                .order_by(SecurityLog.created_at.desc(), SecurityLog.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            .scalars()
            .all()
        )
        return Page(items=[serialize_entry(row) for row in rows], total=int(total), page=page, limit=limit)

    def audit_logs(self, filters: LogFilters | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Page:
        filters = filters or LogFilters()
        page, limit = clamp_pagination(page, limit)
        conditions = self._audit_conditions(filters)
        total = self.session.execute(select(func.count(AuditLog.id)).where(*conditions)).scalar_one()
        rows = (
            self.session.execute(
                select(AuditLog)
                .where(*conditions)
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            .scalars()
            .all()
        )
        return Page(items=[serialize_entry(row) for row in rows], total=int(total), page=page, limit=limit)

    def security_stats(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        conditions = self._date_conditions(SecurityLog.created_at, start_date, end_date)
        rows = self.session.execute(
            select(
                SecurityLog.event_type,
                SecurityLog.severity,
                SecurityLog.ip_address,
                SecurityLog.user_id,
                SecurityLog.created_at,
            ).where(*conditions)
        ).all()
        frame = pd.DataFrame(rows, columns=["event_type", "severity", "ip_address", "user_id", "created_at"])
        if frame.empty:
            return {
                "total": 0,
                "by_severity": {},
                "by_event_type": {},
                "by_day": [],
                "top_ips": [],
                "top_users": [],
            }
        frame["created_at"] = pd.to_datetime(frame["created_at"], utc=True)
        moment = normalize_time(now) or utcnow()
        recent = frame[frame["created_at"] >= pd.Timestamp(moment - timedelta(days=DAILY_WINDOW_DAYS))]
        by_day = recent.groupby(recent["created_at"].dt.date).size().sort_index(ascending=False)
        return {
            "total": int(len(frame)),
            "by_severity": _counts(frame["severity"]),
            "by_event_type": _counts(frame["event_type"], TOP_EVENT_TYPES),
            "by_day": [{"date": day.isoformat(), "count": int(count)} for day, count in by_day.items()],
            "top_ips": [
                {"ip": ip, "count": count} for ip, count in _counts(frame["ip_address"], TOP_CLIENTS).items()
            ],
            "top_users": [
                {"user_id": user_id, "count": count}
                for user_id, count in _counts(frame["user_id"], TOP_CLIENTS).items()
            ],
        }

    def audit_stats(self, start_date: datetime | None = None, end_date: datetime | None = None) -> dict[str, Any]:
        conditions = self._date_conditions(AuditLog.created_at, start_date, end_date)
        rows = self.session.execute(select(AuditLog.table_name, AuditLog.action).where(*conditions)).all()
        frame = pd.DataFrame(rows, columns=["table_name", "action"])
        if frame.empty:
            return {"total": 0, "by_action": {}, "by_table": {}}
        return {
            "total": int(len(frame)),
            "by_action": _counts(frame["action"]),
            "by_table": _counts(frame["table_name"]),
        }

    def export_security_csv(self, filters: LogFilters | None = None, limit: int = MAX_EXPORT_ROWS) -> str:
        conditions = self._security_conditions(filters or LogFilters())
        rows = (
            self.session.execute(
                select(SecurityLog)
                .where(*conditions)
                .order_by(SecurityLog.created_at.desc(), SecurityLog.id.desc())
                .limit(min(limit, MAX_EXPORT_ROWS))
            )
            .scalars()
            .all()
        )
        frame = pd.DataFrame([serialize_entry(row) for row in rows], columns=SECURITY_COLUMNS)
        return frame.to_csv(index=False)

    def _security_conditions(self, filters: LogFilters) -> list:
        conditions = self._date_conditions(SecurityLog.created_at, filters.start_date, filters.end_date)
        if filters.event_type:
            conditions.append(SecurityLog.event_type == filters.event_type)
        if filters.severity:
            conditions.append(SecurityLog.severity == filters.severity)
        if filters.user_id:
            conditions.append(SecurityLog.user_id == filters.user_id)
        if filters.ip_address:
            conditions.append(SecurityLog.ip_address == filters.ip_address)
        if filters.search:
            pattern = _like_pattern(filters.search)
            conditions.append(
                or_(
                    SecurityLog.details.ilike(pattern, escape=LIKE_ESCAPE),
                    SecurityLog.endpoint.ilike(pattern, escape=LIKE_ESCAPE),
                    SecurityLog.event_type.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        return conditions

    def _audit_conditions(self, filters: LogFilters) -> list:
        conditions = self._date_conditions(AuditLog.created_at, filters.start_date, filters.end_date)
        if filters.table_name:
            conditions.append(AuditLog.table_name == filters.table_name)
        if filters.action:
            conditions.append(AuditLog.action == filters.action)
        if filters.user_id:
            conditions.append(AuditLog.user_id == filters.user_id)
        if filters.ip_address:
            conditions.append(AuditLog.ip_address == filters.ip_address)
        if filters.search:
            pattern = _like_pattern(filters.search)
            conditions.append(
                or_(
                    AuditLog.table_name.ilike(pattern, escape=LIKE_ESCAPE),
                    AuditLog.record_id.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        return conditions

    @staticmethod
    def _date_conditions(column, start_date: datetime | None, end_date: datetime | None) -> list:
        conditions = []
        if start_date is not None:
            conditions.append(column >= normalize_time(start_date))
        if end_date is not None:
            conditions.append(column <= normalize_time(end_date))
        return conditions


def _like_pattern(term: str) -> str:
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", LIKE_ESCAPE + "%").replace("_", LIKE_ESCAPE + "_")
    return f"%{escaped}%"


def _counts(series: pd.Series, top: int | None = None) -> dict[str, int]:
    counts = series.dropna().value_counts()
    if top is not None:
        counts = counts.head(top)
    return {str(key): int(value) for key, value in counts.items()}


def parse_filters(params: dict[str, Any], fields: Sequence[str] | None = None) -> LogFilters:
    """Build filters from query-string values; unknown or empty keys are ignored."""
    allowed = set(fields or LogFilters.__dataclass_fields__)
    values: dict[str, Any] = {}
    for key in allowed:
        raw = params.get(key)
        if raw is None or str(raw).strip() == "":
            continue
        if key in ("start_date", "end_date"):
            values[key] = normalize_time(datetime.fromisoformat(str(raw)))
        else:
            values[key] = str(raw).strip()
    return LogFilters(**values)
