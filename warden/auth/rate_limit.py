from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping

from warden.config.settings import DEFAULT_RATE_LIMITS, RateLimitSettings
from warden.logging.logger import log_security_event
from warden.utils.timeutils import normalize_time, utcnow

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: float
    limiter: str

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_seconds))


class RateLimiter:
    """Sliding-window counter per key; a key over the limit is blocked for ``block_seconds``."""

    def __init__(
        self,
        points: int,
        window_seconds: int,
        block_seconds: int = 0,
        name: str = "default",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if points < 1 or window_seconds < 1 or block_seconds < 0:
            raise ValueError("Rate limiter bounds must be positive")
        self.name = name
        self.points = points
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.clock = clock or utcnow
        self._attempts: dict[str, list[datetime]] = {}
        self._blocked_until: dict[str, datetime] = {}
        self._next_sweep: datetime | None = None
        self._lock = threading.Lock()

    def consume(self, key: str, now: datetime | None = None) -> RateLimitResult:
        moment = normalize_time(now) or self.clock()
        with self._lock:
            if self._next_sweep is None or moment >= self._next_sweep:
                self._sweep(moment)
            blocked_until = self._blocked_until.get(key)
            if blocked_until is not None:
                if blocked_until > moment:
                    return self._result(False, 0, blocked_until - moment)
                del self._blocked_until[key]
            cutoff = moment - timedelta(seconds=self.window_seconds)
            filtered = [ts for ts in self._attempts.get(key, []) if ts > cutoff]
            if len(filtered) >= self.points:
                self._attempts[key] = filtered
                if self.block_seconds:
                    until = moment + timedelta(seconds=self.block_seconds)
                    self._blocked_until[key] = until
                    return self._result(False, 0, until - moment)
                return self._result(False, 0, filtered[0] + timedelta(seconds=self.window_seconds) - moment)
            filtered.append(moment)
            self._attempts[key] = filtered
            reset = filtered[0] + timedelta(seconds=self.window_seconds) - moment
            return self._result(True, self.points - len(filtered), reset)

    def allow(self, key: str, now: datetime | None = None) -> bool:
        return self.consume(key, now).allowed

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._attempts.clear()
                self._blocked_until.clear()
                return
            self._attempts.pop(key, None)
            self._blocked_until.pop(key, None)

    def status(self, now: datetime | None = None) -> dict:
        moment = normalize_time(now) or self.clock()
        with self._lock:
            self._sweep(moment)
            blocked = len(self._blocked_until)
            return {
                "points": self.points,
                "window_seconds": self.window_seconds,
                "block_seconds": self.block_seconds,
                "tracked_keys": len(self._attempts),
                "blocked_keys": blocked,
            }

    def _sweep(self, moment: datetime) -> None:
        """Forget keys idle for a whole window and lapsed blocks. Caller holds the lock."""
        cutoff = moment - timedelta(seconds=self.window_seconds)
        for key in [key for key, stamps in self._attempts.items() if not stamps or stamps[-1] <= cutoff]:
            del self._attempts[key]
        for key in [key for key, until in self._blocked_until.items() if until <= moment]:
            del self._blocked_until[key]
        self._next_sweep = moment + timedelta(seconds=self.window_seconds)

    def _result(self, allowed: bool, remaining: int, reset: timedelta) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_seconds=max(reset.total_seconds(), 0.0),
            limiter=self.name,
        )


class RateLimiterRegistry:
    def __init__(
        self,
        limits: Mapping[str, RateLimitSettings] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        merged = {name: RateLimitSettings(*values) for name, values in DEFAULT_RATE_LIMITS.items()}
        merged.update(limits or {})
        self.limiters = {
            name: RateLimiter(cfg.points, cfg.window_seconds, cfg.block_seconds, name=name, clock=clock)
            for name, cfg in merged.items()
        }

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] | None = None) -> "RateLimiterRegistry":
        return cls(settings.rate_limits, clock=clock)

    def get(self, name: str) -> RateLimiter:
        try:
            return self.limiters[name]
        except KeyError as exc:
            raise KeyError(f"Unknown rate limiter: {name}") from exc

    def check(
        self,
        name: str,
        identifier: str,
        endpoint: str | None = None,
        security_logger=None,
        now: datetime | None = None,
    ) -> RateLimitResult:
        result = self.get(name).consume(identifier, now)
        if not result.allowed:
            self._report(result, identifier, endpoint, security_logger)
        return result

    def check_multiple(
        self,
        names: Iterable[str],
        identifier: str,
        endpoint: str | None = None,
        security_logger=None,
        now: datetime | None = None,
    ) -> RateLimitResult:
        results = []
        for name in names:
            result = self.check(name, identifier, endpoint, security_logger, now)
            if not result.allowed:
                return result
            results.append(result)
        if not results:
            raise ValueError("At least one limiter name is required")
        return RateLimitResult(
            allowed=True,
            remaining=min(item.remaining for item in results),
            reset_seconds=max(item.reset_seconds for item in results),
            limiter=",".join(item.limiter for item in results),
        )

    def status(self) -> dict[str, dict]:
        return {name: limiter.status() for name, limiter in self.limiters.items()}

    def reset(self, identifier: str | None = None) -> None:
        for limiter in self.limiters.values():
            limiter.reset(identifier)

    def close(self) -> None:
        self.reset()

    def _report(self, result: RateLimitResult, identifier: str, endpoint: str | None, security_logger) -> None:
        details = f"Rate limit exceeded: {result.limiter}"
        metadata = {"limiter": result.limiter, "identifier": identifier, "retry_after": result.retry_after}
        if security_logger is not None:
            security_logger.record_security_event(
                "rate_limit",
                ip_address=identifier,
                endpoint=endpoint,
                details=details,
                metadata=metadata,
            )
        else:
            log_security_event("rate_limit", ip_address=identifier, endpoint=endpoint, details=details, metadata=metadata)


def resolve_client_identifier(
    headers: Mapping[str, str] | None,
    peer: str | None = None,
    user_id: str | None = None,
) -> str:
    lowered = {str(key).lower(): value for key, value in (headers or {}).items()}
    cf_ip = (lowered.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (lowered.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if peer:
        return peer
    if user_id:
        return f"user:{user_id}"
    return UNKNOWN_CLIENT
