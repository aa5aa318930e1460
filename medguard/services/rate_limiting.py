from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Callable

from medguard.core.config import get_settings
from medguard.services.scheduler import RecurringTask


logger = logging.getLogger(__name__)

PHI_ACCESS = "PHI_ACCESS"
AUTH = "AUTH"
DEVICE_TELEMETRY = "DEVICE_TELEMETRY"
API_GENERAL = "API_GENERAL"
AUDIT_QUERY = "AUDIT_QUERY"
ADMIN = "ADMIN"
INCIDENT_REPORT = "INCIDENT_REPORT"
BREACH_NOTIFICATION = "BREACH_NOTIFICATION"
IP_CEILING = "IP"


@dataclass(frozen=True)
class RateLimitProfile:
    # Fixed window; block_duration_ms keeps a key denied past the window reset.
    name: str
    window_ms: int
    max_requests: int
    block_duration_ms: int | None = None


PROFILES: dict[str, RateLimitProfile] = {
    PHI_ACCESS: RateLimitProfile(PHI_ACCESS, 60_000, 30, 300_000),
    AUTH: RateLimitProfile(AUTH, 60_000, 5, 900_000),
    DEVICE_TELEMETRY: RateLimitProfile(DEVICE_TELEMETRY, 60_000, 300),
    API_GENERAL: RateLimitProfile(API_GENERAL, 60_000, 100, 60_000),
    AUDIT_QUERY: RateLimitProfile(AUDIT_QUERY, 60_000, 20),
    ADMIN: RateLimitProfile(ADMIN, 60_000, 10, 60_000),
    INCIDENT_REPORT: RateLimitProfile(INCIDENT_REPORT, 60_000, 50),
    BREACH_NOTIFICATION: RateLimitProfile(BREACH_NOTIFICATION, 60_000, 200),
}


def ip_profile() -> RateLimitProfile:
    settings = get_settings()
    return RateLimitProfile(
        IP_CEILING,
        settings.rl_ip_window_ms,
        settings.rl_ip_max_requests,
        settings.rl_ip_block_ms or None,
    )


def resolve_profile(profile: RateLimitProfile | str) -> RateLimitProfile:
    if isinstance(profile, RateLimitProfile):
        return profile
    try:
        return PROFILES[profile]
    except KeyError as exc:
        raise ValueError(f"unknown rate limit profile: {profile}") from exc


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    blocked: bool = False

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000.0, tz=timezone.utc)

    def retry_after_ms(self, now_ms: int) -> int:
        return max(0, self.reset_at_ms - now_ms)


@dataclass
class _Entry:
    count: int
    window_start_ms: int
    blocked_until_ms: int | None = None


def build_key(ip: str | None, user_id: str | None, endpoint: str | None) -> str:
    # Anonymous callers share the per-IP bucket for the endpoint.
    return f"{ip or 'unknown'}:{user_id or 'anonymous'}:{endpoint or 'default'}"


class RateLimiter:
    """Fixed-window limiter held in process memory.

    The table is guarded by a lock so threadpool callers and the event loop can
    share one instance.
    """

    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        retention_ms: int | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._retention_ms = retention_ms if retention_ms is not None else get_settings().rl_retention_ms
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._sweep_task: RecurringTask | None = None

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    def check(self, key: str, profile: RateLimitProfile | str) -> RateLimitResult:
        resolved = resolve_profile(profile)
        now_ms = self._now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(count=0, window_start_ms=now_ms)
                self._entries[key] = entry

            if entry.blocked_until_ms is not None:
                if now_ms < entry.blocked_until_ms:
                    # Blocks outlive window resets until they expire.
                    return RateLimitResult(
                        allowed=False,
                        limit=resolved.max_requests,
                        remaining=0,
                        reset_at_ms=entry.blocked_until_ms,
                        blocked=True,
                    )
                entry.blocked_until_ms = None

            if now_ms - entry.window_start_ms > resolved.window_ms:
                entry.count = 0
                entry.window_start_ms = now_ms

            entry.count += 1
            reset_at_ms = entry.window_start_ms + resolved.window_ms
            if entry.count > resolved.max_requests:
                if resolved.block_duration_ms:
                    entry.blocked_until_ms = now_ms + resolved.block_duration_ms
                    logger.warning(
                        "rate_limit_blocked key=%s profile=%s block_ms=%s",
                        key,
                        resolved.name,
                        resolved.block_duration_ms,
                    )
                    return RateLimitResult(
                        allowed=False,
                        limit=resolved.max_requests,
                        remaining=0,
                        reset_at_ms=entry.blocked_until_ms,
                        blocked=True,
                    )
                return RateLimitResult(
                    allowed=False,
                    limit=resolved.max_requests,
                    remaining=0,
                    reset_at_ms=reset_at_ms,
                )
            return RateLimitResult(
                allowed=True,
                limit=resolved.max_requests,
                remaining=resolved.max_requests - entry.count,
                reset_at_ms=reset_at_ms,
            )

    def check_ip_limit(self, ip: str) -> RateLimitResult:
        return self.check(f"ip:{ip}", ip_profile())

    def is_blocked(self, key: str) -> bool:
        now_ms = self._now_ms()
        with self._lock:
            entry = self._entries.get(key)
            return bool(entry and entry.blocked_until_ms is not None and now_ms < entry.blocked_until_ms)

    def unblock(self, key: str) -> bool:
        # Clears both the block and the window count.
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.blocked_until_ms = None
            entry.count = 0
            entry.window_start_ms = self._now_ms()
        logger.info("rate_limit_unblocked key=%s", key)
        return True

    def get_status(self, key: str, profile: RateLimitProfile | str) -> RateLimitResult | None:
        # Read-only view; does not count as a request.
        resolved = resolve_profile(profile)
        now_ms = self._now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.blocked_until_ms is not None and now_ms < entry.blocked_until_ms:
                return RateLimitResult(
                    allowed=False,
                    limit=resolved.max_requests,
                    remaining=0,
                    reset_at_ms=entry.blocked_until_ms,
                    blocked=True,
                )
            if now_ms - entry.window_start_ms > resolved.window_ms:
                return RateLimitResult(
                    allowed=True,
                    limit=resolved.max_requests,
                    remaining=resolved.max_requests,
                    reset_at_ms=now_ms + resolved.window_ms,
                )
            remaining = max(0, resolved.max_requests - entry.count)
            return RateLimitResult(
                allowed=remaining > 0,
                limit=resolved.max_requests,
                remaining=remaining,
                reset_at_ms=entry.window_start_ms + resolved.window_ms,
            )

    def sweep(self) -> int:
        # Drop idle entries; anything still blocked is retained regardless of age.
        now_ms = self._now_ms()
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if now_ms - entry.window_start_ms > self._retention_ms
                and (entry.blocked_until_ms is None or entry.blocked_until_ms <= now_ms)
            ]
            for key in stale:
                del self._entries[key]
        logger.debug("rate_limit_sweep removed=%s", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def _sweep_job(self) -> None:
        self.sweep()

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = RecurringTask("rate-limit-sweep", get_settings().rl_sweep_interval_s, self._sweep_job)
        self._sweep_task.start()

    async def stop(self) -> None:
        if self._sweep_task is not None:
            await self._sweep_task.stop()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # One table per process so every request shares counters.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state(limiter: RateLimiter | None = None) -> None:
    # Reset cached limiter state for deterministic test setup.
    global _rate_limiter
    _rate_limiter = limiter
