"""Fixed-window rate limiting for API protection."""

import asyncio
import logging
import math
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Maximum requests allowed per window."""

    limit: int
    window_seconds: int


# Keyed by normalised path prefix, first match wins.
RATE_LIMIT_RULES: dict[str, RateLimitRule] = {
    # Login - 5 attempts per 15 minutes
    "/auth/login": RateLimitRule(limit=5, window_seconds=900),
    "/auth/refresh": RateLimitRule(limit=30, window_seconds=300),
    "/auth/2fa": RateLimitRule(limit=10, window_seconds=300),
    "/api/admin": RateLimitRule(limit=200, window_seconds=60),
}

DEFAULT_RULE = RateLimitRule(limit=100, window_seconds=60)

_ID_SEGMENT = re.compile(
    r"^(?:\d+|[a-f0-9]{24}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)


def normalize_endpoint(path: str) -> str:
    """Collapse a request path onto its rate limit key.

    The query string is dropped and numeric ids, 24-hex object ids and UUIDs
    become ``:id``. Paths under a configured rule collapse to the rule prefix.
    """
    if not path:
        return "/"
    path = path.split("?", 1)[0]
    normalized = "/".join(
        ":id" if _ID_SEGMENT.match(segment) else segment for segment in path.split("/")
    )
    for prefix in RATE_LIMIT_RULES:
        if normalized.startswith(prefix):
            return prefix
    return normalized or "/"


def rule_for(endpoint: str) -> RateLimitRule:
    """Get the rule governing a normalised endpoint."""
    for prefix, rule in RATE_LIMIT_RULES.items():
        if endpoint.startswith(prefix):
            return rule
    return DEFAULT_RULE


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class RateLimitBucket:
    """Request count for one (identifier, endpoint) in the current window."""

    count: int
    window_start: float
    last_seen: float
    limit: int
    window_seconds: int

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_seconds


class RateLimiter:
    """In-memory fixed-window rate limiter.

    Designed for single-instance deployments. The clock is injectable so the
    window arithmetic can be exercised without sleeping.
    """

    _instance: Optional["RateLimiter"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    @classmethod
    def get_instance(cls) -> "RateLimiter":
        """Get the singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    async def check(
        self,
        identifier: str,
        endpoint: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Count a request and report whether it is allowed."""
        async with self._lock:
            now = self._clock()
            key = (identifier, endpoint)
            bucket = self._buckets.get(key)
            if bucket is None or bucket.expired(now):
                bucket = RateLimitBucket(
                    count=0,
                    window_start=now,
                    last_seen=now,
                    limit=limit,
                    window_seconds=window_seconds,
                )
                self._buckets[key] = bucket

            bucket.last_seen = now
            reset_at = bucket.window_start + bucket.window_seconds
            allowed = bucket.count < limit
            # Denied requests stop counting at limit + 1
            bucket.count = min(bucket.count + 1, limit + 1)
            remaining = max(0, limit - bucket.count)

        if not allowed:
            logger.warning(f"Rate limit exceeded for {identifier} on {endpoint}")
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=remaining,
            reset_at=math.ceil(reset_at),
            retry_after=0 if allowed else max(1, math.ceil(reset_at - now)),
        )

    async def check_rule(self, identifier: str, path: str) -> RateLimitResult:
        """Check ``path`` against the rules table."""
        endpoint = normalize_endpoint(path)
        rule = rule_for(endpoint)
        return await self.check(identifier, endpoint, rule.limit, rule.window_seconds)

    async def reset(self, identifier: str, endpoint: str | None = None) -> int:
        """Drop an identifier's buckets, optionally for one endpoint only."""
        async with self._lock:
            keys = [
                key
                for key in self._buckets
                if key[0] == identifier and (endpoint is None or key[1] == endpoint)
            ]
            for key in keys:
                del self._buckets[key]
        if keys:
            logger.info(f"Reset {len(keys)} rate limit bucket(s) for {identifier}")
        return len(keys)

    async def reset_all(self) -> None:
        async with self._lock:
            self._buckets.clear()

    async def cleanup(self, max_age_seconds: int = 86400) -> int:
        """Remove buckets whose window has closed and that were idle for ``max_age_seconds``.

        This prevents unbounded memory growth from abandoned clients.
        """
        async with self._lock:
            now = self._clock()
            keys_to_remove = [
                key
                for key, bucket in self._buckets.items()
                if bucket.expired(now) and now - bucket.last_seen >= max_age_seconds
            ]
            for key in keys_to_remove:
                del self._buckets[key]

        if keys_to_remove:
            logger.info(f"Cleaned up {len(keys_to_remove)} inactive rate limit buckets")
        return len(keys_to_remove)

    async def get_stats(self) -> dict:
        """Get current rate limit statistics."""
        async with self._lock:
            now = self._clock()
            buckets = [
                {
                    "identifier": identifier,
                    "endpoint": endpoint,
                    "count": min(bucket.count, bucket.limit),
                    "limit": bucket.limit,
                    "blocked": bucket.count > bucket.limit and not bucket.expired(now),
                    "window_start": int(bucket.window_start),
                    "reset_at": math.ceil(bucket.window_start + bucket.window_seconds),
                }
                for (identifier, endpoint), bucket in self._buckets.items()
            ]
        return {
            "total_buckets": len(buckets),
            "blocked_buckets": sum(1 for b in buckets if b["blocked"]),
            "buckets": sorted(buckets, key=lambda b: (b["identifier"], b["endpoint"])),
        }


def get_rate_limiter() -> RateLimiter:
    """Get the rate limiter singleton for stats/management."""
    return RateLimiter.get_instance()
