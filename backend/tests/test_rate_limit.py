"""Tests for the fixed-window rate limiter."""

import pytest

from app.middleware.rate_limit import (
    DEFAULT_RULE,
    RATE_LIMIT_RULES,
    RateLimiter,
    normalize_endpoint,
    rule_for,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    """Create a fresh rate limiter instance driven by a fake clock."""
    return RateLimiter(clock=clock)


class TestRateLimiter:
    """Tests for the RateLimiter class."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(self, rate_limiter):
        results = [await rate_limiter.check("ip:1.2.3.4", "/auth/login", 5, 900) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5].remaining == 0

    @pytest.mark.asyncio
    async def test_denied_result_reports_retry_after(self, rate_limiter, clock):
        for _ in range(2):
            await rate_limiter.check("ip:a", "/x", 2, 60)
        clock.now += 15
        denied = await rate_limiter.check("ip:a", "/x", 2, 60)

        assert not denied.allowed
        assert denied.retry_after == 45
        assert denied.reset_at == int(clock.now - 15 + 60)
        assert denied.headers["Retry-After"] == "45"
        assert denied.headers["X-RateLimit-Limit"] == "2"

    @pytest.mark.asyncio
    async def test_allowed_result_has_no_retry_after_header(self, rate_limiter):
        result = await rate_limiter.check("ip:a", "/x", 2, 60)
        assert result.retry_after == 0
        assert "Retry-After" not in result.headers

    @pytest.mark.asyncio
    async def test_window_resets(self, rate_limiter, clock):
        for _ in range(3):
            await rate_limiter.check("ip:a", "/x", 2, 60)
        clock.now += 60
        result = await rate_limiter.check("ip:a", "/x", 2, 60)

        assert result.allowed
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_buckets_are_per_identifier_and_endpoint(self, rate_limiter):
        await rate_limiter.check("ip:a", "/x", 1, 60)

        assert not (await rate_limiter.check("ip:a", "/x", 1, 60)).allowed
        assert (await rate_limiter.check("ip:b", "/x", 1, 60)).allowed
        assert (await rate_limiter.check("ip:a", "/y", 1, 60)).allowed

    @pytest.mark.asyncio
    async def test_denied_requests_stop_counting(self, rate_limiter):
        for _ in range(50):
            await rate_limiter.check("ip:a", "/x", 3, 60)

        stats = await rate_limiter.get_stats()
        assert stats["total_buckets"] == 1
        assert stats["blocked_buckets"] == 1
        bucket = stats["buckets"][0]
        assert bucket["count"] == 3
        assert bucket["blocked"] is True

    @pytest.mark.asyncio
    async def test_check_rule_uses_rules_table(self, rate_limiter):
        result = await rate_limiter.check_rule("ip:a", "/auth/login")
        assert result.limit == RATE_LIMIT_RULES["/auth/login"].limit

        result = await rate_limiter.check_rule("ip:a", "/api/news/42")
        assert result.limit == DEFAULT_RULE.limit

    @pytest.mark.asyncio
    async def test_reset_identifier(self, rate_limiter):
        await rate_limiter.check("ip:a", "/x", 1, 60)
        await rate_limiter.check("ip:a", "/y", 1, 60)
        await rate_limiter.check("ip:b", "/x", 1, 60)

        assert await rate_limiter.reset("ip:a", "/x") == 1
        assert (await rate_limiter.check("ip:a", "/x", 1, 60)).allowed
        assert await rate_limiter.reset("ip:a") == 2
        assert (await rate_limiter.get_stats())["total_buckets"] == 1

    @pytest.mark.asyncio
    async def test_reset_all(self, rate_limiter):
        await rate_limiter.check("ip:a", "/x", 1, 60)
        await rate_limiter.reset_all()
        assert (await rate_limiter.get_stats())["total_buckets"] == 0

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_idle_closed_windows(self, rate_limiter, clock):
        await rate_limiter.check("ip:idle", "/x", 5, 60)
        clock.now += 3000
        await rate_limiter.check("ip:recent", "/x", 5, 60)
        await rate_limiter.check("ip:long-window", "/x", 5, 86400)
        clock.now += 700

        removed = await rate_limiter.cleanup(max_age_seconds=3600)

        assert removed == 1
        identifiers = {b["identifier"] for b in (await rate_limiter.get_stats())["buckets"]}
        assert identifiers == {"ip:recent", "ip:long-window"}

    def test_singleton(self):
        assert RateLimiter.get_instance() is RateLimiter.get_instance()


class TestEndpointNormalization:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/api/news/42", "/api/news/:id"),
            ("/api/news/42/comments/7", "/api/news/:id/comments/:id"),
            ("/api/documents/507f1f77bcf86cd799439011", "/api/documents/:id"),
            (
                "/api/users/6f1c2d3e-4b5a-4c6d-8e9f-0a1b2c3d4e5f/roles",
                "/api/users/:id/roles",
            ),
            ("/api/news/latest", "/api/news/latest"),
            ("/auth/login?next=/admin", "/auth/login"),
            ("/auth/2fa/verify", "/auth/2fa"),
            ("/api/admin/users/12", "/api/admin"),
            ("", "/"),
        ],
    )
    def test_normalize_endpoint(self, path, expected):
        assert normalize_endpoint(path) == expected

    def test_rule_for(self):
        assert rule_for("/auth/login").limit == 5
        assert rule_for("/auth/login").window_seconds == 900
        assert rule_for("/auth/refresh") == RATE_LIMIT_RULES["/auth/refresh"]
        assert rule_for("/api/news/:id") == DEFAULT_RULE
