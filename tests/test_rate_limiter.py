"""Tests for the fixed-window rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from creditgate.core.limits.rate_limiter import RateLimiter


def _make_limiter(store, clock, **kwargs) -> RateLimiter:
    return RateLimiter(store, clock=clock, **kwargs)


class TestUserWindow:
    @pytest.mark.asyncio
    async def test_thirty_allowed_then_rejected(self, store, clock):
        limiter = _make_limiter(store, clock)
        remaining = []
        for _ in range(30):
            result = await limiter.check_user("user-1", 30)
            assert result.allowed
            remaining.append(result.remaining)
        assert remaining == list(range(29, -1, -1))

        result = await limiter.check_user("user-1", 30)
        assert not result.allowed
        assert result.remaining == 0
        assert result.headers()["Retry-After"] == str(result.reset_seconds)

    @pytest.mark.asyncio
    async def test_concurrent_checks_admit_exactly_limit(self, store, clock):
        limiter = _make_limiter(store, clock)
        results = await asyncio.gather(
            *(limiter.check_user("user-1", 10) for _ in range(25))
        )
        assert sum(r.allowed for r in results) == 10

    @pytest.mark.asyncio
    async def test_window_resets(self, store, clock):
        limiter = _make_limiter(store, clock)
        for _ in range(3):
            await limiter.check_user("user-1", 2)
        result = await limiter.check_user("user-1", 2)
        assert not result.allowed

        clock.advance(result.reset_seconds)
        assert (await limiter.check_user("user-1", 2)).allowed

    @pytest.mark.asyncio
    async def test_users_are_independent(self, store, clock):
        limiter = _make_limiter(store, clock)
        assert (await limiter.check_user("a", 1)).allowed
        assert (await limiter.check_user("b", 1)).allowed
        assert not (await limiter.check_user("a", 1)).allowed


class TestIPWindows:
    @pytest.mark.asyncio
    async def test_burst_rejects_before_minute_budget(self, store, clock):
        limiter = _make_limiter(store, clock, ip_per_minute=30, ip_burst_per_10s=3)
        for _ in range(3):
            assert (await limiter.check_ip("1.2.3.4")).allowed
        result = await limiter.check_ip("1.2.3.4")
        assert not result.allowed
        assert result.limit == 3

    @pytest.mark.asyncio
    async def test_minute_budget_applies_across_bursts(self, store, clock):
        # Start of a minute so six 10s buckets fit in one minute window.
        clock.now = 60 * 20_000
        limiter = _make_limiter(store, clock, ip_per_minute=4, ip_burst_per_10s=3)
        for _ in range(3):
            assert (await limiter.check_ip("1.2.3.4")).allowed
        clock.advance(10)
        assert (await limiter.check_ip("1.2.3.4")).allowed
        result = await limiter.check_ip("1.2.3.4")
        assert not result.allowed
        assert result.limit == 4


class TestGlobalAndEndpoint:
    @pytest.mark.asyncio
    async def test_global_hour_cap(self, store, clock):
        limiter = _make_limiter(store, clock)
        assert (await limiter.check_global_hour(2)).allowed
        assert (await limiter.check_global_hour(2)).allowed
        assert not (await limiter.check_global_hour(2)).allowed

    @pytest.mark.asyncio
    async def test_global_zero_disables(self, store, clock):
        limiter = _make_limiter(store, clock)
        for _ in range(5):
            assert (await limiter.check_global_hour(0)).allowed
        assert await store.scan("rate:global:*") == {}

    @pytest.mark.asyncio
    async def test_endpoint_scoped_per_key(self, store, clock):
        limiter = _make_limiter(store, clock)
        assert (await limiter.check_endpoint("admin_usage", "1.2.3.4", 1)).allowed
        assert not (await limiter.check_endpoint("admin_usage", "1.2.3.4", 1)).allowed
        assert (await limiter.check_endpoint("other", "1.2.3.4", 1)).allowed


class TestDisabled:
    @pytest.mark.asyncio
    async def test_everything_allowed(self, store, clock):
        limiter = _make_limiter(store, clock, enabled=False)
        for _ in range(50):
            assert (await limiter.check_user("user-1", 1)).allowed
            assert (await limiter.check_ip("1.2.3.4")).allowed
        assert (await limiter.check_user("user-1", 1)).headers() == {}
