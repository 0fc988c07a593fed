"""Tests for the fixed-memory rate limiters."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from notification_core.delivery.rate_limiter import (
    DAY,
    MINUTE,
    SECOND,
    LocalRateLimiter,
    RedisRateLimiter,
    SlidingWindowCounter,
    windows_for,
)
from notification_core.delivery.providers.base import RateLimit


class TestWindowsFor:
    def test_second_and_day(self) -> None:
        assert windows_for(RateLimit(max_per_second=5, max_per_day=100)) == [
            (SECOND, 5),
            (DAY, 100),
        ]

    def test_includes_minute_when_set(self) -> None:
        limit = RateLimit(max_per_second=5, max_per_day=100, max_per_minute=50)
        assert windows_for(limit) == [(SECOND, 5), (MINUTE, 50), (DAY, 100)]


class TestSlidingWindowCounter:
    def test_rejects_non_positive_window(self) -> None:
        with pytest.raises(ValueError):
            SlidingWindowCounter(0, 10)

    def test_counts_within_window(self) -> None:
        counter = SlidingWindowCounter(1.0, 3)
        for _ in range(3):
            assert counter.would_allow(100.2)
            counter.hit(100.2)
        assert not counter.would_allow(100.9)
        assert counter.remaining(100.9) == 0

    def test_previous_window_weighted_by_overlap(self) -> None:
        counter = SlidingWindowCounter(1.0, 10)
        for _ in range(10):
            counter.hit(100.0)
        # Half of the previous window still overlaps the trailing second.
        assert counter.estimate(101.5) == pytest.approx(5.0)
        assert counter.remaining(101.5) == 5

    def test_resets_after_idle_windows(self) -> None:
        counter = SlidingWindowCounter(1.0, 1)
        counter.hit(100.0)
        assert counter.estimate(102.0) == 0
        assert counter.would_allow(102.0)


class TestLocalRateLimiter:
    async def test_second_send_within_100ms_rejected(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=1)
        limiter = LocalRateLimiter(clock)

        assert await limiter.acquire(provider) is True
        clock.advance(0.1)
        assert await limiter.acquire(provider) is False

    async def test_allows_again_after_window_passes(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=1)
        limiter = LocalRateLimiter(clock)

        assert await limiter.acquire(provider)
        clock.advance(2.0)
        assert await limiter.acquire(provider)

    async def test_daily_limit_applies(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=100, per_day=2)
        limiter = LocalRateLimiter(clock)

        assert await limiter.acquire(provider)
        assert await limiter.acquire(provider)
        clock.advance(5.0)
        assert not await limiter.acquire(provider)

    async def test_rejection_consumes_nothing(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=1, per_day=10)
        limiter = LocalRateLimiter(clock)

        await limiter.acquire(provider)
        await limiter.acquire(provider)

        assert limiter.remaining(provider)["86400s"] == 9

    async def test_providers_are_independent(self, clock, email_provider) -> None:
        first, _ = email_provider("x", 1, per_second=1)
        second, _ = email_provider("y", 2, per_second=1)
        limiter = LocalRateLimiter(clock)

        assert await limiter.acquire(first)
        assert await limiter.acquire(second)


class TestRedisRateLimiter:
    def _make(self, clock, result: int) -> tuple[RedisRateLimiter, AsyncMock]:
        redis_mock = MagicMock()
        script = AsyncMock(return_value=result)
        redis_mock.register_script.return_value = script
        return RedisRateLimiter(redis_mock, clock), script

    async def test_acquire_allowed(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=5, per_day=100)
        limiter, script = self._make(clock, 1)

        assert await limiter.acquire(provider) is True
        script.assert_awaited_once()

    async def test_acquire_denied(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1)
        limiter, _ = self._make(clock, 0)

        assert await limiter.acquire(provider) is False

    async def test_keys_and_args_per_window(self, clock, email_provider) -> None:
        provider, _ = email_provider("x", 1, per_second=5, per_day=100)
        limiter, script = self._make(clock, 1)

        await limiter.acquire(provider)

        kwargs = script.await_args.kwargs
        now = clock.now()
        assert kwargs["keys"] == [
            f"ratelimit:x:1:{int(now)}",
            f"ratelimit:x:86400:{int(now // 86400)}",
        ]
        assert kwargs["args"] == [5, 100, 2, 86401]
