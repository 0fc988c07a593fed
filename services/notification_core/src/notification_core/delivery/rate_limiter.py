"""Per-provider rate limiting with fixed memory per window."""

import math
from typing import Protocol

from redis.asyncio import Redis

from shared.clock import Clock

from notification_core.delivery.providers.base import Provider, RateLimit

SECOND = 1.0
MINUTE = 60.0
DAY = 24 * 60 * 60.0


def windows_for(rate_limit: RateLimit) -> list[tuple[float, int]]:
    """Return ``(window_seconds, limit)`` pairs for a provider's rate limit."""
    windows = [(SECOND, rate_limit.max_per_second)]
    if rate_limit.max_per_minute is not None:
        windows.append((MINUTE, rate_limit.max_per_minute))
    windows.append((DAY, rate_limit.max_per_day))
    return windows


class SlidingWindowCounter:
    """Two-bucket sliding window approximation.

    Keeps the count of the current and the previous fixed window.  The
    estimated number of hits in the trailing window weights the previous
    bucket by how much of it still overlaps.  Counters only grow within a
    window and are rolled exactly once when the window index changes.
    """

    __slots__ = ("window", "limit", "_index", "_current", "_previous")

    def __init__(self, window: float, limit: int) -> None:
        if window <= 0:
            raise ValueError(f"window must be positive, got {window!r}")
        self.window = window
        self.limit = limit
        self._index: int | None = None
        self._current = 0
        self._previous = 0

    def _roll(self, now: float) -> None:
        index = math.floor(now / self.window)
        if self._index is None:
            self._index = index
        elif index == self._index + 1:
            self._previous, self._current = self._current, 0
            self._index = index
        elif index > self._index + 1:
            self._previous, self._current = 0, 0
            self._index = index

    def estimate(self, now: float) -> float:
        self._roll(now)
        assert self._index is not None
        elapsed = (now - self._index * self.window) / self.window
        return self._previous * (1.0 - elapsed) + self._current

    def would_allow(self, now: float) -> bool:
        return self.estimate(now) + 1 <= self.limit

    def hit(self, now: float) -> None:
        self._roll(now)
        self._current += 1

    def remaining(self, now: float) -> int:
        return max(0, math.floor(self.limit - self.estimate(now)))


class RateLimiter(Protocol):
    async def acquire(self, provider: Provider) -> bool:
        """Consume one slot for *provider*; False when any window is full."""
        ...


class LocalRateLimiter:
    """In-process limiter holding one counter per provider window."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._counters: dict[str, list[SlidingWindowCounter]] = {}

    def _counters_for(self, provider: Provider) -> list[SlidingWindowCounter]:
        counters = self._counters.get(provider.name)
        if counters is None:
            counters = [
                SlidingWindowCounter(window, limit)
                for window, limit in windows_for(provider.rate_limit)
            ]
            self._counters[provider.name] = counters
        return counters

    async def acquire(self, provider: Provider) -> bool:
        now = self._clock.now()
        counters = self._counters_for(provider)
        if not all(counter.would_allow(now) for counter in counters):
            return False
        for counter in counters:
            counter.hit(now)
        return True

    def remaining(self, provider: Provider) -> dict[str, int]:
        """Slots left per window, keyed by window length in seconds."""
        now = self._clock.now()
        return {
            f"{counter.window:g}s": counter.remaining(now)
            for counter in self._counters_for(provider)
        }


# Lua script for atomic multi-window rate limiting.
# KEYS are the current fixed-window buckets, ARGV holds the limits followed
# by the key TTLs.  Either every bucket is incremented or none is.
_RATE_LIMIT_LUA = """
local n = #KEYS
for i = 1, n do
    local count = tonumber(redis.call('GET', KEYS[i]) or '0')
    if count >= tonumber(ARGV[i]) then
        return 0
    end
end
for i = 1, n do
    redis.call('INCR', KEYS[i])
    redis.call('EXPIRE', KEYS[i], tonumber(ARGV[n + i]))
end
return 1
"""


class RedisRateLimiter:
    """Per-provider fixed-window counters in Redis.

    Each window is a single integer key named after its bucket index, so
    memory per provider is constant.  Uses a Lua script to make the
    check-and-increment atomic across processes sharing a provider pool.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(self, redis_client: Redis, clock: Clock) -> None:
        self._redis = redis_client
        self._clock = clock
        self._script = self._redis.register_script(_RATE_LIMIT_LUA)

    def keys_for(self, provider: Provider, now: float) -> list[str]:
        return [
            f"{self.KEY_PREFIX}:{provider.name}:{window:g}:{math.floor(now / window)}"
            for window, _ in windows_for(provider.rate_limit)
        ]

    async def acquire(self, provider: Provider) -> bool:
        now = self._clock.now()
        windows = windows_for(provider.rate_limit)
        limits = [limit for _, limit in windows]
        ttls = [math.ceil(window) + 1 for window, _ in windows]

        result = await self._script(
            keys=self.keys_for(provider, now),
            args=[*limits, *ttls],
        )
        return bool(result)
