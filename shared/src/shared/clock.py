"""Injectable time source shared by every component."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Wall-clock reads and cooperative sleeps.

    Components never call :mod:`time` or :func:`asyncio.sleep` directly so
    tests can drive time deterministically.
    """

    def now(self) -> float:
        """Seconds since the epoch."""
        ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def to_datetime(timestamp: float) -> datetime:
    """Convert an epoch timestamp from a :class:`Clock` to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, timezone.utc)
