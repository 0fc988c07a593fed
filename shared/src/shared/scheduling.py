"""Periodic background jobs owned by components.

Each component asks a :class:`Scheduler` for its jobs in ``start()`` and
cancels them in ``stop()``.  Production code uses :class:`AsyncioScheduler`;
tests inject a scheduler that only runs jobs when told to.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from shared.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[None] | None]


class ScheduledJob(Protocol):
    name: str

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule(
        self, name: str, interval: float, callback: JobCallback
    ) -> ScheduledJob: ...


async def run_callback(callback: JobCallback) -> None:
    """Invoke a sync or async job callback."""
    result = callback()
    if inspect.isawaitable(result):
        await result


class PeriodicTask:
    """Runs *callback* every *interval* seconds on the running event loop.

    The first run happens one interval after :meth:`start`.  A failing run is
    logged and the loop keeps going; cancellation stops it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: JobCallback,
        clock: Clock,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval!r}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self._clock.sleep(self.interval)
                await run_callback(self._callback)
                self.runs += 1
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(
                    "Periodic job failed", extra={"job": self.name}
                )


class AsyncioScheduler:
    """Creates :class:`PeriodicTask` jobs backed by asyncio tasks."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def schedule(
        self, name: str, interval: float, callback: JobCallback
    ) -> PeriodicTask:
        job = PeriodicTask(name, interval, callback, self._clock)
        job.start()
        logger.debug(
            "Scheduled periodic job", extra={"job": name, "interval": interval}
        )
        return job
