"""Shared test fixtures."""

import asyncio

import pytest

from shared.events import AnyEvent, EventBus


class FakeClock:
    """Clock whose time only moves when a test (or a sleep) moves it."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def published(bus: EventBus) -> list[AnyEvent]:
    """Every event published on the ``bus`` fixture, in order."""
    events: list[AnyEvent] = []
    bus.subscribe_all(events.append)
    return events
