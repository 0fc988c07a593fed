"""Test fixtures for notification_core tests."""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from shared.events import AnyEvent, EventBus
from shared.scheduling import JobCallback, run_callback

from notification_core.config import DeliveryConfig, RealtimeConfig, TemplateCacheConfig
from notification_core.content import RenderedContent
from notification_core.delivery.manager import EmailDeliveryManager, SMSDeliveryManager
from notification_core.delivery.providers.base import (
    EmailTransport,
    Provider,
    RateLimit,
    SMSTransport,
    TransportError,
    TransportReceipt,
)
from notification_core.delivery.rate_limiter import LocalRateLimiter
from notification_core.realtime.service import RealtimeService
from notification_core.templates.engine import TemplateCacheEngine


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


class ManualJob:
    def __init__(self, name: str, interval: float, callback: JobCallback) -> None:
        self.name = name
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records jobs and runs them only when a test asks."""

    def __init__(self) -> None:
        self.jobs: list[ManualJob] = []

    def schedule(self, name: str, interval: float, callback: JobCallback) -> ManualJob:
        job = ManualJob(name, interval, callback)
        self.jobs.append(job)
        return job

    def active(self, prefix: str = "") -> list[ManualJob]:
        return [j for j in self.jobs if not j.cancelled and j.name.startswith(prefix)]

    async def run(self, name: str) -> None:
        for job in self.active():
            if job.name == name:
                await run_callback(job.callback)


class _RecordingTransport:
    """Mixin recording sends; fails while ``fail`` is set."""

    def __init__(self, name: str, cost: float | None = None) -> None:
        self.name = name
        self.cost = cost
        self.fail = False
        self.sent: list[tuple[str, RenderedContent, dict[str, str]]] = []

    async def send(
        self,
        address: str,
        content: RenderedContent,
        metadata: Mapping[str, str],
    ) -> TransportReceipt:
        if self.fail:
            raise TransportError(f"{self.name} is down")
        self.sent.append((address, content, dict(metadata)))
        return TransportReceipt(message_id=f"{self.name}-{len(self.sent)}", cost=self.cost)


class FakeEmailTransport(_RecordingTransport, EmailTransport):
    pass


class FakeSMSTransport(_RecordingTransport, SMSTransport):
    pass


class FakeSession:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.emitted: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self.fail = False

    async def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("socket gone")
        self.emitted.append((event, dict(payload)))

    async def close(self) -> None:
        self.closed = True

    def events(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.emitted if event == name]


def make_provider(
    name: str,
    priority: int,
    transport: _RecordingTransport,
    *,
    per_second: int = 1000,
    per_day: int = 100_000,
    cost_per_message: float = 0.0,
) -> Provider:
    return Provider(
        name=name,
        priority=priority,
        transport=transport,  # type: ignore[arg-type]
        rate_limit=RateLimit(max_per_second=per_second, max_per_day=per_day),
        cost_per_message=cost_per_message,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def published(bus: EventBus) -> list[AnyEvent]:
    """Every event published on the ``bus`` fixture, in order."""
    events: list[AnyEvent] = []
    bus.subscribe_all(events.append)
    return events


@pytest.fixture()
def rate_limiter(clock: FakeClock) -> LocalRateLimiter:
    return LocalRateLimiter(clock)


@pytest.fixture()
def delivery_config() -> DeliveryConfig:
    return DeliveryConfig()


@pytest.fixture()
def email_manager(
    bus: EventBus,
    clock: FakeClock,
    rate_limiter: LocalRateLimiter,
    delivery_config: DeliveryConfig,
) -> EmailDeliveryManager:
    return EmailDeliveryManager(
        bus=bus, clock=clock, rate_limiter=rate_limiter, config=delivery_config
    )


@pytest.fixture()
def sms_manager(
    bus: EventBus,
    clock: FakeClock,
    rate_limiter: LocalRateLimiter,
    delivery_config: DeliveryConfig,
) -> SMSDeliveryManager:
    return SMSDeliveryManager(
        bus=bus, clock=clock, rate_limiter=rate_limiter, config=delivery_config
    )


@pytest.fixture()
def realtime(
    bus: EventBus, clock: FakeClock, scheduler: ManualScheduler
) -> RealtimeService:
    return RealtimeService(
        bus=bus, clock=clock, scheduler=scheduler, config=RealtimeConfig()
    )


@pytest.fixture()
def cache_config() -> TemplateCacheConfig:
    return TemplateCacheConfig()


@pytest.fixture()
def cache(
    clock: FakeClock, scheduler: ManualScheduler, cache_config: TemplateCacheConfig
) -> TemplateCacheEngine:
    return TemplateCacheEngine(clock=clock, scheduler=scheduler, config=cache_config)


ProviderFactory = Callable[..., tuple[Provider, _RecordingTransport]]


@pytest.fixture()
def email_provider() -> ProviderFactory:
    """Build ``(provider, transport)`` pairs backed by a recording email transport."""

    def _make(name: str, priority: int, *, cost: float | None = None, **kwargs: Any):
        transport = FakeEmailTransport(name, cost=cost)
        return make_provider(name, priority, transport, **kwargs), transport

    return _make


@pytest.fixture()
def sms_provider() -> ProviderFactory:
    def _make(name: str, priority: int, *, cost: float | None = None, **kwargs: Any):
        transport = FakeSMSTransport(name, cost=cost)
        return make_provider(name, priority, transport, **kwargs), transport

    return _make


@pytest.fixture()
def new_session() -> Callable[[str], FakeSession]:
    return FakeSession
