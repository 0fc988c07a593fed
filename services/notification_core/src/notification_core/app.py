"""Service container wiring every core component together."""

import logging
from collections.abc import Iterable, Mapping

from redis.asyncio import Redis

from shared.clock import Clock, SystemClock
from shared.enums import Channel
from shared.events import EventBus
from shared.scheduling import AsyncioScheduler, Scheduler

from notification_core.config import (
    DeliveryConfig,
    RealtimeConfig,
    ServiceConfig,
    TemplateCacheConfig,
)
from notification_core.delivery.manager import (
    DeliveryManager,
    EmailDeliveryManager,
    SMSDeliveryManager,
)
from notification_core.delivery.models import TrackingResult, WebhookEvent
from notification_core.delivery.providers import Provider, create_default_providers
from notification_core.delivery.rate_limiter import (
    LocalRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from notification_core.dispatcher import NotificationDispatcher
from notification_core.realtime.service import RealtimeService
from notification_core.templates.engine import TemplateCacheEngine
from notification_core.templates.renderer import (
    InMemoryTemplateStore,
    TemplateRenderer,
    TemplateStore,
)

logger = logging.getLogger(__name__)


class NotificationCore:
    """Owns the delivery managers, realtime service and template cache.

    Nothing here is global: construct one instance, ``await start()`` it
    and ``await stop()`` it on shutdown.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        clock: Clock,
        scheduler: Scheduler,
        rate_limiter: RateLimiter,
        template_store: TemplateStore,
        delivery_config: DeliveryConfig | None = None,
        realtime_config: RealtimeConfig | None = None,
        cache_config: TemplateCacheConfig | None = None,
        providers: Mapping[Channel, Iterable[Provider]] | None = None,
    ) -> None:
        self.bus = bus
        self.clock = clock
        delivery_config = delivery_config or DeliveryConfig()
        self.email = EmailDeliveryManager(
            bus=bus, clock=clock, rate_limiter=rate_limiter, config=delivery_config
        )
        self.sms = SMSDeliveryManager(
            bus=bus, clock=clock, rate_limiter=rate_limiter, config=delivery_config
        )
        self.realtime = RealtimeService(
            bus=bus, clock=clock, scheduler=scheduler, config=realtime_config
        )
        self.cache = TemplateCacheEngine(
            clock=clock, scheduler=scheduler, config=cache_config
        )
        self.renderer = TemplateRenderer(self.cache, template_store)
        self.dispatcher = NotificationDispatcher(
            self.renderer,
            {Channel.EMAIL: self.email, Channel.SMS: self.sms},
            self.realtime,
        )
        self._providers = dict(providers) if providers is not None else None
        self._started = False

    @classmethod
    def from_config(
        cls,
        service_config: ServiceConfig,
        *,
        redis_client: Redis | None = None,
        template_store: TemplateStore | None = None,
    ) -> "NotificationCore":
        clock = SystemClock()
        if service_config.rate_limit_backend == "redis":
            if redis_client is None:
                raise ValueError("redis rate limit backend requires a redis client")
            rate_limiter: RateLimiter = RedisRateLimiter(redis_client, clock)
        else:
            rate_limiter = LocalRateLimiter(clock)
        return cls(
            bus=EventBus(),
            clock=clock,
            scheduler=AsyncioScheduler(clock),
            rate_limiter=rate_limiter,
            template_store=template_store or InMemoryTemplateStore(),
            delivery_config=DeliveryConfig(),
            realtime_config=RealtimeConfig(),
            cache_config=TemplateCacheConfig(),
        )

    @property
    def managers(self) -> dict[Channel, DeliveryManager]:
        return {Channel.EMAIL: self.email, Channel.SMS: self.sms}

    def manager_for(self, channel: Channel) -> DeliveryManager:
        manager = self.managers.get(Channel(channel))
        if manager is None:
            raise ValueError(f"No delivery manager for channel: {channel!r}")
        return manager

    async def start(self) -> None:
        if self._started:
            return
        for channel, manager in self.managers.items():
            if self._providers is not None:
                providers = list(self._providers.get(channel, ()))
            else:
                providers = create_default_providers(channel)
            manager.initialize(providers)
        self.realtime.start()
        self.cache.start()
        self._started = True
        logger.info("Notification core started")

    async def stop(self) -> None:
        if not self._started:
            return
        self.cache.stop()
        await self.realtime.stop()
        for manager in self.managers.values():
            manager.shutdown()
        self._started = False
        logger.info("Notification core stopped")

    def track_delivery(self, event: WebhookEvent) -> TrackingResult:
        """Route a provider callback to the manager owning that provider.

        Raises ValueError when no manager knows the provider.
        """
        if event.channel is not None:
            return self.manager_for(event.channel).track_delivery(event)
        for manager in self.managers.values():
            if any(p.name == event.provider for p in manager.providers):
                return manager.track_delivery(event)
        raise ValueError(f"No delivery manager for provider: {event.provider!r}")
