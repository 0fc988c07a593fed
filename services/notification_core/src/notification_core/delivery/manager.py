"""Multi-provider delivery with failover, rate limiting and cost tracking."""

import asyncio
import dataclasses
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import ClassVar

from shared.clock import Clock, to_datetime
from shared.enums import Channel, DeliveryStatus, Priority
from shared.events import (
    CostAlert,
    DeliveryTracking,
    EventBus,
    HealthSnapshot,
    ProviderSwitch,
)

from notification_core.batching import chunked
from notification_core.config import DeliveryConfig
from notification_core.content import RenderedContent
from notification_core.delivery.health import HealthTracker
from notification_core.delivery.models import (
    BulkDeliveryResult,
    CostTracking,
    DeliveryRequest,
    DeliveryResult,
    RecipientOutcome,
    TrackingResult,
    WebhookEvent,
)
from notification_core.delivery.providers.base import (
    EmailTransport,
    Provider,
    SMSTransport,
    Transport,
)
from notification_core.delivery.providers.email import (
    add_email_tracking,
    validate_email_address,
)
from notification_core.delivery.providers.sms import (
    normalize_phone_number,
    shorten_message,
)
from notification_core.delivery.rate_limiter import RateLimiter
from notification_core.errors import (
    DeliveryFailed,
    NotificationCoreError,
    ProviderUnavailable,
    RateLimitExceeded,
)

logger = logging.getLogger(__name__)

_STAT_KEYS = ("accepted", "send_failures", "rate_limited") + tuple(
    status.value for status in DeliveryStatus
)


class DeliveryManager:
    """Delivers requests for one channel family through a provider pool.

    Providers are ranked by priority.  The manager keeps a primary and an
    optional backup; a send tries the primary and fails over to the backup
    once.  Subclasses bind the channel and shape requests for it.
    """

    channel: ClassVar[Channel]
    transport_type: ClassVar[type[Transport]]

    def __init__(
        self,
        *,
        bus: EventBus,
        clock: Clock,
        rate_limiter: RateLimiter,
        config: DeliveryConfig | None = None,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self._rate_limiter = rate_limiter
        self._config = config or DeliveryConfig()
        self._health = HealthTracker(
            self.channel,
            bus,
            clock,
            failure_threshold=self._config.failure_threshold,
            recovery_timeout=self._config.recovery_timeout_seconds,
        )
        self._providers: dict[str, Provider] = {}
        self._stats: dict[str, Counter[str]] = {}
        self._costs: dict[str, CostTracking] = {}
        self.primary: Provider | None = None
        self.backup: Provider | None = None

    @property
    def health(self) -> HealthTracker:
        return self._health

    @property
    def providers(self) -> list[Provider]:
        return sorted(self._providers.values(), key=lambda p: p.priority)

    def initialize(self, providers: Iterable[Provider]) -> None:
        """Register *providers* and pick the initial primary/backup pair."""
        for provider in providers:
            self.register(provider)
        self.select_providers()
        logger.info(
            "Delivery manager initialized",
            extra={
                "channel": self.channel,
                "providers": [p.name for p in self.providers],
            },
        )

    def shutdown(self) -> None:
        self.primary = None
        self.backup = None
        logger.info("Delivery manager shut down", extra={"channel": self.channel})

    def register(self, provider: Provider) -> None:
        """Add *provider* to the pool.

        Raises ValueError for a duplicate name or a transport of another
        channel family.
        """
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name!r}")
        if not isinstance(provider.transport, self.transport_type):
            raise ValueError(
                f"Provider {provider.name!r} has no {self.channel} transport"
            )
        self._providers[provider.name] = provider
        self._health.register(provider.name)
        self._stats[provider.name] = Counter({key: 0 for key in _STAT_KEYS})
        self._costs[provider.name] = CostTracking()

    def select_providers(self) -> tuple[Provider, Provider | None]:
        """Choose the two best selectable providers by ascending priority."""
        candidates = [
            p for p in self.providers if self._health.is_selectable(p.name)
        ]
        if not candidates:
            self.primary = None
            self.backup = None
            raise ProviderUnavailable(self.channel)
        self.primary = candidates[0]
        self.backup = candidates[1] if len(candidates) > 1 else None
        logger.debug(
            "Providers selected",
            extra={
                "channel": self.channel,
                "primary": self.primary.name,
                "backup": self.backup.name if self.backup else None,
            },
        )
        return self.primary, self.backup

    def _current_selection(self) -> tuple[Provider, Provider | None]:
        primary, backup = self.primary, self.backup
        if (
            primary is None
            or not self._health.is_selectable(primary.name)
            or (backup is not None and not self._health.is_selectable(backup.name))
            or self._outranked(primary, backup)
        ):
            return self.select_providers()
        return primary, backup

    def _outranked(self, primary: Provider, backup: Provider | None) -> bool:
        """True when a selectable provider outside the pair should join it.

        That is the case when the backup slot is empty, or when the outsider
        has a better priority than a member of the pair.  The order inside
        the pair is left alone so a switch made by the switch policy sticks.
        """
        members = {primary.name} | ({backup.name} if backup is not None else set())
        worst = max(primary.priority, backup.priority if backup is not None else 0)
        for provider in self.providers:
            if provider.name in members or not self._health.is_selectable(provider.name):
                continue
            if backup is None or provider.priority < worst:
                return True
        return False

    def prepare(self, request: DeliveryRequest) -> DeliveryRequest:
        """Validate and shape *request* for the channel; may raise InvalidRecipient."""
        return request

    async def send(self, request: DeliveryRequest) -> DeliveryResult:
        """Deliver one request with a single primary to backup failover.

        Raises InvalidRecipient, ProviderUnavailable, RateLimitExceeded
        (every attempted provider was rate limited) or DeliveryFailed.
        """
        request = self.prepare(request)
        primary, backup = self._current_selection()

        last_error: BaseException | None = None
        transport_failed = False
        for provider, fallback in ((primary, False), (backup, True)):
            if provider is None:
                continue
            log_ctx = {
                "channel": self.channel,
                "provider": provider.name,
                "fallback": fallback,
                "notification_id": request.notification_id,
            }

            if not await self._rate_limiter.acquire(provider):
                self._stats[provider.name]["rate_limited"] += 1
                logger.warning("Rate limit exceeded", extra=log_ctx)
                last_error = RateLimitExceeded(provider.name)
                continue

            try:
                receipt = await provider.transport.send(
                    request.to, request.content, request.metadata
                )
            except Exception as exc:
                logger.exception("Provider error", extra=log_ctx)
                transport_failed = True
                last_error = exc
                self._stats[provider.name]["send_failures"] += 1
                self._health.record_failure(provider.name, exc)
                continue

            self._health.record_success(provider.name)
            self._stats[provider.name]["accepted"] += 1
            cost = receipt.cost if receipt.cost is not None else provider.cost_per_message
            self._track_cost(provider, cost)
            logger.info(
                "Delivery accepted",
                extra={**log_ctx, "message_id": receipt.message_id, "cost": cost},
            )
            if fallback:
                self._maybe_switch()
            return DeliveryResult(
                success=True,
                provider=provider.name,
                message_id=receipt.message_id,
                cost=cost,
                fallback_used=fallback,
            )

        if not transport_failed and isinstance(last_error, RateLimitExceeded):
            raise last_error
        logger.error(
            "All providers failed",
            extra={"channel": self.channel, "error": str(last_error)},
        )
        raise DeliveryFailed(self.channel, last_error)

    async def send_bulk(
        self,
        targets: Iterable[str],
        content: RenderedContent,
        *,
        metadata: Mapping[str, str] | None = None,
        priority: Priority = Priority.NORMAL,
        notification_id: str | None = None,
    ) -> BulkDeliveryResult:
        """Send *content* to every target in fixed-size batches.

        Failures of single targets are captured in their outcome.  Raises
        ProviderUnavailable up front when no provider can be selected.
        """
        self._current_selection()
        batches = list(chunked(targets, self._config.batch_size_for_channel(self.channel)))
        outcomes: list[RecipientOutcome] = []

        for index, batch in enumerate(batches):
            batch_metadata = {**(metadata or {}), "batch_index": str(index)}
            results = await asyncio.gather(
                *(
                    self._send_one(
                        DeliveryRequest(
                            to=target,
                            content=content,
                            metadata=batch_metadata,
                            priority=priority,
                            notification_id=notification_id,
                        )
                    )
                    for target in batch
                )
            )
            outcomes.extend(results)
            if index < len(batches) - 1:
                await self._clock.sleep(self._config.batch_delay_seconds)

        result = BulkDeliveryResult.from_outcomes(outcomes)
        logger.info(
            "Bulk delivery finished",
            extra={
                "channel": self.channel,
                "total": result.total,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "batches": len(batches),
            },
        )
        return result

    async def _send_one(self, request: DeliveryRequest) -> RecipientOutcome:
        try:
            result = await self.send(request)
        except NotificationCoreError as exc:
            return RecipientOutcome(recipient=request.to, success=False, error=str(exc))
        return RecipientOutcome(
            recipient=request.to,
            success=True,
            provider=result.provider,
            message_id=result.message_id,
            cost=result.cost,
            fallback_used=result.fallback_used,
        )

    def track_delivery(self, event: WebhookEvent) -> TrackingResult:
        """Record a provider status callback and publish it on the bus."""
        stats = self._stats.get(event.provider)
        if stats is None:
            logger.warning(
                "Webhook for unknown provider",
                extra={"channel": self.channel, "provider": event.provider},
            )
        else:
            stats[event.event.value] += 1

        self._bus.publish(
            DeliveryTracking(
                channel=self.channel,
                provider=event.provider,
                external_message_id=event.external_message_id,
                status=event.event,
                recipient=event.recipient,
                reported_at=event.timestamp,
                error_code=event.error_code,
            )
        )
        logger.info(
            "Delivery status tracked",
            extra={
                "channel": self.channel,
                "provider": event.provider,
                "message_id": event.external_message_id,
                "status": event.event,
            },
        )
        return TrackingResult(
            processed=stats is not None,
            status=event.event,
            message_id=event.external_message_id,
        )

    def get_health(self) -> dict[str, HealthSnapshot]:
        return self._health.snapshot()

    def get_stats(self) -> dict[str, dict[str, int]]:
        return {name: dict(counter) for name, counter in self._stats.items()}

    def get_cost_tracking(self) -> dict[str, dict[str, float | int | None]]:
        return {
            name: {
                key: value
                for key, value in dataclasses.asdict(tracking).items()
                if key != "alerted_today"
            }
            for name, tracking in self._costs.items()
        }

    def get_status(self) -> dict[str, object]:
        return {
            "channel": self.channel,
            "primary": self.primary.name if self.primary else None,
            "backup": self.backup.name if self.backup else None,
            "providers": [p.name for p in self.providers],
        }

    def _maybe_switch(self) -> None:
        primary, backup = self.primary, self.backup
        if primary is None or backup is None:
            return
        primary_health = self._health.get(primary.name)
        backup_health = self._health.get(backup.name)
        min_samples = self._config.min_switch_samples
        if (
            primary_health.total_requests < min_samples
            or backup_health.total_requests < min_samples
        ):
            return
        if backup_health.success_rate <= primary_health.success_rate + self._config.switch_margin:
            return

        self.primary, self.backup = backup, primary
        logger.info(
            "Switched primary provider",
            extra={
                "channel": self.channel,
                "new_primary": backup.name,
                "new_backup": primary.name,
                "primary_success_rate": primary_health.success_rate,
                "backup_success_rate": backup_health.success_rate,
            },
        )
        self._bus.publish(
            ProviderSwitch(
                channel=self.channel,
                new_primary=backup.name,
                new_backup=primary.name,
            )
        )

    def _track_cost(self, provider: Provider, cost: float) -> None:
        now = self._clock.now()
        tracking = self._costs[provider.name]
        tracking.add(cost, now)
        threshold = self._config.daily_cost_alert_threshold
        if tracking.daily_cost > threshold and not tracking.alerted_today:
            tracking.alerted_today = True
            logger.warning(
                "Daily cost threshold exceeded",
                extra={
                    "channel": self.channel,
                    "provider": provider.name,
                    "daily_cost": tracking.daily_cost,
                    "threshold": threshold,
                },
            )
            self._bus.publish(
                CostAlert(
                    occurred_at=to_datetime(now),
                    channel=self.channel,
                    provider=provider.name,
                    daily_cost=tracking.daily_cost,
                    threshold=threshold,
                )
            )


class EmailDeliveryManager(DeliveryManager):
    channel = Channel.EMAIL
    transport_type = EmailTransport

    def prepare(self, request: DeliveryRequest) -> DeliveryRequest:
        request = dataclasses.replace(request, to=validate_email_address(request.to))
        base_url = self._config.email_tracking_base_url
        tracking_id = request.notification_id or request.metadata.get("notification_id")
        if not base_url or not tracking_id or not request.content.html:
            return request
        html = add_email_tracking(request.content.html, base_url, tracking_id)
        return dataclasses.replace(
            request, content=dataclasses.replace(request.content, html=html)
        )


class SMSDeliveryManager(DeliveryManager):
    """Text messaging: E.164-style numbers and single-segment bodies."""

    channel = Channel.SMS
    transport_type = SMSTransport

    def prepare(self, request: DeliveryRequest) -> DeliveryRequest:
        number = normalize_phone_number(
            request.to, self._config.sms_default_country_code
        )
        body = shorten_message(request.content.body, self._config.sms_max_length)
        content = RenderedContent(body=body)
        return dataclasses.replace(request, to=number, content=content)
