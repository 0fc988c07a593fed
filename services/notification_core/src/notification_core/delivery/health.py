"""Rolling per-provider health used for selection and failover."""

import logging
from dataclasses import dataclass

from shared.clock import Clock, to_datetime
from shared.enums import Channel
from shared.events import (
    EventBus,
    HealthSnapshot,
    ProviderHealthUpdate,
    ProviderUnhealthy,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderHealth:
    healthy: bool = True
    consecutive_failures: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_success_at: float | None = None
    last_failure_at: float | None = None
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        """Share of successful requests; 1.0 before any observation."""
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            healthy=self.healthy,
            consecutive_failures=self.consecutive_failures,
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            success_rate=self.success_rate,
            last_success_at=(
                to_datetime(self.last_success_at)
                if self.last_success_at is not None
                else None
            ),
            last_failure_at=(
                to_datetime(self.last_failure_at)
                if self.last_failure_at is not None
                else None
            ),
            last_error=self.last_error,
        )


class HealthTracker:
    """Health records for one channel family's providers.

    A provider turns unhealthy after *failure_threshold* consecutive
    failures and healthy again on its next success.  Unhealthy providers
    become selectable again once *recovery_timeout* seconds have passed
    since their last failure, so a single attempt can bring them back.
    """

    def __init__(
        self,
        channel: Channel,
        bus: EventBus,
        clock: Clock,
        failure_threshold: int = 3,
        recovery_timeout: float | None = 300.0,
    ) -> None:
        self._channel = channel
        self._bus = bus
        self._clock = clock
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._records: dict[str, ProviderHealth] = {}

    def register(self, provider_name: str) -> None:
        self._records.setdefault(provider_name, ProviderHealth())

    def get(self, provider_name: str) -> ProviderHealth:
        """Raises KeyError for unknown providers."""
        return self._records[provider_name]

    def is_healthy(self, provider_name: str) -> bool:
        record = self._records.get(provider_name)
        return record.healthy if record is not None else False

    def is_selectable(self, provider_name: str) -> bool:
        record = self._records.get(provider_name)
        if record is None:
            return False
        if record.healthy:
            return True
        if self._recovery_timeout is None or record.last_failure_at is None:
            return False
        return self._clock.now() - record.last_failure_at >= self._recovery_timeout

    def record_success(self, provider_name: str) -> ProviderHealth:
        record = self._records[provider_name]
        record.total_requests += 1
        record.successful_requests += 1
        record.last_success_at = self._clock.now()
        record.consecutive_failures = 0
        if not record.healthy:
            logger.info(
                "Provider recovered",
                extra={"channel": self._channel, "provider": provider_name},
            )
        record.healthy = True
        self._publish_update(provider_name, record)
        return record

    def record_failure(
        self, provider_name: str, error: BaseException | None = None
    ) -> ProviderHealth:
        record = self._records[provider_name]
        now = self._clock.now()
        record.total_requests += 1
        record.failed_requests += 1
        record.last_failure_at = now
        record.consecutive_failures += 1
        record.last_error = str(error) if error is not None else None

        if record.healthy and record.consecutive_failures >= self._failure_threshold:
            record.healthy = False
            logger.warning(
                "Provider marked unhealthy",
                extra={
                    "channel": self._channel,
                    "provider": provider_name,
                    "consecutive_failures": record.consecutive_failures,
                },
            )
            self._bus.publish(
                ProviderUnhealthy(
                    occurred_at=to_datetime(now),
                    channel=self._channel,
                    provider=provider_name,
                    consecutive_failures=record.consecutive_failures,
                    error=record.last_error,
                )
            )
        self._publish_update(provider_name, record)
        return record

    def reset(self, provider_name: str) -> None:
        """Manually restore a provider, clearing its failure streak."""
        record = self._records[provider_name]
        record.healthy = True
        record.consecutive_failures = 0
        self._publish_update(provider_name, record)

    def snapshot(self) -> dict[str, HealthSnapshot]:
        return {name: record.snapshot() for name, record in self._records.items()}

    def _publish_update(self, provider_name: str, record: ProviderHealth) -> None:
        self._bus.publish(
            ProviderHealthUpdate(
                occurred_at=to_datetime(self._clock.now()),
                channel=self._channel,
                provider=provider_name,
                health=record.snapshot(),
            )
        )
