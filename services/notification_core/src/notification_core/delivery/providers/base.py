"""Provider and transport abstractions shared by every channel family."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import ClassVar

from shared.enums import Channel, DeliveryStatus

from notification_core.content import RenderedContent


class TransportError(Exception):
    """Raised by a transport when the provider rejects or fails a send."""


@dataclass(frozen=True, slots=True)
class TransportReceipt:
    """What a provider hands back for an accepted message."""

    message_id: str
    cost: float | None = None
    status: DeliveryStatus = DeliveryStatus.SENT


@dataclass(frozen=True, slots=True)
class RateLimit:
    max_per_second: int
    max_per_day: int
    max_per_minute: int | None = None


class Transport(ABC):
    """Opaque request/response boundary to one external provider.

    Implementations raise on failure (any exception counts as a provider
    failure) and return a :class:`TransportReceipt` on acceptance.
    """

    channel: ClassVar[Channel]

    @abstractmethod
    async def send(
        self,
        address: str,
        content: RenderedContent,
        metadata: Mapping[str, str],
    ) -> TransportReceipt:
        """Hand one message to the provider."""


class EmailTransport(Transport):
    channel = Channel.EMAIL


class SMSTransport(Transport):
    channel = Channel.SMS


@dataclass(frozen=True, slots=True)
class Provider:
    """A registered provider. Immutable after registration."""

    name: str
    priority: int
    transport: Transport
    rate_limit: RateLimit
    cost_per_message: float = 0.0
    features: frozenset[str] = field(default_factory=frozenset)

    @property
    def channel(self) -> Channel:
        return self.transport.channel
