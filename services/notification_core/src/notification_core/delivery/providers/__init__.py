"""Provider definitions and the built-in development provider pools."""

from shared.enums import Channel

from notification_core.delivery.providers.base import (
    EmailTransport,
    Provider,
    RateLimit,
    SMSTransport,
    Transport,
    TransportError,
    TransportReceipt,
)
from notification_core.delivery.providers.email import LoggingEmailTransport
from notification_core.delivery.providers.sms import LoggingSMSTransport

__all__ = [
    "EmailTransport",
    "LoggingEmailTransport",
    "LoggingSMSTransport",
    "Provider",
    "RateLimit",
    "SMSTransport",
    "Transport",
    "TransportError",
    "TransportReceipt",
    "create_default_providers",
]


def create_default_providers(channel: Channel) -> list[Provider]:
    """Create the logging stub providers for a channel family.

    Raises ValueError for channels without a delivery manager.
    """
    if channel == Channel.EMAIL:
        return [
            Provider(
                name="email-stub",
                priority=3,
                transport=LoggingEmailTransport("email-stub"),
                rate_limit=RateLimit(max_per_second=10, max_per_day=1000),
                features=frozenset({"attachments"}),
            ),
        ]
    if channel == Channel.SMS:
        return [
            Provider(
                name="sms-stub",
                priority=3,
                transport=LoggingSMSTransport("sms-stub"),
                rate_limit=RateLimit(
                    max_per_second=100, max_per_minute=1000, max_per_day=10000
                ),
                features=frozenset({"international", "delivery_tracking", "unicode"}),
            ),
        ]
    raise ValueError(f"No built-in providers for channel: {channel!r}")
