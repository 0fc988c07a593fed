from shared.events.base import ALL_EVENT_TYPES, CoreEvent, EventType
from shared.events.bus import EventBus
from shared.events.typed import (
    AnyEvent,
    CostAlert,
    DeliveryTracking,
    HealthSnapshot,
    NotificationAcknowledged,
    NotificationRead,
    ProviderHealthUpdate,
    ProviderSwitch,
    ProviderUnhealthy,
    UserConnected,
    UserDisconnected,
    parse_event,
)

__all__ = [
    "ALL_EVENT_TYPES",
    "CoreEvent",
    "EventType",
    "EventBus",
    "AnyEvent",
    "CostAlert",
    "DeliveryTracking",
    "HealthSnapshot",
    "NotificationAcknowledged",
    "NotificationRead",
    "ProviderHealthUpdate",
    "ProviderSwitch",
    "ProviderUnhealthy",
    "UserConnected",
    "UserDisconnected",
    "parse_event",
]
