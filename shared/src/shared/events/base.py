from datetime import datetime, timezone
from enum import StrEnum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventType(StrEnum):
    PROVIDER_HEALTH_UPDATE = "provider.health_update"
    PROVIDER_UNHEALTHY = "provider.unhealthy"
    PROVIDER_SWITCH = "provider.switch"
    COST_ALERT = "provider.cost_alert"
    DELIVERY_TRACKING = "delivery.tracking"
    USER_CONNECTED = "realtime.user_connected"
    USER_DISCONNECTED = "realtime.user_disconnected"
    NOTIFICATION_ACKNOWLEDGED = "realtime.notification_acknowledged"
    NOTIFICATION_READ = "realtime.notification_read"


ALL_EVENT_TYPES: set[str] = {e.value for e in EventType}


class CoreEvent(BaseModel):
    """Common envelope fields for every event on the bus."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
