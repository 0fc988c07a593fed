from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from shared.enums import Channel, DeliveryStatus
from shared.events.base import CoreEvent


class HealthSnapshot(BaseModel):
    healthy: bool
    consecutive_failures: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None


class ProviderHealthUpdate(CoreEvent):
    event_type: Literal["provider.health_update"] = "provider.health_update"
    channel: Channel
    provider: str
    health: HealthSnapshot


class ProviderUnhealthy(CoreEvent):
    event_type: Literal["provider.unhealthy"] = "provider.unhealthy"
    channel: Channel
    provider: str
    consecutive_failures: int
    error: str | None = None


class ProviderSwitch(CoreEvent):
    event_type: Literal["provider.switch"] = "provider.switch"
    channel: Channel
    new_primary: str
    new_backup: str | None = None


class CostAlert(CoreEvent):
    event_type: Literal["provider.cost_alert"] = "provider.cost_alert"
    channel: Channel
    provider: str
    daily_cost: float
    threshold: float


class DeliveryTracking(CoreEvent):
    event_type: Literal["delivery.tracking"] = "delivery.tracking"
    channel: Channel
    provider: str
    external_message_id: str
    status: DeliveryStatus
    recipient: str | None = None
    reported_at: datetime
    error_code: str | None = None


class UserConnected(CoreEvent):
    event_type: Literal["realtime.user_connected"] = "realtime.user_connected"
    identity: str
    role: str
    session_id: str
    queued_delivered: int = 0


class UserDisconnected(CoreEvent):
    event_type: Literal["realtime.user_disconnected"] = "realtime.user_disconnected"
    identity: str
    role: str
    session_id: str
    reason: str


class NotificationAcknowledged(CoreEvent):
    event_type: Literal["realtime.notification_acknowledged"] = (
        "realtime.notification_acknowledged"
    )
    identity: str
    delivery_id: str
    notification_id: str | None = None
    latency_seconds: float | None = None


class NotificationRead(CoreEvent):
    event_type: Literal["realtime.notification_read"] = "realtime.notification_read"
    identity: str
    delivery_id: str
    notification_id: str | None = None
    read_at: datetime


AnyEvent = (
    ProviderHealthUpdate
    | ProviderUnhealthy
    | ProviderSwitch
    | CostAlert
    | DeliveryTracking
    | UserConnected
    | UserDisconnected
    | NotificationAcknowledged
    | NotificationRead
)

_EVENT_ADAPTER: TypeAdapter[AnyEvent] = TypeAdapter(
    Annotated[AnyEvent, Field(discriminator="event_type")]
)


def parse_event(raw: dict[str, Any]) -> AnyEvent:
    """Deserialize a raw dict (e.g. from Kafka) into a typed event.

    Raises ValueError if event_type is missing or unknown, or the payload
    does not validate.
    """
    if not isinstance(raw, dict) or "event_type" not in raw:
        raise ValueError("Missing event_type in raw event")

    try:
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid event: {exc.errors(include_url=False)}") from exc
