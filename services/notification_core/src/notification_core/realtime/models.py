"""Realtime notifications, connections and delivery tracking records."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from shared.enums import ACK_PRIORITIES, ConnectionState, Priority, RecipientDeliveryStatus
from shared.scheduling import ScheduledJob

from notification_core.realtime.session import Session


class PushNotification(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    body: str
    priority: Priority = Priority.NORMAL
    category: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def requires_ack(self) -> bool:
        return self.priority in ACK_PRIORITIES


@dataclass
class Connection:
    identity: str
    role: str
    session: Session
    connected_at: float
    last_activity: float
    state: ConnectionState = ConnectionState.CONNECTED
    heartbeat: ScheduledJob | None = None

    @property
    def session_id(self) -> str:
        return self.session.session_id


@dataclass
class DeliveryTrackingRecord:
    delivery_id: str
    notification_id: str
    identity: str
    sent_at: float
    requires_ack: bool
    acknowledged_at: float | None = None
    read_at: float | None = None


@dataclass(frozen=True, slots=True)
class RecipientDelivery:
    """Outcome of pushing one notification to one identity."""

    identity: str
    status: RecipientDeliveryStatus
    online: bool
    delivery_id: str | None = None
    requires_ack: bool = False


@dataclass(frozen=True, slots=True)
class BroadcastResult:
    total: int
    online: int
    offline: int
    delivered: int
    failed: int
    results: list[RecipientDelivery] = field(default_factory=list)

    @classmethod
    def from_deliveries(cls, deliveries: list[RecipientDelivery]) -> "BroadcastResult":
        online = sum(1 for d in deliveries if d.online)
        return cls(
            total=len(deliveries),
            online=online,
            offline=len(deliveries) - online,
            delivered=sum(
                1 for d in deliveries if d.status == RecipientDeliveryStatus.DELIVERED
            ),
            failed=sum(1 for d in deliveries if d.status == RecipientDeliveryStatus.FAILED),
            results=deliveries,
        )
