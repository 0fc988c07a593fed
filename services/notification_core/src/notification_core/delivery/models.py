"""Delivery requests, results and webhook payloads."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field

from shared.clock import to_datetime
from shared.enums import Channel, DeliveryStatus, Priority

from notification_core.content import RenderedContent


@dataclass(frozen=True, slots=True)
class DeliveryRequest:
    to: str
    content: RenderedContent
    metadata: Mapping[str, str] = field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    notification_id: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of a delivery through the provider pool."""

    success: bool
    provider: str
    message_id: str
    cost: float
    fallback_used: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RecipientOutcome:
    recipient: str
    success: bool
    provider: str | None = None
    message_id: str | None = None
    cost: float = 0.0
    fallback_used: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BulkDeliveryResult:
    total: int
    success_count: int
    failure_count: int
    total_cost: float
    results: list[RecipientOutcome]

    @classmethod
    def from_outcomes(cls, outcomes: list[RecipientOutcome]) -> "BulkDeliveryResult":
        success_count = sum(1 for o in outcomes if o.success)
        return cls(
            total=len(outcomes),
            success_count=success_count,
            failure_count=len(outcomes) - success_count,
            total_cost=round(sum(o.cost for o in outcomes), 6),
            results=outcomes,
        )


class WebhookEvent(BaseModel):
    """Asynchronous delivery-status callback from a provider."""

    provider: str
    external_message_id: str = Field(
        validation_alias=AliasChoices("external_message_id", "message_id", "messageId")
    )
    event: DeliveryStatus = Field(validation_alias=AliasChoices("event", "status"))
    timestamp: datetime
    recipient: str | None = None
    error_code: str | None = Field(
        default=None, validation_alias=AliasChoices("error_code", "errorCode")
    )
    channel: Channel | None = None


@dataclass(frozen=True, slots=True)
class TrackingResult:
    processed: bool
    status: DeliveryStatus
    message_id: str


@dataclass
class CostTracking:
    """Running cost of one provider with daily and monthly buckets (UTC)."""

    total_cost: float = 0.0
    message_count: int = 0
    average_cost: float = 0.0
    daily_cost: float = 0.0
    monthly_cost: float = 0.0
    last_reset: float | None = None
    alerted_today: bool = False

    def add(self, cost: float, now: float) -> None:
        today = to_datetime(now).date()
        if self.last_reset is not None:
            last = to_datetime(self.last_reset).date()
            if (today.year, today.month) != (last.year, last.month):
                self.monthly_cost = 0.0
            if today != last:
                self.daily_cost = 0.0
                self.alerted_today = False
        self.last_reset = now

        self.total_cost += cost
        self.message_count += 1
        self.average_cost = self.total_cost / self.message_count
        self.daily_cost += cost
        self.monthly_cost += cost
