"""Fan a notification request out to its channels."""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, model_validator

from shared.enums import Channel, Priority

from notification_core.delivery.manager import DeliveryManager
from notification_core.delivery.models import BulkDeliveryResult
from notification_core.errors import NotificationCoreError
from notification_core.realtime.models import BroadcastResult, PushNotification
from notification_core.realtime.service import RealtimeService
from notification_core.templates.renderer import TemplateRenderer

logger = logging.getLogger(__name__)


class Recipient(BaseModel):
    identity: str
    email: str | None = None
    phone: str | None = None

    def address_for(self, channel: Channel) -> str | None:
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.SMS:
            return self.phone
        return self.identity


class NotificationRequest(BaseModel):
    """An already authorized request to notify a set of recipients."""

    notification_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    recipients: list[Recipient] = Field(default_factory=list)
    channels: list[Channel] = Field(min_length=1)
    template_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    category: str | None = None
    role: str | None = None
    skip_cache: bool = False

    @model_validator(mode="after")
    def _has_targets(self) -> "NotificationRequest":
        if not self.recipients and not self.role:
            raise ValueError("a notification needs recipients or a role")
        return self


@dataclass
class ChannelReport:
    channel: Channel
    attempted: int = 0
    skipped: int = 0
    bulk: BulkDeliveryResult | None = None
    broadcast: BroadcastResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DispatchReport:
    notification_id: str
    channels: dict[Channel, ChannelReport] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(report.ok for report in self.channels.values())


class NotificationDispatcher:
    """Renders a request per channel and hands it to the matching sender.

    Mail and text go through their delivery managers as bulk sends; push
    goes through the realtime service.  A failing channel is reported and
    does not stop the others.
    """

    def __init__(
        self,
        renderer: TemplateRenderer,
        managers: Mapping[Channel, DeliveryManager],
        realtime: RealtimeService,
    ) -> None:
        self._renderer = renderer
        self._managers = dict(managers)
        self._realtime = realtime

    async def dispatch(self, request: NotificationRequest) -> DispatchReport:
        report = DispatchReport(notification_id=request.notification_id)
        for channel in request.channels:
            log_ctx = {"notification_id": request.notification_id, "channel": channel}
            try:
                if channel == Channel.PUSH:
                    channel_report = await self._push(request)
                else:
                    channel_report = await self._deliver(request, channel)
            except NotificationCoreError as exc:
                logger.warning(
                    "Channel dispatch failed", extra={**log_ctx, "error": str(exc)}
                )
                channel_report = ChannelReport(channel=channel, error=str(exc))
            report.channels[channel] = channel_report

        logger.info(
            "Notification dispatched",
            extra={
                "notification_id": request.notification_id,
                "channels": [str(c) for c in request.channels],
                "ok": report.ok,
            },
        )
        return report

    async def _deliver(self, request: NotificationRequest, channel: Channel) -> ChannelReport:
        manager = self._managers.get(channel)
        if manager is None:
            return ChannelReport(channel=channel, error=f"no delivery manager for {channel}")

        addresses = [
            address
            for address in (r.address_for(channel) for r in request.recipients)
            if address
        ]
        skipped = len(request.recipients) - len(addresses)
        if not addresses:
            return ChannelReport(channel=channel, skipped=skipped)

        content = await self._renderer.render(
            request.template_id, channel, request.context, skip_cache=request.skip_cache
        )
        metadata = {"notification_id": request.notification_id}
        if request.category:
            metadata["category"] = request.category
        bulk = await manager.send_bulk(
            addresses,
            content,
            metadata=metadata,
            priority=request.priority,
            notification_id=request.notification_id,
        )
        return ChannelReport(
            channel=channel, attempted=len(addresses), skipped=skipped, bulk=bulk
        )

    async def _push(self, request: NotificationRequest) -> ChannelReport:
        content = await self._renderer.render(
            request.template_id, Channel.PUSH, request.context, skip_cache=request.skip_cache
        )
        notification = PushNotification(
            id=request.notification_id,
            title=content.subject or "",
            body=content.body,
            priority=request.priority,
            category=request.category,
            data=dict(request.context),
        )

        deliveries = []
        if request.role:
            deliveries.extend(
                (await self._realtime.broadcast_to_role(request.role, notification)).results
            )
        reached = {d.identity for d in deliveries}
        for recipient in request.recipients:
            if recipient.identity in reached:
                continue
            reached.add(recipient.identity)
            deliveries.append(
                await self._realtime.send_to_recipient(recipient.identity, notification)
            )

        broadcast = BroadcastResult.from_deliveries(deliveries)
        return ChannelReport(
            channel=Channel.PUSH, attempted=broadcast.total, broadcast=broadcast
        )
