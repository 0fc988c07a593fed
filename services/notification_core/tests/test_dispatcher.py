"""Tests for fanning requests out across channels."""

import pytest
from pydantic import ValidationError

from shared.enums import Channel, Priority

from notification_core.dispatcher import (
    NotificationDispatcher,
    NotificationRequest,
    Recipient,
)
from notification_core.templates import (
    InMemoryTemplateStore,
    TemplateDefinition,
    TemplateRenderer,
)

TEMPLATES = [
    TemplateDefinition(
        template_id="shipped",
        channel=Channel.EMAIL,
        subject="Order {{ order_id }} shipped",
        body="Your order {{ order_id }} is on its way.",
    ),
    TemplateDefinition(
        template_id="shipped",
        channel=Channel.SMS,
        body="Order {{ order_id }} shipped",
    ),
    TemplateDefinition(
        template_id="shipped",
        channel=Channel.PUSH,
        subject="Shipped",
        body="Order {{ order_id }} is on its way",
    ),
]


@pytest.fixture()
def dispatcher(cache, email_manager, sms_manager, realtime, email_provider, sms_provider):
    email_manager.initialize([email_provider("mail", 1)[0]])
    sms_manager.initialize([sms_provider("text", 1)[0]])
    renderer = TemplateRenderer(cache, InMemoryTemplateStore(TEMPLATES))
    return NotificationDispatcher(
        renderer,
        {Channel.EMAIL: email_manager, Channel.SMS: sms_manager},
        realtime,
    )


class TestNotificationRequest:
    def test_requires_recipients_or_role(self) -> None:
        with pytest.raises(ValidationError):
            NotificationRequest(channels=[Channel.EMAIL], template_id="shipped")

    def test_requires_a_channel(self) -> None:
        with pytest.raises(ValidationError):
            NotificationRequest(
                channels=[], template_id="shipped", recipients=[Recipient(identity="u1")]
            )

    def test_address_for_channel(self) -> None:
        recipient = Recipient(identity="u1", email="u1@example.com")
        assert recipient.address_for(Channel.EMAIL) == "u1@example.com"
        assert recipient.address_for(Channel.SMS) is None
        assert recipient.address_for(Channel.PUSH) == "u1"


class TestDispatch:
    async def test_email_and_sms(self, dispatcher) -> None:
        request = NotificationRequest(
            channels=[Channel.EMAIL, Channel.SMS],
            template_id="shipped",
            context={"order_id": "A1"},
            recipients=[
                Recipient(identity="u1", email="u1@example.com", phone="5551234567"),
                Recipient(identity="u2", email="u2@example.com"),
            ],
            category="orders",
        )

        report = await dispatcher.dispatch(request)

        assert report.ok
        email = report.channels[Channel.EMAIL]
        assert email.attempted == 2
        assert email.bulk.success_count == 2
        sms = report.channels[Channel.SMS]
        assert sms.attempted == 1
        assert sms.skipped == 1
        assert sms.bulk.results[0].recipient == "5551234567"

    async def test_push_to_role_and_recipients(
        self, dispatcher, realtime, new_session
    ) -> None:
        online = new_session("s1")
        await realtime.authenticate(online, "u1", "staff")
        realtime.directory.register("u2", "staff")

        request = NotificationRequest(
            channels=[Channel.PUSH],
            template_id="shipped",
            context={"order_id": "A1"},
            role="staff",
            recipients=[Recipient(identity="u1"), Recipient(identity="u3")],
            priority=Priority.HIGH,
        )

        report = await dispatcher.dispatch(request)

        push = report.channels[Channel.PUSH].broadcast
        assert push.total == 3
        assert push.delivered == 1
        assert push.offline == 2
        payload = online.events("notification")[0]
        assert payload["title"] == "Shipped"
        assert payload["body"] == "Order A1 is on its way"
        assert payload["id"] == request.notification_id
        assert realtime.queued_count("u3") == 1

    async def test_failing_channel_does_not_stop_others(
        self, dispatcher, email_manager
    ) -> None:
        email_manager.shutdown()
        for provider in email_manager.providers:
            for _ in range(3):
                email_manager.health.record_failure(provider.name)

        request = NotificationRequest(
            channels=[Channel.EMAIL, Channel.SMS],
            template_id="shipped",
            context={"order_id": "A1"},
            recipients=[Recipient(identity="u1", email="u1@example.com", phone="5551234567")],
        )

        report = await dispatcher.dispatch(request)

        assert not report.ok
        assert "No healthy email providers" in report.channels[Channel.EMAIL].error
        assert report.channels[Channel.SMS].ok

    async def test_missing_template_reported(self, dispatcher) -> None:
        request = NotificationRequest(
            channels=[Channel.EMAIL],
            template_id="unknown",
            recipients=[Recipient(identity="u1", email="u1@example.com")],
        )

        report = await dispatcher.dispatch(request)

        assert "not found" in report.channels[Channel.EMAIL].error
