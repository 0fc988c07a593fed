"""Kafka bridge: core events out, provider webhooks in."""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException, Message, Producer
from pydantic import ValidationError

from shared.config import KafkaConfig
from shared.events import AnyEvent, EventBus

from notification_core.delivery.models import WebhookEvent

logger = logging.getLogger(__name__)


class KafkaEventPublisher:
    """Publishes every core event to the delivery events topic as JSON."""

    def __init__(self, config: KafkaConfig, producer: Producer | None = None) -> None:
        self._topic = config.delivery_events_topic
        self._producer = producer or Producer({
            "bootstrap.servers": config.bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
            "linger.ms": 5,
            "compression.type": "lz4",
        })

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_all(self.publish)

    def publish(self, event: AnyEvent) -> None:
        value = event.model_dump_json().encode("utf-8")
        self._producer.produce(
            topic=self._topic,
            key=event.event_type.encode("utf-8"),
            value=value,
            on_delivery=self._on_delivery,
        )
        self._producer.poll(0)

    def flush(self, timeout: float = 10.0) -> int:
        """Flush remaining messages. Returns number of unflushed messages."""
        return self._producer.flush(timeout=timeout)

    def close(self) -> None:
        """Flush remaining messages before shutdown."""
        remaining = self.flush()
        if remaining > 0:
            logger.warning(
                "Producer closed with unflushed messages",
                extra={"remaining": remaining},
            )

    @staticmethod
    def _on_delivery(err: object, msg: object) -> None:
        if err is not None:
            logger.error("Kafka delivery failed: %s", err)


@dataclass(frozen=True, slots=True)
class ReceivedWebhook:
    """A decoded webhook plus the Kafka message whose offset acknowledges it."""

    event: WebhookEvent
    message: Message

    @property
    def log_context(self) -> dict[str, Any]:
        return {
            "topic": self.message.topic(),
            "partition": self.message.partition(),
            "offset": self.message.offset(),
            "provider": self.event.provider,
        }


class WebhookReceiver:
    """Reads provider delivery callbacks from the webhook topic.

    Offsets are committed by hand: :meth:`ack` after the event has been
    applied, and right away for payloads that do not decode.
    """

    def __init__(self, config: KafkaConfig, consumer: Consumer | None = None) -> None:
        self._topic = config.webhook_events_topic
        self._consumer = consumer or Consumer({
            "bootstrap.servers": config.bootstrap_servers,
            "group.id": config.consumer_group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        })
        self._consumer.subscribe([self._topic])
        logger.info(
            "Listening for provider webhooks",
            extra={"topic": self._topic, "group_id": config.consumer_group_id},
        )

    def receive(self, timeout: float = 1.0) -> ReceivedWebhook | None:
        """Wait up to *timeout* seconds for the next decodable webhook.

        Returns None on timeout, at partition EOF, and for undecodable
        payloads (which are logged and committed).  Raises KafkaException
        for broker errors.
        """
        msg = self._consumer.poll(timeout)
        if msg is None:
            return None
        err = msg.error()
        if err is not None:
            if err.code() == KafkaError._PARTITION_EOF:
                return None
            raise KafkaException(err)

        try:
            event = parse_webhook(msg.value() or b"")
        except ValueError:
            logger.exception(
                "Invalid webhook, skipping",
                extra={"topic": msg.topic(), "partition": msg.partition(), "offset": msg.offset()},
            )
            self._commit(msg)
            return None
        return ReceivedWebhook(event=event, message=msg)

    def ack(self, received: ReceivedWebhook) -> None:
        self._commit(received.message)

    async def serve(
        self,
        handle: Callable[[WebhookEvent], object],
        stopping: asyncio.Event,
        poll_timeout: float = 1.0,
    ) -> int:
        """Feed webhooks to *handle* until *stopping* is set.

        Polling runs in a worker thread.  Events *handle* rejects with
        ValueError are logged and acknowledged.  Returns the number of
        events handled.
        """
        handled = 0
        while not stopping.is_set():
            received = await asyncio.to_thread(self.receive, poll_timeout)
            if received is None:
                continue
            try:
                handle(received.event)
                handled += 1
            except ValueError:
                logger.exception("Unroutable webhook, skipping", extra=received.log_context)
            self.ack(received)
        return handled

    def _commit(self, message: Message) -> None:
        self._consumer.commit(message=message, asynchronous=False)

    def close(self) -> None:
        self._consumer.close()
        logger.info("Webhook receiver closed")


def parse_webhook(value: bytes) -> WebhookEvent:
    """Decode a webhook message value.

    Raises ValueError when the payload is not JSON or does not validate.
    """
    try:
        raw: Any = json.loads(value.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"Malformed webhook payload: {exc}") from exc
    try:
        return WebhookEvent.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid webhook: {exc.errors(include_url=False)}") from exc
