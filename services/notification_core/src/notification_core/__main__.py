"""Entry point for the notification core.

Starts the core components, forwards core events to Kafka and feeds
provider webhook callbacks from Kafka into delivery tracking.
"""

import asyncio
import logging
import signal

from redis.asyncio import Redis

from shared.config import KafkaConfig, RedisConfig

from notification_core.app import NotificationCore
from notification_core.config import ServiceConfig
from notification_core.kafka import KafkaEventPublisher, WebhookReceiver
from notification_core.log import setup_logging

logger = logging.getLogger(__name__)


async def run() -> None:
    service_config = ServiceConfig()
    setup_logging(service_config.log_level)

    kafka_config = KafkaConfig()

    # Redis (only for the shared rate limiter)
    redis_client: Redis | None = None
    if service_config.rate_limit_backend == "redis":
        redis_client = Redis.from_url(RedisConfig().url)

    core = NotificationCore.from_config(service_config, redis_client=redis_client)

    # Kafka
    publisher = KafkaEventPublisher(kafka_config)
    publisher.attach(core.bus)
    receiver = WebhookReceiver(kafka_config)

    # Graceful shutdown
    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _shutdown(sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        stopping.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    await core.start()
    logger.info("Notification core service started")

    try:
        await receiver.serve(
            core.track_delivery, stopping, service_config.consumer_poll_timeout_seconds
        )
    finally:
        await core.stop()
        publisher.close()
        receiver.close()
        if redis_client is not None:
            await redis_client.aclose()
        logger.info("Notification core service stopped")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
