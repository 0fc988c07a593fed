"""Live connections, offline queuing and batched broadcasts for push."""

import asyncio
import logging
import uuid
from collections import Counter
from collections.abc import Iterable

from shared.clock import Clock, to_datetime
from shared.enums import ConnectionState, RecipientDeliveryStatus
from shared.events import (
    EventBus,
    NotificationAcknowledged,
    NotificationRead,
    UserConnected,
    UserDisconnected,
)
from shared.scheduling import ScheduledJob, Scheduler

from notification_core.batching import chunked
from notification_core.config import RealtimeConfig
from notification_core.errors import ConnectionNotAuthenticated
from notification_core.realtime.directory import RecipientDirectory
from notification_core.realtime.models import (
    BroadcastResult,
    Connection,
    DeliveryTrackingRecord,
    PushNotification,
    RecipientDelivery,
)
from notification_core.realtime.offline_queue import OfflineQueue
from notification_core.realtime.session import Session

logger = logging.getLogger(__name__)


class RealtimeService:
    """Tracks connected recipients and pushes notifications to them.

    Each identity has at most one live connection; a newer session
    replaces the older one.  Notifications for identities that are not
    connected go to the offline queue and are replayed in order on the
    next successful authentication.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        clock: Clock,
        scheduler: Scheduler,
        config: RealtimeConfig | None = None,
        directory: RecipientDirectory | None = None,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self._scheduler = scheduler
        self._config = config or RealtimeConfig()
        self.directory = directory if directory is not None else RecipientDirectory()
        self._queue = OfflineQueue(
            capacity=self._config.queue_capacity,
            retention_seconds=self._config.queue_retention_seconds,
        )
        self._pending: dict[str, Session] = {}
        self._connections: dict[str, Connection] = {}
        self._by_session: dict[str, Connection] = {}
        self._roles: dict[str, set[str]] = {}
        self._tracking: dict[str, DeliveryTrackingRecord] = {}
        self._replaying: dict[str, Connection] = {}
        self._jobs: list[ScheduledJob] = []
        self._counters: Counter[str] = Counter()

    def start(self) -> None:
        if self._jobs:
            return
        self._jobs.append(
            self._scheduler.schedule(
                "realtime.cleanup", self._config.cleanup_interval_seconds, self.cleanup
            )
        )
        logger.info("Realtime service started")

    async def stop(self) -> None:
        for job in self._jobs:
            job.cancel()
        self._jobs.clear()
        for connection in list(self._connections.values()):
            await self._drop(connection, "server_shutdown", close_session=True)
        self._pending.clear()
        logger.info("Realtime service stopped")

    def open_session(self, session: Session) -> None:
        """Register a freshly opened socket awaiting authentication."""
        self._pending[session.session_id] = session
        logger.debug("Session opened", extra={"session_id": session.session_id})

    def connection_state(self, session_id: str) -> ConnectionState:
        if session_id in self._by_session:
            return ConnectionState.CONNECTED
        if session_id in self._pending:
            return ConnectionState.AUTHENTICATING
        return ConnectionState.DISCONNECTED

    async def authenticate(self, session: Session, identity: str, role: str) -> Connection:
        """Promote *session* to a connection for *identity*.

        Replays the identity's offline queue in enqueue order before
        emitting :class:`UserConnected`.  Raises ConnectionNotAuthenticated
        when identity or role is missing; the session is told and closed.
        """
        session_id = session.session_id
        self._pending.pop(session_id, None)
        current = self._by_session.get(session_id)
        if current is not None:
            await self._drop(current, "reauthenticated", close_session=False)

        if not identity or not role:
            logger.warning("Authentication rejected", extra={"session_id": session_id})
            await session.emit("auth_error", {"message": "identity and role are required"})
            await session.close()
            raise ConnectionNotAuthenticated(session_id, "identity and role are required")

        existing = self._connections.get(identity)
        if existing is not None:
            await self._drop(existing, "superseded", close_session=True)

        now = self._clock.now()
        connection = Connection(
            identity=identity,
            role=role,
            session=session,
            connected_at=now,
            last_activity=now,
        )
        self._connections[identity] = connection
        self._by_session[session_id] = connection
        self._roles.setdefault(role, set()).add(identity)
        self.directory.register(identity, role)
        connection.heartbeat = self._scheduler.schedule(
            f"realtime.heartbeat:{identity}",
            self._config.heartbeat_interval_seconds,
            lambda: self._check_heartbeat(connection),
        )

        await session.emit(
            "authenticated",
            {"identity": identity, "role": role, "timestamp": to_datetime(now).isoformat()},
        )
        replayed = await self._replay_queue(connection)
        if connection.state is ConnectionState.DISCONNECTED:
            return connection

        self._bus.publish(
            UserConnected(
                occurred_at=to_datetime(now),
                identity=identity,
                role=role,
                session_id=session_id,
                queued_delivered=replayed,
            )
        )
        logger.info(
            "User connected",
            extra={
                "identity": identity,
                "role": role,
                "session_id": session_id,
                "queued_delivered": replayed,
            },
        )
        return connection

    async def disconnect(self, session: Session, reason: str = "client_disconnect") -> None:
        """Handle a client-side close of *session*."""
        self._pending.pop(session.session_id, None)
        connection = self._by_session.get(session.session_id)
        if connection is None:
            return
        await self._drop(connection, reason, close_session=False)

    async def force_disconnect(self, identity: str, reason: str = "forced") -> bool:
        connection = self._connections.get(identity)
        if connection is None:
            return False
        await self._drop(connection, reason, close_session=True)
        return True

    def heartbeat(self, session: Session) -> None:
        """Record client activity (a pong or any inbound message)."""
        self._require_connection(session).last_activity = self._clock.now()

    async def _check_heartbeat(self, connection: Connection) -> None:
        if self._connections.get(connection.identity) is not connection:
            return
        now = self._clock.now()
        timeout = self._config.heartbeat_interval_seconds * self._config.stale_multiplier
        if now - connection.last_activity > timeout:
            logger.warning(
                "Connection stale, closing",
                extra={
                    "identity": connection.identity,
                    "session_id": connection.session_id,
                    "idle_seconds": now - connection.last_activity,
                },
            )
            await self._drop(connection, "heartbeat_timeout", close_session=True)
            return
        try:
            await connection.session.emit("ping", {"timestamp": now})
        except Exception:
            logger.exception(
                "Heartbeat ping failed",
                extra={"identity": connection.identity, "session_id": connection.session_id},
            )
            await self._drop(connection, "transport_error", close_session=False)

    async def _drop(self, connection: Connection, reason: str, *, close_session: bool) -> None:
        identity = connection.identity
        if self._connections.get(identity) is connection:
            del self._connections[identity]
        self._by_session.pop(connection.session_id, None)
        members = self._roles.get(connection.role)
        if members is not None and identity not in self._connections:
            members.discard(identity)
            if not members:
                del self._roles[connection.role]
        connection.state = ConnectionState.DISCONNECTED

        self._bus.publish(
            UserDisconnected(
                occurred_at=to_datetime(self._clock.now()),
                identity=identity,
                role=connection.role,
                session_id=connection.session_id,
                reason=reason,
            )
        )
        logger.info(
            "User disconnected",
            extra={"identity": identity, "session_id": connection.session_id, "reason": reason},
        )

        if close_session:
            try:
                await connection.session.close()
            except Exception:
                logger.warning(
                    "Closing session failed",
                    extra={"session_id": connection.session_id},
                    exc_info=True,
                )
        # Last, since the heartbeat job may be the task running this code.
        if connection.heartbeat is not None:
            connection.heartbeat.cancel()
            connection.heartbeat = None

    def _require_connection(self, session: Session) -> Connection:
        connection = self._by_session.get(session.session_id)
        if connection is None:
            raise ConnectionNotAuthenticated(session.session_id)
        return connection

    async def send_to_recipient(
        self, identity: str, notification: PushNotification
    ) -> RecipientDelivery:
        """Push *notification* to *identity* now, or queue it for later."""
        connection = self._connections.get(identity)
        if connection is None:
            self._enqueue(identity, notification)
            return RecipientDelivery(
                identity=identity, status=RecipientDeliveryStatus.QUEUED, online=False
            )
        if self._replaying.get(identity) is connection:
            # Goes behind the backlog being replayed; the replay loop picks it up.
            self._enqueue(identity, notification)
            return RecipientDelivery(
                identity=identity, status=RecipientDeliveryStatus.QUEUED, online=True
            )

        record = await self._emit_notification(connection, notification)
        if record is None:
            await self._drop(connection, "transport_error", close_session=False)
            self._enqueue(identity, notification)
            self._counters["failed"] += 1
            return RecipientDelivery(
                identity=identity, status=RecipientDeliveryStatus.FAILED, online=True
            )

        self._counters["delivered"] += 1
        return RecipientDelivery(
            identity=identity,
            status=RecipientDeliveryStatus.DELIVERED,
            online=True,
            delivery_id=record.delivery_id,
            requires_ack=record.requires_ack,
        )

    async def broadcast_to_role(
        self, role: str, notification: PushNotification
    ) -> BroadcastResult:
        targets = self._unique(
            [*self.directory.members(role), *sorted(self._roles.get(role, ()))]
        )
        return await self._broadcast(targets, notification, scope=role)

    async def broadcast_to_all(self, notification: PushNotification) -> BroadcastResult:
        targets = self._unique([*self.directory.all(), *self._connections])
        return await self._broadcast(targets, notification, scope="all")

    async def _broadcast(
        self, targets: list[str], notification: PushNotification, *, scope: str
    ) -> BroadcastResult:
        deliveries: list[RecipientDelivery] = []
        batches = list(chunked(targets, self._config.broadcast_batch_size))
        for index, batch in enumerate(batches):
            deliveries.extend(
                await asyncio.gather(
                    *(self.send_to_recipient(identity, notification) for identity in batch)
                )
            )
            if index < len(batches) - 1:
                await self._clock.sleep(self._config.broadcast_batch_delay_seconds)

        result = BroadcastResult.from_deliveries(deliveries)
        self._counters["broadcasts"] += 1
        logger.info(
            "Broadcast finished",
            extra={
                "scope": scope,
                "notification_id": notification.id,
                "total": result.total,
                "online": result.online,
                "offline": result.offline,
                "delivered": result.delivered,
                "failed": result.failed,
            },
        )
        return result

    async def _emit_notification(
        self, connection: Connection, notification: PushNotification
    ) -> DeliveryTrackingRecord | None:
        delivery_id = uuid.uuid4().hex
        requires_ack = notification.requires_ack
        payload = {
            **notification.model_dump(mode="json"),
            "delivery_id": delivery_id,
            "requires_ack": requires_ack,
        }
        try:
            await connection.session.emit("notification", payload)
        except Exception:
            logger.exception(
                "Push emit failed",
                extra={
                    "identity": connection.identity,
                    "session_id": connection.session_id,
                    "notification_id": notification.id,
                },
            )
            return None

        record = DeliveryTrackingRecord(
            delivery_id=delivery_id,
            notification_id=notification.id,
            identity=connection.identity,
            sent_at=self._clock.now(),
            requires_ack=requires_ack,
        )
        self._tracking[delivery_id] = record
        return record

    def _enqueue(self, identity: str, notification: PushNotification) -> None:
        self._queue.enqueue(identity, notification, self._clock.now())
        self._counters["queued"] += 1
        logger.debug(
            "Notification queued for offline recipient",
            extra={"identity": identity, "notification_id": notification.id},
        )

    async def _replay_queue(self, connection: Connection) -> int:
        identity = connection.identity
        batch_size = self._config.replay_batch_size
        replayed = 0
        self._replaying[identity] = connection
        try:
            while entries := self._queue.drain(identity, self._clock.now()):
                for index, entry in enumerate(entries):
                    if replayed and replayed % batch_size == 0:
                        await self._clock.sleep(self._config.replay_batch_delay_seconds)
                    if connection.state is ConnectionState.DISCONNECTED:
                        self._queue.restore(identity, entries[index:])
                        return replayed
                    if await self._emit_notification(connection, entry.notification) is None:
                        self._queue.restore(identity, entries[index:])
                        await self._drop(connection, "transport_error", close_session=False)
                        return replayed
                    replayed += 1
            return replayed
        finally:
            if self._replaying.get(identity) is connection:
                del self._replaying[identity]

    def acknowledge(self, session: Session, delivery_id: str) -> bool:
        """Mark a delivery as acknowledged by its recipient."""
        connection = self._require_connection(session)
        now = self._clock.now()
        connection.last_activity = now
        record = self._tracking_for(connection, delivery_id)
        if record is None:
            return False
        if record.acknowledged_at is None:
            record.acknowledged_at = now
            self._counters["acknowledged"] += 1
        self._bus.publish(
            NotificationAcknowledged(
                occurred_at=to_datetime(now),
                identity=connection.identity,
                delivery_id=delivery_id,
                notification_id=record.notification_id,
                latency_seconds=record.acknowledged_at - record.sent_at,
            )
        )
        return True

    def mark_read(self, session: Session, delivery_id: str) -> bool:
        connection = self._require_connection(session)
        now = self._clock.now()
        connection.last_activity = now
        record = self._tracking_for(connection, delivery_id)
        if record is None:
            return False
        if record.read_at is None:
            record.read_at = now
            self._counters["read"] += 1
        self._bus.publish(
            NotificationRead(
                occurred_at=to_datetime(now),
                identity=connection.identity,
                delivery_id=delivery_id,
                notification_id=record.notification_id,
                read_at=to_datetime(record.read_at),
            )
        )
        return True

    def _tracking_for(
        self, connection: Connection, delivery_id: str
    ) -> DeliveryTrackingRecord | None:
        record = self._tracking.get(delivery_id)
        if record is None or record.identity != connection.identity:
            logger.warning(
                "Unknown delivery for acknowledgment",
                extra={"identity": connection.identity, "delivery_id": delivery_id},
            )
            return None
        return record

    def tracking_record(self, delivery_id: str) -> DeliveryTrackingRecord | None:
        return self._tracking.get(delivery_id)

    def cleanup(self) -> dict[str, int]:
        """Purge expired queue entries and old delivery tracking records."""
        now = self._clock.now()
        purged_queue = self._queue.purge_expired(now)
        cutoff = now - self._config.tracking_retention_seconds
        stale = [d for d, record in self._tracking.items() if record.sent_at < cutoff]
        for delivery_id in stale:
            del self._tracking[delivery_id]
        if purged_queue or stale:
            logger.info(
                "Realtime cleanup",
                extra={"purged_queue_entries": purged_queue, "purged_tracking": len(stale)},
            )
        return {"queue_entries": purged_queue, "tracking_records": len(stale)}

    def is_online(self, identity: str) -> bool:
        return identity in self._connections

    def connected_by_role(self, role: str) -> list[str]:
        return sorted(self._roles.get(role, ()))

    def queued_count(self, identity: str) -> int:
        return self._queue.count(identity)

    def clear_queue(self, identity: str) -> int:
        return self._queue.clear(identity)

    def get_stats(self) -> dict[str, object]:
        return {
            "connected": len(self._connections),
            "authenticating": len(self._pending),
            "by_role": {role: len(members) for role, members in self._roles.items()},
            "queued": self._queue.total(),
            "queued_identities": len(self._queue.identities()),
            "tracking_records": len(self._tracking),
            "known_recipients": len(self.directory),
            "totals": {
                key: self._counters[key]
                for key in ("delivered", "queued", "failed", "acknowledged", "read", "broadcasts")
            },
        }

    @staticmethod
    def _unique(identities: Iterable[str]) -> list[str]:
        return list(dict.fromkeys(identities))
