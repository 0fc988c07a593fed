"""Bounded, TTL-stamped per-recipient queues for offline delivery."""

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from notification_core.realtime.models import PushNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueuedNotification:
    notification: PushNotification
    queued_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class OfflineQueue:
    """FIFO queue per identity, capped at *capacity* entries.

    When full, the oldest entry is dropped to make room.  Expired entries
    are never handed out and are removed by :meth:`purge_expired`.
    """

    def __init__(self, capacity: int = 100, retention_seconds: float = 7 * 24 * 3600) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity!r}")
        self.capacity = capacity
        self.retention_seconds = retention_seconds
        self._queues: dict[str, deque[QueuedNotification]] = {}

    def enqueue(
        self, identity: str, notification: PushNotification, now: float
    ) -> QueuedNotification:
        queue = self._queues.setdefault(identity, deque(maxlen=self.capacity))
        if len(queue) == self.capacity:
            dropped = queue[0]
            logger.warning(
                "Offline queue full, dropping oldest notification",
                extra={
                    "identity": identity,
                    "dropped_notification_id": dropped.notification.id,
                },
            )
        entry = QueuedNotification(
            notification=notification,
            queued_at=now,
            expires_at=now + self.retention_seconds,
        )
        queue.append(entry)
        return entry

    def drain(self, identity: str, now: float) -> list[QueuedNotification]:
        """Remove and return the unexpired entries of *identity*, oldest first."""
        queue = self._queues.pop(identity, None)
        if not queue:
            return []
        return [entry for entry in queue if not entry.expired(now)]

    def restore(self, identity: str, entries: Iterable[QueuedNotification]) -> None:
        """Put undelivered *entries* back in front of anything queued since."""
        entries = list(entries)
        if not entries:
            return
        queue = self._queues.get(identity, deque())
        merged = deque([*entries, *queue], maxlen=self.capacity)
        self._queues[identity] = merged

    def count(self, identity: str) -> int:
        return len(self._queues.get(identity, ()))

    def total(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def identities(self) -> list[str]:
        return list(self._queues)

    def clear(self, identity: str) -> int:
        queue = self._queues.pop(identity, None)
        return len(queue) if queue else 0

    def purge_expired(self, now: float) -> int:
        purged = 0
        for identity in list(self._queues):
            queue = self._queues[identity]
            kept = deque(
                (entry for entry in queue if not entry.expired(now)),
                maxlen=self.capacity,
            )
            purged += len(queue) - len(kept)
            if kept:
                self._queues[identity] = kept
            else:
                del self._queues[identity]
        return purged
