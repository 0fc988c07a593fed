from notification_core.realtime.directory import RecipientDirectory
from notification_core.realtime.models import (
    BroadcastResult,
    Connection,
    DeliveryTrackingRecord,
    PushNotification,
    RecipientDelivery,
)
from notification_core.realtime.offline_queue import OfflineQueue, QueuedNotification
from notification_core.realtime.service import RealtimeService
from notification_core.realtime.session import Session

__all__ = [
    "BroadcastResult",
    "Connection",
    "DeliveryTrackingRecord",
    "OfflineQueue",
    "PushNotification",
    "QueuedNotification",
    "RealtimeService",
    "RecipientDelivery",
    "RecipientDirectory",
    "Session",
]
