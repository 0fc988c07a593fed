from enum import StrEnum


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


ACK_PRIORITIES: frozenset[Priority] = frozenset({Priority.HIGH, Priority.CRITICAL})


class DeliveryStatus(StrEnum):
    """Provider-side lifecycle of a message, as reported by webhooks."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"
    UNSUBSCRIBED = "unsubscribed"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"


class RecipientDeliveryStatus(StrEnum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    FAILED = "failed"


class CacheTier(StrEnum):
    RAW = "raw"
    COMPILED = "compiled"
    RENDERED = "rendered"
    METADATA = "metadata"
