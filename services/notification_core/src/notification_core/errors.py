"""Exception taxonomy for the notification core."""


class NotificationCoreError(Exception):
    """Base class for every error raised by the core."""


class ProviderUnavailable(NotificationCoreError):
    """No healthy provider is available for a channel."""

    def __init__(self, channel: str) -> None:
        super().__init__(f"No healthy {channel} providers available")
        self.channel = channel


class RateLimitExceeded(NotificationCoreError):
    """A provider's per-second/minute/day window is exhausted."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Rate limit exceeded for provider {provider}")
        self.provider = provider


class InvalidRecipient(NotificationCoreError):
    """The target address or phone number is malformed."""

    def __init__(self, recipient: str, reason: str) -> None:
        super().__init__(f"Invalid recipient {recipient!r}: {reason}")
        self.recipient = recipient
        self.reason = reason


class DeliveryFailed(NotificationCoreError):
    """Primary and backup providers both failed.

    The caller may retry later; the core performs no further retries.
    """

    def __init__(self, channel: str, last_error: BaseException | None) -> None:
        detail = str(last_error) if last_error is not None else "no provider attempted"
        super().__init__(f"All {channel} providers failed. Last error: {detail}")
        self.channel = channel
        self.last_error = last_error


class CacheComputeFailed(NotificationCoreError):
    """The caller-supplied compute function raised; nothing was cached."""

    def __init__(self, tier: str, key: str, original: BaseException) -> None:
        super().__init__(f"Computing {tier} cache entry {key!r} failed: {original}")
        self.tier = tier
        self.key = key
        self.original = original


class ConnectionNotAuthenticated(NotificationCoreError):
    """A realtime operation was attempted on a session that is not authenticated."""

    def __init__(self, session_id: str, reason: str = "session is not authenticated") -> None:
        super().__init__(f"Session {session_id}: {reason}")
        self.session_id = session_id


class TemplateNotFound(NotificationCoreError):
    """No template definition exists for the id and channel."""

    def __init__(self, template_id: str, channel: str) -> None:
        super().__init__(f"Template {template_id!r} not found for channel {channel}")
        self.template_id = template_id
        self.channel = channel
