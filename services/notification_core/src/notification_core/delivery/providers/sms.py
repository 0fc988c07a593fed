"""SMS transports, phone number normalization and body shortening."""

import logging
import re
import uuid
from collections.abc import Mapping

from notification_core.content import RenderedContent
from notification_core.delivery.providers.base import SMSTransport, TransportReceipt
from notification_core.errors import InvalidRecipient

logger = logging.getLogger(__name__)

_NON_DIAL_CHARS = re.compile(r"[^\d+]")
_INTERNATIONAL = re.compile(r"^\+\d{10,15}$")
_NATIONAL = re.compile(r"^\d{10,15}$")


def normalize_phone_number(number: str, default_country_code: str = "1") -> str:
    """Return *number* as ``+<digits>`` or raise InvalidRecipient.

    Accepts 10-15 digits, optionally prefixed with ``+``; separators are
    stripped.  National numbers get *default_country_code* prepended.
    """
    cleaned = _NON_DIAL_CHARS.sub("", number or "")
    if _INTERNATIONAL.match(cleaned):
        return cleaned
    if _NATIONAL.match(cleaned):
        return f"+{default_country_code}{cleaned}"
    raise InvalidRecipient(
        number, "phone number must be 10-15 digits, optionally starting with +"
    )


def shorten_message(message: str, max_length: int = 160) -> str:
    """Fit *message* into one SMS segment.

    Cuts at the last word boundary when that keeps at least 80% of the
    allowed length, otherwise hard-truncates; an ellipsis marks the cut.
    """
    if not message or len(message) <= max_length:
        return message or ""

    truncated = message[: max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


class LoggingSMSTransport(SMSTransport):
    """Stub SMS transport that logs instead of sending.

    Ready for integration with Twilio/AWS SNS: replace the send()
    body with actual API calls.
    """

    def __init__(self, name: str = "sms-stub") -> None:
        self._name = name

    async def send(
        self,
        address: str,
        content: RenderedContent,
        metadata: Mapping[str, str],
    ) -> TransportReceipt:
        message_id = f"{self._name}-{uuid.uuid4().hex}"
        logger.info(
            "SMS sent (stub)",
            extra={
                "provider": self._name,
                "to": address,
                "body_preview": content.preview(),
                "message_id": message_id,
            },
        )
        return TransportReceipt(message_id=message_id, cost=0.0)
