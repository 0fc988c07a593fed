"""Email transports, address validation and open/click tracking."""

import logging
import re
import uuid
from collections.abc import Mapping
from urllib.parse import quote

from pydantic import EmailStr, TypeAdapter, ValidationError

from notification_core.content import RenderedContent
from notification_core.delivery.providers.base import EmailTransport, TransportReceipt
from notification_core.errors import InvalidRecipient

logger = logging.getLogger(__name__)

_EMAIL_ADAPTER: TypeAdapter[str] = TypeAdapter(EmailStr)


def validate_email_address(address: str) -> str:
    """Return the normalized address or raise InvalidRecipient."""
    try:
        return _EMAIL_ADAPTER.validate_python(address.strip())
    except (ValidationError, AttributeError) as exc:
        raise InvalidRecipient(str(address), "not a valid email address") from exc


def build_headers(metadata: Mapping[str, str]) -> dict[str, str]:
    """Render metadata as ``X-`` prefixed mail headers."""
    return {f"X-{key}": str(value) for key, value in metadata.items()}


_LINK = re.compile(r"""(<a\s+(?:[^>]*?\s+)?href=)(["'])(.*?)\2""", re.IGNORECASE)
_BODY_END = re.compile(r"</body>", re.IGNORECASE)
_UNTRACKED = ("/track/", "/unsubscribe", "mailto:")


def add_email_tracking(html: str, base_url: str, tracking_id: str) -> str:
    """Add an open pixel to *html* and route its links through the click tracker.

    The pixel goes right before ``</body>`` or at the end.  Links that are
    already tracked, unsubscribe links and ``mailto:`` links stay as they are.
    """
    base = base_url.rstrip("/")
    tracking_id = quote(tracking_id, safe="")

    def _trackable(match: re.Match[str]) -> str:
        prefix, mark, url = match.groups()
        if any(marker in url for marker in _UNTRACKED):
            return match.group(0)
        tracked = f"{base}/track/click/{tracking_id}?url={quote(url, safe='')}"
        return f"{prefix}{mark}{tracked}{mark}"

    html = _LINK.sub(_trackable, html)
    pixel = (
        f'<img src="{base}/track/open/{tracking_id}.png" '
        'width="1" height="1" style="display:none;" alt="" />'
    )
    if _BODY_END.search(html):
        return _BODY_END.sub(lambda m: pixel + m.group(0), html, count=1)
    return html + pixel


class LoggingEmailTransport(EmailTransport):
    """Stub email transport that logs instead of sending.

    Ready for integration with SMTP/SendGrid/SES: replace the send()
    body with actual API calls.
    """

    def __init__(self, name: str = "email-stub", sender: str = "noreply@example.com") -> None:
        self._name = name
        self._sender = sender

    async def send(
        self,
        address: str,
        content: RenderedContent,
        metadata: Mapping[str, str],
    ) -> TransportReceipt:
        subject = content.subject or "(no subject)"
        message_id = f"{self._name}-{uuid.uuid4().hex}"
        logger.info(
            "Email sent (stub)",
            extra={
                "provider": self._name,
                "from": self._sender,
                "to": address,
                "subject": subject,
                "message_id": message_id,
                "headers": build_headers(metadata),
            },
        )
        return TransportReceipt(message_id=message_id)
