"""In-process publish/subscribe channel for typed core events."""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import TypeVar

from shared.events.typed import AnyEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=AnyEvent)


class EventBus:
    """Synchronous fan-out of events to subscribed handlers.

    Handlers run in subscription order on the publisher's loop iteration.
    A failing handler is logged and skipped so publishers are never
    interrupted by subscribers.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[type, list[Callable[..., None]]] = defaultdict(
            list
        )
        self._catch_all: list[Callable[[AnyEvent], None]] = []

    def subscribe(self, event_cls: type[E], handler: Callable[[E], None]) -> None:
        self._handlers[event_cls].append(handler)

    def subscribe_all(self, handler: Callable[[AnyEvent], None]) -> None:
        self._catch_all.append(handler)

    def unsubscribe(self, event_cls: type[E], handler: Callable[[E], None]) -> None:
        handlers = self._handlers.get(event_cls)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: AnyEvent) -> None:
        for handler in [*self._handlers.get(type(event), ()), *self._catch_all]:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={
                        "event_type": event.event_type,
                        "event_id": str(event.event_id),
                    },
                )
