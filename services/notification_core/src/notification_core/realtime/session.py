from collections.abc import Mapping
from typing import Any, Protocol


class Session(Protocol):
    """A live socket session of one client.

    The transport behind it (websocket, socket.io, ...) is outside the core;
    ``emit`` raises when the peer is gone.
    """

    @property
    def session_id(self) -> str: ...

    async def emit(self, event: str, payload: Mapping[str, Any]) -> None: ...

    async def close(self) -> None: ...
