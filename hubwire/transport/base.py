"""Transport contract shared by the WebSocket and long-polling clients."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from yarl import URL

WEBSOCKETS = "WebSockets"
LONG_POLLING = "LongPolling"


class TransportMessageType(Enum):
    """Normalized transport event types."""

    DATA = "data"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TransportMessage:
    """Normalized transport event.

    ``data`` holds raw hub protocol bytes for DATA events; ``error``
    describes the failure for ERROR events.
    """

    type: TransportMessageType
    data: bytes | None = None
    error: str | None = None


class TransportSocket(Protocol):
    """Bidirectional byte pipe to the hub.

    Iteration yields DATA events until the pipe ends, then exactly one
    CLOSED or ERROR event.
    """

    transport_name: str

    async def connect(
        self,
        url: str,
        *,
        connection_token: str | None = None,
        access_token: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None: ...

    async def send(self, data: bytes) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[TransportMessage]: ...


def with_connection_token(url: str | URL, connection_token: str | None) -> URL:
    """Add the ``id`` query parameter the hub uses to find the connection."""
    target = URL(str(url))
    if not connection_token:
        return target
    return target.update_query(id=connection_token)


def auth_headers(
    access_token: str | None, extra: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Merge caller headers with the Bearer header, which wins on a clash."""
    headers = dict(extra or {})
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers
