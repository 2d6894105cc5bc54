"""WebSocket transport for hub connections."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import HubConnectionError
from .base import (
    WEBSOCKETS,
    TransportMessage,
    TransportMessageType,
    auth_headers,
    with_connection_token,
)
from .ws import connect_websocket, to_websocket_url

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

_LOGGER = logging.getLogger(__name__)


class HubWsClient:
    """Wrapper around the websockets library speaking text frames."""

    transport_name = WEBSOCKETS

    def __init__(self, *, ping_interval: int | None = 20, timeout: float = 15.0) -> None:
        self._ping_interval = ping_interval
        self._timeout = timeout
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        connection_token: str | None = None,
        access_token: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Connect to the hub WebSocket endpoint."""
        ws_url = with_connection_token(to_websocket_url(url), connection_token)
        _LOGGER.debug("[%s] Opening WebSocket", ws_url.with_query(None))
        self._ws = await connect_websocket(
            str(ws_url),
            headers=auth_headers(access_token, headers),
            ping_interval=self._ping_interval,
            timeout=self._timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def send(self, data: bytes) -> None:
        """Send hub protocol bytes as one text frame."""
        if self._ws is None:
            raise HubConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(data.decode("utf-8"))
        except ConnectionClosed as err:
            raise HubConnectionError("WebSocket closed while sending") from err

    def __aiter__(self) -> AsyncIterator[TransportMessage]:
        if self._ws is None:
            raise HubConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[TransportMessage]:
        ws = self._ws
        if ws is None:
            raise HubConnectionError("WebSocket is not connected")

        try:
            async for msg in ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield TransportMessage(type=TransportMessageType.CLOSED)
        except Exception as err:
            yield TransportMessage(type=TransportMessageType.ERROR, error=str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield TransportMessage(type=TransportMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> TransportMessage | None:
        if isinstance(msg, str):
            return TransportMessage(TransportMessageType.DATA, msg.encode("utf-8"))
        if isinstance(msg, (bytes, bytearray)):
            return TransportMessage(TransportMessageType.DATA, bytes(msg))
        _LOGGER.debug("Skipping unexpected frame of type %s", type(msg).__name__)
        return None
