"""Hub transports."""

from __future__ import annotations

from .base import (
    LONG_POLLING,
    WEBSOCKETS,
    TransportMessage,
    TransportMessageType,
    TransportSocket,
    with_connection_token,
)
from .long_polling import HubLongPollingClient
from .ws import connect_websocket, to_websocket_url
from .ws_client import HubWsClient

__all__ = [
    "LONG_POLLING",
    "WEBSOCKETS",
    "HubLongPollingClient",
    "HubWsClient",
    "TransportMessage",
    "TransportMessageType",
    "TransportSocket",
    "connect_websocket",
    "to_websocket_url",
    "with_connection_token",
]
