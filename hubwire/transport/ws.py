"""WebSocket helpers for the hub transport."""

from __future__ import annotations

import asyncio

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)
from yarl import URL

from ..errors import (
    HubConnectionError,
    HubHandshakeError,
    HubTimeout,
)

_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


def to_websocket_url(url: str | URL) -> URL:
    """Map an http(s) hub URL onto its ws(s) counterpart."""
    target = URL(str(url))
    scheme = _SCHEMES.get(target.scheme.lower())
    if scheme is None:
        raise ValueError(f"Unsupported URL scheme '{target.scheme}'")
    return target.with_scheme(scheme)


async def connect_websocket(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket to ``url``.

    Uses the websockets library which properly implements RFC 6455 frame masking.
    """
    try:
        return await asyncio.wait_for(
            connect(
                url,
                additional_headers=headers or None,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise HubTimeout("WebSocket connection timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise HubHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise HubConnectionError("WebSocket connection failed") from err
