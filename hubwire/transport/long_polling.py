"""HTTP long-polling transport for hubs without WebSocket support."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiohttp
from yarl import URL

from ..errors import HubConnectionError, HubTimeout
from .base import (
    LONG_POLLING,
    TransportMessage,
    TransportMessageType,
    auth_headers,
    with_connection_token,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

_LOGGER = logging.getLogger(__name__)


class HubLongPollingClient:
    """Long-polling transport built on an aiohttp session.

    Each poll is a GET that the hub holds open until it has data; 204 means
    the hub ended the connection.
    """

    transport_name = LONG_POLLING

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        poll_timeout: float = 100.0,
        timeout: float = 15.0,
    ) -> None:
        self._session = session
        self._poll_timeout = poll_timeout
        self._timeout = timeout
        self._url: URL | None = None
        self._headers: dict[str, str] = {}
        self._running = False

    @property
    def connected(self) -> bool:
        return self._running

    async def connect(
        self,
        url: str,
        *,
        connection_token: str | None = None,
        access_token: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Open the poll channel with an initial poll the hub answers at once."""
        self._url = with_connection_token(url, connection_token)
        self._headers = auth_headers(access_token, headers)
        try:
            async with self._session.get(
                self._url,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    raise HubConnectionError(
                        f"Long polling connect failed with status {resp.status}"
                    )
        except TimeoutError as err:
            raise HubTimeout("Long polling connect timed out") from err
        except aiohttp.ClientError as err:
            raise HubConnectionError("Long polling connect failed") from err
        self._running = True

    async def send(self, data: bytes) -> None:
        """POST hub protocol bytes to the hub."""
        if not self._running or self._url is None:
            raise HubConnectionError("Long polling transport is not connected")
        try:
            async with self._session.post(
                self._url,
                data=data,
                headers={**self._headers, "Content-Type": "text/plain"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    raise HubConnectionError(
                        f"Long polling send failed with status {resp.status}"
                    )
        except TimeoutError as err:
            raise HubTimeout("Long polling send timed out") from err
        except aiohttp.ClientError as err:
            raise HubConnectionError("Long polling send failed") from err

    async def close(self) -> None:
        """Stop polling and tell the hub the connection is gone."""
        if not self._running or self._url is None:
            return
        self._running = False
        try:
            async with self._session.delete(
                self._url,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                _LOGGER.debug("Long polling DELETE answered %s", resp.status)
        except (TimeoutError, aiohttp.ClientError) as err:
            _LOGGER.debug("Long polling DELETE failed: %s", err)

    def __aiter__(self) -> AsyncIterator[TransportMessage]:
        if not self._running:
            raise HubConnectionError("Long polling transport is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[TransportMessage]:
        while self._running and self._url is not None:
            try:
                async with self._session.get(
                    self._url,
                    headers=self._headers,
                    timeout=aiohttp.ClientTimeout(total=self._poll_timeout),
                ) as resp:
                    if resp.status == 204:
                        self._running = False
                        yield TransportMessage(type=TransportMessageType.CLOSED)
                        return
                    if resp.status != 200:
                        self._running = False
                        yield TransportMessage(
                            type=TransportMessageType.ERROR,
                            error=f"Poll failed with status {resp.status}",
                        )
                        return
                    body = await resp.read()
            except TimeoutError:
                # Hub held the poll past our timeout; poll again
                continue
            except aiohttp.ClientError as err:
                self._running = False
                yield TransportMessage(type=TransportMessageType.ERROR, error=str(err))
                return

            if body:
                yield TransportMessage(TransportMessageType.DATA, body)

        yield TransportMessage(type=TransportMessageType.CLOSED)
