"""Pytest configuration and fixtures for hubwire tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from hubwire.protocol import RECORD_SEPARATOR, HubMessage, parse_message
from hubwire.transport import TransportMessage, TransportMessageType

HANDSHAKE_PREFIX = b'{"protocol"'


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


@pytest.fixture
def mock_response() -> AsyncMock:
    """Create a mock aiohttp ClientResponse."""
    response = AsyncMock()
    response.__aenter__.return_value = response
    response.__aexit__.return_value = None
    return response


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
    read_data: bytes | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call
        read_data: Data to return from read() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data
    if read_data is not None:
        response.read.return_value = read_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


class FakeTransport:
    """In-memory transport that answers the handshake by itself.

    Non-handshake sends wait on ``send_gate``; clear it to stall the writer.
    """

    transport_name = "WebSockets"

    def __init__(self, *, handshake_reply: bytes | None = b"{}\x1e") -> None:
        self.sent: list[bytes] = []
        self.connect_calls: list[dict[str, Any]] = []
        self.closed = False
        self.send_gate = asyncio.Event()
        self.send_gate.set()
        self._handshake_reply = handshake_reply
        self._inbox: asyncio.Queue[TransportMessage] = asyncio.Queue()

    async def connect(
        self,
        url: str,
        *,
        connection_token: str | None = None,
        access_token: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.connect_calls.append(
            {
                "url": url,
                "connection_token": connection_token,
                "access_token": access_token,
                "headers": dict(headers or {}),
            }
        )

    async def send(self, data: bytes) -> None:
        if data.startswith(HANDSHAKE_PREFIX):
            self.sent.append(data)
            if self._handshake_reply is not None:
                self.feed(self._handshake_reply)
            return
        await self.send_gate.wait()
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(TransportMessage(TransportMessageType.CLOSED))

    def feed(self, data: bytes) -> None:
        """Deliver raw bytes as if the hub sent them."""
        self._inbox.put_nowait(TransportMessage(TransportMessageType.DATA, data))

    def drop(self, error: str | None = None) -> None:
        """End the stream the way a broken network would."""
        if error is None:
            self._inbox.put_nowait(TransportMessage(TransportMessageType.CLOSED))
        else:
            self._inbox.put_nowait(TransportMessage(TransportMessageType.ERROR, error=error))

    def sent_messages(self) -> list[HubMessage]:
        """Decode every non-handshake frame sent so far."""
        messages: list[HubMessage] = []
        for data in self.sent:
            if data.startswith(HANDSHAKE_PREFIX):
                continue
            for frame in data.split(RECORD_SEPARATOR):
                if frame:
                    message = parse_message(frame)
                    if message is not None:
                        messages.append(message)
        return messages

    def __aiter__(self) -> AsyncIterator[TransportMessage]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[TransportMessage]:
        while True:
            message = await self._inbox.get()
            yield message
            if message.type is not TransportMessageType.DATA:
                return


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("Condition not reached in time")
        await asyncio.sleep(0.005)
