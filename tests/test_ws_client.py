"""Tests for HubWsClient WebSocket transport."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosed, InvalidURI

from hubwire.errors import HubConnectionError, HubHandshakeError, HubTimeout
from hubwire.transport.base import TransportMessage, TransportMessageType
from hubwire.transport.ws import connect_websocket, to_websocket_url
from hubwire.transport.ws_client import HubWsClient

HUB_URL = "https://hub.example.com/chat"


class TestTransportMessage:
    """Tests for TransportMessage dataclass."""

    def test_enum_values(self):
        assert TransportMessageType.DATA.value == "data"
        assert TransportMessageType.CLOSED.value == "closed"
        assert TransportMessageType.ERROR.value == "error"

    def test_message_is_frozen(self):
        msg = TransportMessage(type=TransportMessageType.DATA, data=b"x")
        with pytest.raises(AttributeError):
            msg.data = b"y"  # type: ignore[misc]


class TestToWebsocketUrl:
    """Tests for to_websocket_url()."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("http://hub/chat", "ws://hub/chat"),
            ("https://hub/chat?x=1", "wss://hub/chat?x=1"),
            ("wss://hub/chat", "wss://hub/chat"),
        ],
    )
    def test_schemes(self, url, expected):
        assert str(to_websocket_url(url)) == expected

    def test_rejects_other_schemes(self):
        with pytest.raises(ValueError):
            to_websocket_url("ftp://hub/chat")


class TestConnectWebsocket:
    """Tests for connect_websocket() error mapping."""

    @pytest.mark.asyncio
    async def test_timeout(self):
        with patch(
            "hubwire.transport.ws.connect",
            side_effect=TimeoutError(),
        ):
            with pytest.raises(HubTimeout):
                await connect_websocket("wss://hub/chat")

    @pytest.mark.asyncio
    async def test_invalid_uri(self):
        with patch(
            "hubwire.transport.ws.connect",
            side_effect=InvalidURI("bad", "not a ws uri"),
        ):
            with pytest.raises(HubHandshakeError):
                await connect_websocket("wss://hub/chat")

    @pytest.mark.asyncio
    async def test_os_error(self):
        with patch(
            "hubwire.transport.ws.connect",
            side_effect=OSError("refused"),
        ):
            with pytest.raises(HubConnectionError):
                await connect_websocket("wss://hub/chat")


class TestHubWsClientConnect:
    """Tests for HubWsClient.connect()."""

    @pytest.mark.asyncio
    async def test_connect_success(self):
        mock_ws = AsyncMock()

        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ) as mock_connect:
            client = HubWsClient()
            await client.connect(HUB_URL, connection_token="tok", access_token="secret")

            mock_connect.assert_called_once_with(
                "wss://hub.example.com/chat?id=tok",
                headers={"Authorization": "Bearer secret"},
                ping_interval=20,
                timeout=15.0,
            )
            assert client._ws is mock_ws
            assert client.connected

    @pytest.mark.asyncio
    async def test_connect_custom_params(self):
        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=AsyncMock(),
        ) as mock_connect:
            client = HubWsClient(ping_interval=30, timeout=5.0)
            await client.connect("http://10.0.0.1:8080/hub")

            mock_connect.assert_called_once_with(
                "ws://10.0.0.1:8080/hub",
                headers={},
                ping_interval=30,
                timeout=5.0,
            )

    @pytest.mark.asyncio
    async def test_connect_sends_extra_headers(self):
        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=AsyncMock(),
        ) as mock_connect:
            client = HubWsClient()
            await client.connect(
                HUB_URL, access_token="secret", headers={"X-Client": "kiosk"}
            )

            assert mock_connect.call_args.kwargs["headers"] == {
                "X-Client": "kiosk",
                "Authorization": "Bearer secret",
            }

    @pytest.mark.asyncio
    async def test_connect_propagates_errors(self):
        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            side_effect=HubConnectionError("Connection failed"),
        ):
            client = HubWsClient()
            with pytest.raises(HubConnectionError, match="Connection failed"):
                await client.connect(HUB_URL)


class TestHubWsClientClose:
    """Tests for HubWsClient.close()."""

    @pytest.mark.asyncio
    async def test_close_connected(self):
        mock_ws = AsyncMock()

        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = HubWsClient()
            await client.connect(HUB_URL)
            await client.close()

            mock_ws.close.assert_called_once()
            assert not client.connected

    @pytest.mark.asyncio
    async def test_close_not_connected(self):
        client = HubWsClient()
        await client.close()


class TestHubWsClientSend:
    """Tests for HubWsClient.send()."""

    @pytest.mark.asyncio
    async def test_send_text_frame(self):
        mock_ws = AsyncMock()

        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = HubWsClient()
            await client.connect(HUB_URL)
            await client.send(b'{"type":6}\x1e')

            mock_ws.send.assert_called_once_with('{"type":6}\x1e')

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        client = HubWsClient()
        with pytest.raises(HubConnectionError, match="not connected"):
            await client.send(b"data")

    @pytest.mark.asyncio
    async def test_send_after_peer_closed(self):
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosed(None, None)

        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = HubWsClient()
            await client.connect(HUB_URL)
            with pytest.raises(HubConnectionError, match="closed"):
                await client.send(b"data")


class AsyncIteratorMock:
    """Helper class to create a proper async iterator mock."""

    def __init__(self, items: list, *, raise_on_iter: Exception | None = None):
        self._items = items
        self._index = 0
        self._raise_on_iter = raise_on_iter
        self.close = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._items):
            if self._raise_on_iter is not None:
                raise self._raise_on_iter
            raise StopAsyncIteration
        item = self._items[self._index]
        self._index += 1
        return item


class TestHubWsClientIteration:
    """Tests for HubWsClient async iteration."""

    async def _collect(self, mock_ws) -> list[TransportMessage]:
        with patch(
            "hubwire.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = HubWsClient()
            await client.connect(HUB_URL)
            return [msg async for msg in client]

    @pytest.mark.asyncio
    async def test_iter_not_connected(self):
        client = HubWsClient()
        with pytest.raises(HubConnectionError, match="not connected"):
            client.__aiter__()

    @pytest.mark.asyncio
    async def test_iter_text_and_binary(self):
        messages = await self._collect(AsyncIteratorMock(["one\x1e", b"two\x1e"]))

        assert messages == [
            TransportMessage(TransportMessageType.DATA, b"one\x1e"),
            TransportMessage(TransportMessageType.DATA, b"two\x1e"),
            TransportMessage(TransportMessageType.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_iter_connection_closed(self):
        messages = await self._collect(
            AsyncIteratorMock(["hi"], raise_on_iter=ConnectionClosed(None, None))
        )

        assert [m.type for m in messages] == [
            TransportMessageType.DATA,
            TransportMessageType.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_iter_unexpected_error(self):
        messages = await self._collect(
            AsyncIteratorMock([], raise_on_iter=RuntimeError("Unexpected"))
        )

        assert len(messages) == 1
        assert messages[0].type == TransportMessageType.ERROR
        assert messages[0].error == "Unexpected"

    @pytest.mark.asyncio
    async def test_iter_skips_unknown_frames(self):
        messages = await self._collect(AsyncIteratorMock([object(), "ok"]))

        assert messages[0] == TransportMessage(TransportMessageType.DATA, b"ok")
        assert len(messages) == 2
