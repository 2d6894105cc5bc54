"""Tests for NegotiationClient."""

from __future__ import annotations

from unittest.mock import MagicMock

import aiohttp
import pytest

from hubwire.errors import (
    AuthError,
    HubConnectionError,
    HubResponseError,
    HubTimeout,
    NegotiationError,
    RedirectLoopError,
)
from hubwire.http import NegotiationClient, negotiate_url
from hubwire.tokens import Credential

from .conftest import create_mock_response

HUB_URL = "https://hub.example.com/chat"

NEGOTIATE_BODY = {
    "connectionId": "abc",
    "connectionToken": "tok-123",
    "negotiateVersion": 1,
    "availableTransports": [
        {"transport": "WebSockets", "transferFormats": ["Text", "Binary"]},
        {"transport": "ServerSentEvents", "transferFormats": ["Text"]},
        {"transport": "LongPolling", "transferFormats": ["Binary"]},
    ],
}


class TestNegotiateUrl:
    """Tests for negotiate_url()."""

    def test_appends_path_and_version(self):
        assert str(negotiate_url(HUB_URL)) == (
            "https://hub.example.com/chat/negotiate?negotiateVersion=1"
        )

    def test_keeps_existing_query(self):
        url = negotiate_url("https://hub.example.com/chat/?room=5")
        assert url.path == "/chat/negotiate"
        assert url.query["room"] == "5"
        assert url.query["negotiateVersion"] == "1"


class TestNegotiate:
    """Tests for NegotiationClient.negotiate()."""

    @pytest.mark.asyncio
    async def test_success(self, mock_session: MagicMock):
        mock_session.post.return_value = create_mock_response(200, json_data=NEGOTIATE_BODY)
        client = NegotiationClient(mock_session)

        result = await client.negotiate(HUB_URL, Credential("secret"))

        assert result.connection_id == "abc"
        assert result.connection_token == "tok-123"
        assert result.transport_id == "tok-123"
        assert result.available_transports == ("WebSockets", "ServerSentEvents")
        assert result.url == HUB_URL
        assert result.access_token == "secret"

        call = mock_session.post.call_args
        assert str(call.args[0]).endswith("/chat/negotiate?negotiateVersion=1")
        assert call.kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert isinstance(call.kwargs["timeout"], aiohttp.ClientTimeout)

    @pytest.mark.asyncio
    async def test_extra_headers_sent_with_bearer(self, mock_session: MagicMock):
        mock_session.post.return_value = create_mock_response(200, json_data=NEGOTIATE_BODY)

        await NegotiationClient(mock_session).negotiate(
            HUB_URL,
            Credential("secret"),
            headers={"X-Client": "kiosk", "Authorization": "Basic nope"},
        )

        assert mock_session.post.call_args.kwargs["headers"] == {
            "X-Client": "kiosk",
            "Authorization": "Bearer secret",
        }

    @pytest.mark.asyncio
    async def test_version_zero_uses_connection_id(self, mock_session: MagicMock):
        mock_session.post.return_value = create_mock_response(
            200,
            json_data={"connectionId": "abc", "availableTransports": ["WebSocket"]},
        )
        result = await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

        assert result.connection_token is None
        assert result.transport_id == "abc"
        assert result.available_transports == ("WebSockets",)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_rejected(self, mock_session: MagicMock, status: int):
        mock_session.post.return_value = create_mock_response(status)

        with pytest.raises(AuthError) as exc_info:
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

        assert exc_info.value.status == status
        assert mock_session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error(self, mock_session: MagicMock):
        mock_session.post.return_value = create_mock_response(500)

        with pytest.raises(HubResponseError) as exc_info:
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

        assert exc_info.value.status == 500
        assert isinstance(exc_info.value, NegotiationError)

    @pytest.mark.asyncio
    async def test_invalid_json(self, mock_session: MagicMock):
        response = create_mock_response(200)
        response.json.side_effect = ValueError("bad json")
        mock_session.post.return_value = response

        with pytest.raises(NegotiationError, match="not valid JSON"):
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("body", "match"),
        [
            ({"error": "Hub is shutting down"}, "shutting down"),
            ({"ProtocolVersion": "1.5", "ConnectionId": "x"}, "ASP.NET SignalR"),
            ({"negotiateVersion": 1}, "connectionId"),
            ({"connectionId": "abc", "negotiateVersion": 1}, "connectionToken"),
            ({"url": "https://other"}, "accessToken"),
        ],
    )
    async def test_bad_bodies(self, mock_session: MagicMock, body: dict, match: str):
        mock_session.post.return_value = create_mock_response(200, json_data=body)

        with pytest.raises(NegotiationError, match=match):
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

    @pytest.mark.asyncio
    async def test_redirect_followed_once(self, mock_session: MagicMock):
        mock_session.post.side_effect = [
            create_mock_response(
                200, json_data={"url": "https://edge.example.com/chat", "accessToken": "edge"}
            ),
            create_mock_response(200, json_data=NEGOTIATE_BODY),
        ]

        result = await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

        assert result.url == "https://edge.example.com/chat"
        assert result.access_token == "edge"
        second = mock_session.post.call_args_list[1]
        assert str(second.args[0]).startswith("https://edge.example.com/chat/negotiate")
        assert second.kwargs["headers"] == {"Authorization": "Bearer edge"}

    @pytest.mark.asyncio
    async def test_second_redirect_is_a_loop(self, mock_session: MagicMock):
        redirect = {"url": "https://edge.example.com/chat", "accessToken": "edge"}
        mock_session.post.side_effect = [
            create_mock_response(200, json_data=redirect),
            create_mock_response(200, json_data=redirect),
        ]

        with pytest.raises(RedirectLoopError):
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

    @pytest.mark.asyncio
    async def test_timeout(self, mock_session: MagicMock):
        mock_session.post.side_effect = TimeoutError()

        with pytest.raises(HubTimeout):
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))

    @pytest.mark.asyncio
    async def test_client_error(self, mock_session: MagicMock):
        mock_session.post.side_effect = aiohttp.ClientError("refused")

        with pytest.raises(HubConnectionError):
            await NegotiationClient(mock_session).negotiate(HUB_URL, Credential("t"))
