"""HTTP negotiation with a hub endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from collections.abc import Mapping
from typing import Any

import aiohttp
from yarl import URL

from .errors import (
    AuthError,
    HubConnectionError,
    HubResponseError,
    HubTimeout,
    NegotiationError,
    RedirectLoopError,
)
from .tokens import Credential

_LOGGER = logging.getLogger(__name__)

NEGOTIATE_VERSION = 1
TEXT_TRANSFER_FORMAT = "Text"

# Older servers and some docs spell the transport in the singular
_TRANSPORT_ALIASES = {"WebSocket": "WebSockets"}


@dataclass(frozen=True, slots=True)
class NegotiationResult:
    """Outcome of a successful negotiation.

    Attributes:
        connection_id: Server issued connection identifier.
        connection_token: Token the transport must send as ``id``; None on
            negotiate version 0 servers, which use the connection id.
        available_transports: Transport names that support the text format.
        negotiate_version: Version the server answered with.
        url: Hub URL to open the transport against (changes on redirect).
        access_token: Token handed out by a redirect, if any.
    """

    connection_id: str
    connection_token: str | None
    available_transports: tuple[str, ...]
    negotiate_version: int
    url: str
    access_token: str | None = None

    @property
    def transport_id(self) -> str:
        """Identifier the transport sends with each request."""
        return self.connection_token or self.connection_id


@dataclass(frozen=True, slots=True)
class _Redirect:
    url: str
    access_token: str


def negotiate_url(base_url: str) -> URL:
    """Build the negotiate endpoint for a hub URL, keeping its query."""
    url = URL(base_url)
    path = url.path.rstrip("/") + "/negotiate"
    # with_path drops the query
    return (
        url.with_path(path)
        .with_query(url.query)
        .update_query(negotiateVersion=NEGOTIATE_VERSION)
    )


def _parse_transports(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise NegotiationError("Field 'availableTransports' must be a list")

    names: list[str] = []
    for entry in raw:
        if isinstance(entry, str):
            name = entry
        elif isinstance(entry, dict):
            name = entry.get("transport")
            formats = entry.get("transferFormats") or []
            if not isinstance(name, str) or TEXT_TRANSFER_FORMAT not in formats:
                continue
        else:
            continue
        names.append(_TRANSPORT_ALIASES.get(name, name))
    return tuple(names)


class NegotiationClient:
    """Runs the negotiate exchange that precedes every transport connection."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._timeout = timeout

    @staticmethod
    def _auth_headers(
        token: str | None, extra: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        headers = dict(extra or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def negotiate(
        self,
        base_url: str,
        credential: Credential,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> NegotiationResult:
        """Negotiate a connection with the hub.

        A redirect response is followed once using the token it carries.
        ``headers`` go on every request next to the Bearer header.

        Raises:
            AuthError: The hub answered 401 or 403. The caller must refresh
                the credential before trying again.
            RedirectLoopError: The redirected endpoint redirected again.
            NegotiationError: Any other negotiation failure.
            HubTimeout: The request timed out.
            HubConnectionError: The request failed at the network level.
        """
        outcome = await self._negotiate_once(base_url, credential.token, headers)
        if isinstance(outcome, NegotiationResult):
            return outcome

        _LOGGER.debug("[%s] Negotiate redirected to %s", base_url, outcome.url)
        redirected = await self._negotiate_once(outcome.url, outcome.access_token, headers)
        if isinstance(redirected, _Redirect):
            raise RedirectLoopError(
                f"Negotiate redirected again from {outcome.url} to {redirected.url}"
            )
        return redirected

    async def _negotiate_once(
        self, base_url: str, token: str | None, extra_headers: Mapping[str, str] | None
    ) -> NegotiationResult | _Redirect:
        url = negotiate_url(base_url)
        try:
            async with self._session.post(
                url,
                headers=self._auth_headers(token, extra_headers),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthError(
                        f"Negotiate rejected credential with status {resp.status}",
                        status=resp.status,
                    )
                if resp.status != 200:
                    raise HubResponseError(
                        resp.status, f"Negotiate failed with status {resp.status}"
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as err:
                    raise NegotiationError("Negotiate response is not valid JSON") from err
        except TimeoutError as err:
            raise HubTimeout("Negotiate request timed out") from err
        except aiohttp.ClientError as err:
            raise HubConnectionError("Negotiate request failed") from err

        return self._parse_response(base_url, token, data)

    @staticmethod
    def _parse_response(
        base_url: str, token: str | None, data: Any
    ) -> NegotiationResult | _Redirect:
        if not isinstance(data, dict):
            raise NegotiationError("Negotiate response is not a JSON object")

        if data.get("error"):
            raise NegotiationError(f"Negotiate failed: {data['error']}")

        if "ProtocolVersion" in data:
            raise NegotiationError(
                "Detected an ASP.NET SignalR server; only ASP.NET Core SignalR is supported"
            )

        redirect_url = data.get("url")
        if isinstance(redirect_url, str):
            access_token = data.get("accessToken")
            if not isinstance(access_token, str):
                raise NegotiationError("Redirect response is missing 'accessToken'")
            return _Redirect(redirect_url, access_token)

        connection_id = data.get("connectionId")
        if not isinstance(connection_id, str) or not connection_id:
            raise NegotiationError("Negotiate response is missing 'connectionId'")

        version = data.get("negotiateVersion", 0)
        if isinstance(version, bool) or not isinstance(version, int):
            raise NegotiationError("Field 'negotiateVersion' must be an integer")

        connection_token = data.get("connectionToken")
        if version >= 1 and not isinstance(connection_token, str):
            raise NegotiationError("Negotiate response is missing 'connectionToken'")

        return NegotiationResult(
            connection_id=connection_id,
            connection_token=connection_token if version >= 1 else None,
            available_transports=_parse_transports(data.get("availableTransports")),
            negotiate_version=version,
            url=base_url,
            access_token=token,
        )
