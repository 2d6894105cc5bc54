"""Client error types for hub connections."""

from __future__ import annotations


class HubClientError(Exception):
    """Base error for hub client failures."""


class HubTimeout(HubClientError):
    """Timeout while communicating with the hub."""


class HubConnectionError(HubClientError):
    """Network connection to the hub failed."""


class HubHandshakeError(HubClientError):
    """Hub protocol handshake failed."""


class NegotiationError(HubClientError):
    """Negotiation with the hub failed."""


class HubResponseError(NegotiationError):
    """HTTP response error from the hub."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class RedirectLoopError(NegotiationError):
    """Negotiation redirected more than once."""


class AuthError(HubClientError):
    """Credential was rejected or could not be refreshed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class FramingError(HubClientError):
    """Inbound data could not be parsed into hub messages."""


class NotConnectedError(HubClientError):
    """Operation requires a started connection."""


class ConnectionLostError(HubConnectionError):
    """Connection dropped before an invocation completed."""


class ConnectionStaleError(ConnectionLostError):
    """No traffic from the hub within the server timeout."""


class BackpressureError(HubClientError):
    """Outbound queue overflowed."""


class HubInvocationError(HubClientError):
    """Hub completed an invocation with an error."""
