"""Asyncio client for JSON hub protocol servers.

Negotiates a transport, keeps the connection alive, and reconnects with
backoff when the network drops.
"""

__version__ = "0.1.0"

from .dispatcher import InvocationDispatcher, PendingInvocation
from .errors import (
    AuthError,
    BackpressureError,
    ConnectionLostError,
    ConnectionStaleError,
    FramingError,
    HubClientError,
    HubConnectionError,
    HubHandshakeError,
    HubInvocationError,
    HubResponseError,
    HubTimeout,
    NegotiationError,
    NotConnectedError,
    RedirectLoopError,
)
from .http import NegotiationClient, NegotiationResult
from .keepalive import KeepAliveMonitor
from .protocol import (
    PROTOCOL_NAME,
    PROTOCOL_VERSION,
    CancelInvocationMessage,
    CloseMessage,
    CompletionMessage,
    HubProtocolCodec,
    InvocationMessage,
    MessageType,
    PingMessage,
    StreamInvocationMessage,
    StreamItemMessage,
)
from .reconnect import Disconnect, DisconnectReason, ReconnectionPolicy
from .session import ConnectionState, HubConnection
from .tokens import CallbackTokenProvider, Credential, StaticTokenProvider, TokenProvider
from .transport import (
    HubLongPollingClient,
    HubWsClient,
    TransportMessage,
    TransportMessageType,
    TransportSocket,
    connect_websocket,
)

SUPPORTED_PROTOCOL_VERSIONS: tuple[int, ...] = (PROTOCOL_VERSION,)

__all__ = [
    "PROTOCOL_NAME",
    "PROTOCOL_VERSION",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "AuthError",
    "BackpressureError",
    "CallbackTokenProvider",
    "CancelInvocationMessage",
    "CloseMessage",
    "CompletionMessage",
    "ConnectionLostError",
    "ConnectionStaleError",
    "ConnectionState",
    "Credential",
    "Disconnect",
    "DisconnectReason",
    "FramingError",
    "HubClientError",
    "HubConnection",
    "HubConnectionError",
    "HubHandshakeError",
    "HubInvocationError",
    "HubLongPollingClient",
    "HubProtocolCodec",
    "HubResponseError",
    "HubTimeout",
    "HubWsClient",
    "InvocationDispatcher",
    "InvocationMessage",
    "KeepAliveMonitor",
    "MessageType",
    "NegotiationClient",
    "NegotiationError",
    "NegotiationResult",
    "NotConnectedError",
    "PendingInvocation",
    "PingMessage",
    "ReconnectionPolicy",
    "RedirectLoopError",
    "StaticTokenProvider",
    "StreamInvocationMessage",
    "StreamItemMessage",
    "TokenProvider",
    "TransportMessage",
    "TransportMessageType",
    "TransportSocket",
    "__version__",
    "connect_websocket",
]
