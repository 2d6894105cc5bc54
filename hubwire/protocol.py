"""JSON hub protocol: message types, framing, and handshake helpers.

Every frame is a UTF-8 JSON object terminated by the record separator
(0x1E). A single transport payload may carry several frames and end in a
partial one; :class:`HubProtocolCodec` keeps the partial tail until the rest
arrives.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, assert_never

from .errors import FramingError, HubHandshakeError

_LOGGER = logging.getLogger(__name__)

RECORD_SEPARATOR = b"\x1e"

PROTOCOL_NAME = "json"
PROTOCOL_VERSION = 1


class MessageType(IntEnum):
    """Wire tags for hub messages."""

    INVOCATION = 1
    STREAM_ITEM = 2
    COMPLETION = 3
    STREAM_INVOCATION = 4
    CANCEL_INVOCATION = 5
    PING = 6
    CLOSE = 7


@dataclass(frozen=True, slots=True)
class InvocationMessage:
    """Call a hub method. No ``invocation_id`` means no completion is expected."""

    target: str
    arguments: list[Any] = field(default_factory=list)
    invocation_id: str | None = None
    stream_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StreamItemMessage:
    """One item of a streaming invocation."""

    invocation_id: str
    item: Any = None


@dataclass(frozen=True, slots=True)
class CompletionMessage:
    """Result or error for an invocation."""

    invocation_id: str
    result: Any = None
    error: str | None = None
    has_result: bool = False


@dataclass(frozen=True, slots=True)
class StreamInvocationMessage:
    """Start a server-to-client stream."""

    invocation_id: str
    target: str
    arguments: list[Any] = field(default_factory=list)
    stream_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CancelInvocationMessage:
    """Stop a running stream or invocation."""

    invocation_id: str


@dataclass(frozen=True, slots=True)
class PingMessage:
    """Keep-alive."""


@dataclass(frozen=True, slots=True)
class CloseMessage:
    """Connection is closing, optionally with an error."""

    error: str | None = None
    allow_reconnect: bool = False


HubMessage = (
    InvocationMessage
    | StreamItemMessage
    | CompletionMessage
    | StreamInvocationMessage
    | CancelInvocationMessage
    | PingMessage
    | CloseMessage
)


@dataclass(frozen=True, slots=True)
class HandshakeResponse:
    """Parsed handshake response.

    Attributes:
        error: Rejection reason, or None when the hub accepted the handshake.
        keep_alive_interval: Server advertised keep-alive interval in seconds.
    """

    error: str | None = None
    keep_alive_interval: float | None = None


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(payload: dict[str, Any]) -> bytes:
    text = json.dumps(payload, separators=(",", ":"), default=_json_default)
    return text.encode("utf-8") + RECORD_SEPARATOR


def build_handshake_request(
    protocol: str = PROTOCOL_NAME, version: int = PROTOCOL_VERSION
) -> bytes:
    """Build the framed handshake request sent right after the transport opens."""
    return _dumps({"protocol": protocol, "version": version})


def parse_handshake_response(buffer: bytes) -> tuple[HandshakeResponse | None, bytes]:
    """Parse the handshake response at the start of ``buffer``.

    Returns:
        ``(None, buffer)`` while the response is incomplete, otherwise the
        response and whatever bytes followed it.

    Raises:
        HubHandshakeError: If the response is not a JSON object or is a
            regular hub message.
    """
    head, separator, remaining = buffer.partition(RECORD_SEPARATOR)
    if not separator:
        return None, buffer

    try:
        payload = json.loads(head)
    except ValueError as err:
        raise HubHandshakeError("Handshake response is not valid JSON") from err

    if not isinstance(payload, dict):
        raise HubHandshakeError("Handshake response is not a JSON object")
    if "type" in payload:
        raise HubHandshakeError(
            "Received unexpected message while waiting for the handshake response"
        )

    error = payload.get("error")
    keep_alive_ms = payload.get("keepAliveInterval")
    keep_alive: float | None = None
    if isinstance(keep_alive_ms, (int, float)) and not isinstance(keep_alive_ms, bool):
        if keep_alive_ms > 0:
            keep_alive = keep_alive_ms / 1000.0

    return (
        HandshakeResponse(
            error=str(error) if error is not None else None,
            keep_alive_interval=keep_alive,
        ),
        remaining,
    )


def _require(payload: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = payload.get(key)
    if not isinstance(value, kind):
        raise FramingError(f"Field '{key}' missing or invalid in message type {payload['type']}")
    return value


def _stream_ids(payload: dict[str, Any]) -> tuple[str, ...]:
    raw = payload.get("streamIds")
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise FramingError("Field 'streamIds' must be a list of strings")
    return tuple(raw)


def _optional_id(payload: dict[str, Any]) -> str | None:
    value = payload.get("invocationId")
    if value is None:
        return None
    if not isinstance(value, str):
        raise FramingError("Field 'invocationId' must be a string")
    return value


def parse_message(frame: bytes) -> HubMessage | None:
    """Parse one frame (without separator). Returns None for unknown types."""
    try:
        payload = json.loads(frame)
    except ValueError as err:
        raise FramingError("Frame is not valid JSON") from err

    if not isinstance(payload, dict):
        raise FramingError("Frame is not a JSON object")

    raw_type = payload.get("type")
    if isinstance(raw_type, bool) or not isinstance(raw_type, int):
        raise FramingError("Field 'type' missing or not an integer")

    try:
        message_type = MessageType(raw_type)
    except ValueError:
        _LOGGER.debug("Skipping unknown message type %d", raw_type)
        return None

    if message_type is MessageType.INVOCATION:
        return InvocationMessage(
            target=_require(payload, "target", str),
            arguments=_require(payload, "arguments", list),
            invocation_id=_optional_id(payload),
            stream_ids=_stream_ids(payload),
        )

    if message_type is MessageType.STREAM_ITEM:
        return StreamItemMessage(
            invocation_id=_require(payload, "invocationId", str),
            item=payload.get("item"),
        )

    if message_type is MessageType.COMPLETION:
        invocation_id = _require(payload, "invocationId", str)
        error = payload.get("error")
        has_result = "result" in payload
        if error is not None and has_result:
            raise FramingError(
                "Fields 'error' and 'result' are mutually exclusive in completion"
            )
        if error is not None and not isinstance(error, str):
            raise FramingError("Field 'error' must be a string")
        return CompletionMessage(
            invocation_id=invocation_id,
            result=payload.get("result"),
            error=error,
            has_result=has_result,
        )

    if message_type is MessageType.STREAM_INVOCATION:
        return StreamInvocationMessage(
            invocation_id=_require(payload, "invocationId", str),
            target=_require(payload, "target", str),
            arguments=_require(payload, "arguments", list),
            stream_ids=_stream_ids(payload),
        )

    if message_type is MessageType.CANCEL_INVOCATION:
        return CancelInvocationMessage(
            invocation_id=_require(payload, "invocationId", str)
        )

    if message_type is MessageType.PING:
        return PingMessage()

    if message_type is MessageType.CLOSE:
        error = payload.get("error")
        allow_reconnect = payload.get("allowReconnect", False)
        if not isinstance(allow_reconnect, bool):
            raise FramingError("Field 'allowReconnect' must be a boolean")
        return CloseMessage(
            error=str(error) if error is not None else None,
            allow_reconnect=allow_reconnect,
        )

    assert_never(message_type)


def _to_payload(message: HubMessage) -> dict[str, Any]:
    if isinstance(message, InvocationMessage):
        payload: dict[str, Any] = {"type": MessageType.INVOCATION.value}
        if message.invocation_id is not None:
            payload["invocationId"] = message.invocation_id
        payload["target"] = message.target
        payload["arguments"] = list(message.arguments)
        if message.stream_ids:
            payload["streamIds"] = list(message.stream_ids)
        return payload

    if isinstance(message, StreamItemMessage):
        return {
            "type": MessageType.STREAM_ITEM.value,
            "invocationId": message.invocation_id,
            "item": message.item,
        }

    if isinstance(message, CompletionMessage):
        payload = {
            "type": MessageType.COMPLETION.value,
            "invocationId": message.invocation_id,
        }
        if message.error is not None:
            payload["error"] = message.error
        elif message.has_result:
            payload["result"] = message.result
        return payload

    if isinstance(message, StreamInvocationMessage):
        payload = {
            "type": MessageType.STREAM_INVOCATION.value,
            "invocationId": message.invocation_id,
            "target": message.target,
            "arguments": list(message.arguments),
        }
        if message.stream_ids:
            payload["streamIds"] = list(message.stream_ids)
        return payload

    if isinstance(message, CancelInvocationMessage):
        return {
            "type": MessageType.CANCEL_INVOCATION.value,
            "invocationId": message.invocation_id,
        }

    if isinstance(message, PingMessage):
        return {"type": MessageType.PING.value}

    if isinstance(message, CloseMessage):
        payload = {"type": MessageType.CLOSE.value}
        if message.error is not None:
            payload["error"] = message.error
        if message.allow_reconnect:
            payload["allowReconnect"] = True
        return payload

    assert_never(message)


class HubProtocolCodec:
    """Encoder and incremental decoder for the JSON hub protocol."""

    name = PROTOCOL_NAME
    version = PROTOCOL_VERSION

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Number of bytes held for an incomplete frame."""
        return len(self._buffer)

    def encode(self, message: HubMessage) -> bytes:
        """Encode a message as a single framed record."""
        return _dumps(_to_payload(message))

    def encode_many(self, messages: Sequence[HubMessage]) -> bytes:
        """Encode several messages into one payload."""
        return b"".join(self.encode(message) for message in messages)

    def decode(self, data: bytes) -> list[HubMessage]:
        """Append ``data`` and return every message completed by it.

        Raises:
            FramingError: The buffered data can never form valid frames. The
                buffer is discarded and the connection must be dropped.
        """
        self._buffer.extend(data)
        messages: list[HubMessage] = []

        start = 0
        while True:
            end = self._buffer.find(RECORD_SEPARATOR, start)
            if end == -1:
                break
            frame = bytes(self._buffer[start:end])
            start = end + 1
            try:
                message = parse_message(frame)
            except FramingError:
                self._buffer.clear()
                raise
            if message is not None:
                messages.append(message)

        del self._buffer[:start]
        return messages

    def reset(self) -> None:
        """Drop any partially received frame."""
        self._buffer.clear()
