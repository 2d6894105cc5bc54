"""Invocation bookkeeping and inbound message routing."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, assert_never

from .errors import BackpressureError, HubInvocationError, NotConnectedError
from .protocol import (
    CancelInvocationMessage,
    CloseMessage,
    CompletionMessage,
    HubMessage,
    HubProtocolCodec,
    InvocationMessage,
    PingMessage,
    StreamInvocationMessage,
    StreamItemMessage,
)

_LOGGER = logging.getLogger(__name__)

ResultHandler = Callable[[Any, BaseException | None], Any]
ItemHandler = Callable[[Any], Any]
InvocationHandler = Callable[..., Any]
FrameSender = Callable[[bytes], None]


@dataclass(slots=True)
class PendingInvocation:
    """Outstanding client-initiated invocation awaiting its completion."""

    invocation_id: str
    target: str
    result_handler: ResultHandler
    created_at: float
    item_handler: ItemHandler | None = None

    @property
    def is_stream(self) -> bool:
        return self.item_handler is not None


class InvocationDispatcher:
    """Tracks outstanding invocations and routes hub messages to handlers.

    Outbound frames go to the sender given to :meth:`attach`. Between
    :meth:`hold` and :meth:`attach` frames are buffered; after
    :meth:`detach` new invocations fail with :class:`NotConnectedError`.
    """

    def __init__(
        self,
        codec: HubProtocolCodec,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._codec = codec
        self._clock = clock
        self._last_id = 0
        self._pending: dict[str, PendingInvocation] = {}
        self._subscriptions: dict[str, list[InvocationHandler]] = {}
        self._send: FrameSender | None = None
        self._held: list[bytes] | None = None
        self._held_limit: int | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # -------------------------------------------------------------------------
    # Outbound wiring
    # -------------------------------------------------------------------------

    @property
    def is_accepting(self) -> bool:
        """True while new invocations can be issued."""
        return self._send is not None or self._held is not None

    def hold(self, limit: int | None = None) -> None:
        """Buffer outbound frames until a sender is attached.

        With a ``limit``, invocations issued once that many frames are
        buffered raise :class:`BackpressureError`.
        """
        if self._send is None and self._held is None:
            self._held = []
        self._held_limit = limit

    def drain_held(self) -> list[bytes]:
        """Take the buffered frames, leaving the buffer empty but holding."""
        if self._held is None:
            return []
        held, self._held = self._held, []
        return held

    def attach(self, send: FrameSender) -> None:
        """Route frames to ``send``, flushing anything buffered first."""
        held = self._held or []
        self._held = None
        self._send = send
        for frame in held:
            send(frame)

    def detach(self) -> None:
        """Stop accepting frames and drop anything buffered."""
        self._send = None
        self._held = None

    def _emit(self, message: HubMessage) -> None:
        frame = self._codec.encode(message)
        if self._send is not None:
            self._send(frame)
        elif self._held is not None:
            if self._held_limit is not None and len(self._held) >= self._held_limit:
                raise BackpressureError(
                    f"Outbound buffer is full ({self._held_limit} frames)"
                )
            self._held.append(frame)
        else:
            raise NotConnectedError("Connection is not started")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def on(self, target: str, handler: InvocationHandler) -> None:
        """Register a handler for server invocations of ``target``."""
        if not target:
            raise ValueError("target must not be empty")
        self._subscriptions.setdefault(target.lower(), []).append(handler)

    def off(self, target: str, handler: InvocationHandler | None = None) -> bool:
        """Remove one handler, or every handler when ``handler`` is None."""
        key = target.lower()
        handlers = self._subscriptions.get(key)
        if not handlers:
            return False
        if handler is None:
            del self._subscriptions[key]
            return True
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del self._subscriptions[key]
        return True

    def handlers_for(self, target: str) -> list[InvocationHandler]:
        return list(self._subscriptions.get(target.lower(), ()))

    # -------------------------------------------------------------------------
    # Client-initiated calls
    # -------------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self, invocation_id: str) -> PendingInvocation | None:
        return self._pending.get(invocation_id)

    def _next_id(self) -> str:
        self._last_id += 1
        return str(self._last_id)

    def _register(
        self,
        target: str,
        handler: ResultHandler,
        item_handler: ItemHandler | None,
    ) -> str:
        if not self.is_accepting:
            raise NotConnectedError(f"Cannot invoke '{target}': connection is not started")
        invocation_id = self._next_id()
        self._pending[invocation_id] = PendingInvocation(
            invocation_id=invocation_id,
            target=target,
            result_handler=handler,
            created_at=self._clock(),
            item_handler=item_handler,
        )
        return invocation_id

    def invoke(self, target: str, arguments: list[Any], handler: ResultHandler) -> str:
        """Issue an invocation; ``handler(result, error)`` runs on completion."""
        invocation_id = self._register(target, handler, None)
        try:
            self._emit(
                InvocationMessage(
                    target=target, arguments=list(arguments), invocation_id=invocation_id
                )
            )
        except Exception:
            self._pending.pop(invocation_id, None)
            raise
        return invocation_id

    def stream(
        self,
        target: str,
        arguments: list[Any],
        item_handler: ItemHandler,
        handler: ResultHandler,
    ) -> str:
        """Start a server-to-client stream."""
        invocation_id = self._register(target, handler, item_handler)
        try:
            self._emit(
                StreamInvocationMessage(
                    invocation_id=invocation_id, target=target, arguments=list(arguments)
                )
            )
        except Exception:
            self._pending.pop(invocation_id, None)
            raise
        return invocation_id

    def send(self, target: str, arguments: list[Any]) -> None:
        """Invoke without expecting a completion."""
        if not self.is_accepting:
            raise NotConnectedError(f"Cannot send '{target}': connection is not started")
        self._emit(InvocationMessage(target=target, arguments=list(arguments)))

    def cancel(self, invocation_id: str) -> bool:
        """Forget a pending invocation and tell the hub, without waiting.

        The result handler is not called.
        """
        if self._pending.pop(invocation_id, None) is None:
            return False
        try:
            self._emit(CancelInvocationMessage(invocation_id=invocation_id))
        except (NotConnectedError, BackpressureError) as err:
            _LOGGER.debug("Cancel for %s not sent: %s", invocation_id, err)
        return True

    def fail_all(self, error: BaseException) -> int:
        """Fail every pending invocation with ``error``; returns how many."""
        pending = list(self._pending.values())
        self._pending.clear()
        for invocation in pending:
            self._call(invocation.result_handler, None, error)
        if pending:
            _LOGGER.debug("Failed %d pending invocations: %s", len(pending), error)
        return len(pending)

    # -------------------------------------------------------------------------
    # Inbound routing
    # -------------------------------------------------------------------------

    def dispatch(self, message: HubMessage) -> None:
        """Route an inbound message to the handler it belongs to."""
        if isinstance(message, CompletionMessage):
            self._complete(message)
        elif isinstance(message, InvocationMessage):
            self._invoke_handlers(message)
        elif isinstance(message, StreamItemMessage):
            self._stream_item(message)
        elif isinstance(message, (PingMessage, CloseMessage)):
            _LOGGER.debug("Ignoring %s in dispatcher", type(message).__name__)
        elif isinstance(message, (StreamInvocationMessage, CancelInvocationMessage)):
            _LOGGER.warning("Received unexpected message type '%s'", type(message).__name__)
        else:
            assert_never(message)

    def _complete(self, message: CompletionMessage) -> None:
        invocation = self._pending.pop(message.invocation_id, None)
        if invocation is None:
            _LOGGER.warning("No pending invocation for completion id %s", message.invocation_id)
            return
        if message.error is not None:
            self._call(
                invocation.result_handler, None, HubInvocationError(message.error)
            )
        else:
            self._call(invocation.result_handler, message.result, None)

    def _invoke_handlers(self, message: InvocationMessage) -> None:
        handlers = self._subscriptions.get(message.target.lower())
        if not handlers:
            _LOGGER.debug("No handler registered for target '%s'", message.target)
            return
        for handler in list(handlers):
            self._call(handler, *message.arguments)

    def _stream_item(self, message: StreamItemMessage) -> None:
        invocation = self._pending.get(message.invocation_id)
        if invocation is None or invocation.item_handler is None:
            _LOGGER.debug("Dropping stream item for unknown id %s", message.invocation_id)
            return
        self._call(invocation.item_handler, message.item)

    def _call(self, handler: Callable[..., Any], *args: Any) -> None:
        try:
            result = handler(*args)
        except Exception as err:
            _LOGGER.exception("Handler %r raised: %s", handler, err)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.error("Async handler failed: %s", err, exc_info=err)
