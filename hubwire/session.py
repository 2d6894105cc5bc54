"""Hub connection: state machine, coordinator loop, and application API.

All connection state is owned by one coordinator task that consumes an
event queue. Application calls, the transport reader and writer, the
connect attempt and every timer only post events; none of them touch the
state directly. Events tied to one transport carry a generation number and
are ignored once that transport has been torn down.

Usage:
    conn = HubConnection("https://example.com/hubs/chat", StaticTokenProvider(token))
    conn.on("ReceiveMessage", handle_message)
    await conn.start()
    reply = await conn.invoke("Echo", "hello", timeout=5)
    await conn.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp

from .dispatcher import InvocationDispatcher, InvocationHandler
from .errors import (
    AuthError,
    BackpressureError,
    ConnectionLostError,
    ConnectionStaleError,
    FramingError,
    HubClientError,
    HubConnectionError,
    HubHandshakeError,
    HubTimeout,
    NegotiationError,
    NotConnectedError,
)
from .http import NegotiationClient, NegotiationResult
from .keepalive import DEFAULT_KEEP_ALIVE_INTERVAL, KeepAliveMonitor
from .protocol import (
    CloseMessage,
    HandshakeResponse,
    HubProtocolCodec,
    PingMessage,
    build_handshake_request,
    parse_handshake_response,
)
from .reconnect import Disconnect, DisconnectReason, ReconnectionPolicy
from .tokens import TokenProvider
from .transport import (
    LONG_POLLING,
    WEBSOCKETS,
    HubLongPollingClient,
    HubWsClient,
    TransportMessageType,
    TransportSocket,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_TRANSPORTS: tuple[str, ...] = (WEBSOCKETS, LONG_POLLING)
CLOSE_TIMEOUT = 2.0

TransportFactory = Callable[[str], TransportSocket]
StateCallback = Callable[["ConnectionState", BaseException | None], None]


class ConnectionState(Enum):
    """Lifecycle states of a hub connection."""

    DISCONNECTED = "disconnected"
    NEGOTIATING = "negotiating"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


_INVOKABLE_STATES = frozenset(
    {ConnectionState.NEGOTIATING, ConnectionState.CONNECTING, ConnectionState.CONNECTED}
)


@dataclass(slots=True)
class _Call:
    """Application call travelling through the coordinator."""

    target: str
    arguments: list[Any]
    future: asyncio.Future[Any] | None = None
    items: asyncio.Queue[tuple[str, Any]] | None = None
    invocation_id: str | None = None


# -----------------------------------------------------------------------------
# Coordinator events
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _Start:
    waiter: asyncio.Future[None]


@dataclass(slots=True)
class _Stop:
    waiter: asyncio.Future[None]


@dataclass(slots=True)
class _Invoke:
    call: _Call
    kind: str


@dataclass(slots=True)
class _Cancel:
    call: _Call


@dataclass(slots=True)
class _ScopedEvent:
    generation: int


@dataclass(slots=True)
class _Negotiated(_ScopedEvent):
    result: NegotiationResult


@dataclass(slots=True)
class _TransportOpened(_ScopedEvent):
    transport: TransportSocket


@dataclass(slots=True)
class _AttemptFailed(_ScopedEvent):
    error: BaseException
    refreshed: bool = False


@dataclass(slots=True)
class _DataReceived(_ScopedEvent):
    data: bytes


@dataclass(slots=True)
class _TransportLost(_ScopedEvent):
    error: BaseException | None


@dataclass(slots=True)
class _KeepAliveTick(_ScopedEvent):
    pass


@dataclass(slots=True)
class _HandshakeTimeout(_ScopedEvent):
    pass


@dataclass(slots=True)
class _ReconnectDue(_ScopedEvent):
    pass


_Event = _Start | _Stop | _Invoke | _Cancel | _ScopedEvent


class HubConnection:
    """Persistent, authenticated connection to a hub.

    Args:
        url: Hub endpoint (http, https, ws or wss).
        token_provider: Source of bearer credentials.
        session: aiohttp session for negotiation and long polling. When
            omitted the connection creates one and closes it on stop.
        negotiation_client: Negotiator to use instead of the built-in one.
        transport_factory: Builds a transport for a transport name.
        transports: Transport names in order of preference.
        reconnect_policy: Backoff policy for automatic reconnection.
        keep_alive_interval: Seconds between client pings; the hub's
            handshake may override it.
        server_timeout: Seconds of inbound silence before the connection is
            considered dead. Defaults to twice the keep-alive interval.
        handshake_timeout: Seconds to wait for the handshake response.
        max_outbound_frames: Capacity of the outbound frame queue, and of the
            buffer that holds calls made before the handshake completes.
        backpressure_timeout: Seconds the outbound queue may stay full before
            the connection is closed with BackpressureError.
        headers: Extra HTTP headers sent on negotiation and on the transport.
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        *,
        session: aiohttp.ClientSession | None = None,
        negotiation_client: NegotiationClient | None = None,
        transport_factory: TransportFactory | None = None,
        transports: Sequence[str] = DEFAULT_TRANSPORTS,
        reconnect_policy: ReconnectionPolicy | None = None,
        keep_alive_interval: float = DEFAULT_KEEP_ALIVE_INTERVAL,
        server_timeout: float | None = None,
        handshake_timeout: float = 15.0,
        max_outbound_frames: int = 256,
        backpressure_timeout: float = 5.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if max_outbound_frames < 1:
            raise ValueError("max_outbound_frames must be at least 1")
        if backpressure_timeout <= 0:
            raise ValueError("backpressure_timeout must be positive")
        if handshake_timeout <= 0:
            raise ValueError("handshake_timeout must be positive")
        if not transports:
            raise ValueError("transports must not be empty")

        self.url = url
        self._token_provider = token_provider
        self._session = session
        self._owns_session = False
        self._negotiator = negotiation_client
        self._transport_factory = transport_factory or self._default_transport
        self._transports = tuple(transports)
        self._policy = reconnect_policy or ReconnectionPolicy()
        self._handshake_timeout = handshake_timeout
        self._max_outbound_frames = max_outbound_frames
        self._backpressure_timeout = backpressure_timeout
        self._headers = dict(headers or {})

        self._codec = HubProtocolCodec()
        self._dispatcher = InvocationDispatcher(self._codec)
        self._keep_alive = KeepAliveMonitor(keep_alive_interval, server_timeout)

        # Coordinator
        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._coordinator: asyncio.Task[None] | None = None
        self._state = ConnectionState.DISCONNECTED
        self._state_callbacks: list[StateCallback] = []
        self._generation = 0

        # Per-attempt state
        self._start_waiter: asyncio.Future[None] | None = None
        self._reconnect_attempt: int | None = None
        self._connection_id: str | None = None
        self._close_reason: BaseException | None = None
        self._transport: TransportSocket | None = None
        self._outbound: asyncio.Queue[bytes] | None = None
        self._outbound_room: asyncio.Event | None = None
        self._handshake_buffer = b""

        # Tasks
        self._attempt_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._handshake_timer: asyncio.Task[None] | None = None
        self._reconnect_timer: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def connection_id(self) -> str | None:
        """Connection id from the most recent negotiation."""
        return self._connection_id

    @property
    def close_reason(self) -> BaseException | None:
        """Error that closed the connection, or None for a clean close."""
        return self._close_reason

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Negotiate, open a transport and complete the handshake.

        Raises:
            HubClientError: The first attempt failed; the connection is back in
                DISCONNECTED and may be started again.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise HubClientError(
                f"Cannot start a connection in state '{self._state.value}'"
            )
        self._ensure_coordinator()
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._post(_Start(waiter))
        await waiter

    async def stop(self) -> None:
        """Close the connection and release every resource. Terminal."""
        coordinator = self._coordinator
        if coordinator is None or coordinator.done():
            self._set_state(ConnectionState.CLOSED)
            await self._close_owned_session()
            return

        _LOGGER.info("[%s] Stopping connection", self.url)
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._post(_Stop(waiter))
        await waiter
        await asyncio.gather(coordinator, return_exceptions=True)

    async def __aenter__(self) -> HubConnection:
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def on_state_changed(self, callback: StateCallback) -> Callable[[], None]:
        """Register ``callback(state, reason)``; returns a function that removes it."""
        self._state_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._state_callbacks:
                self._state_callbacks.remove(callback)

        return _remove

    # -------------------------------------------------------------------------
    # Invocations and subscriptions
    # -------------------------------------------------------------------------

    def on(self, target: str, handler: InvocationHandler) -> None:
        """Call ``handler(*arguments)`` whenever the hub invokes ``target``."""
        self._dispatcher.on(target, handler)

    def off(self, target: str, handler: InvocationHandler | None = None) -> bool:
        return self._dispatcher.off(target, handler)

    async def invoke(self, target: str, *args: Any, timeout: float | None = None) -> Any:
        """Invoke a hub method and wait for its result.

        Raises:
            NotConnectedError: The connection is not started or is reconnecting.
            HubInvocationError: The hub completed the call with an error.
            ConnectionLostError: The connection dropped before completion.
            HubTimeout: No completion arrived within ``timeout``.
        """
        self._ensure_can_invoke(target)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        call = _Call(target, list(args), future=future)
        self._post(_Invoke(call, "invoke"))
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError as err:
            self._post(_Cancel(call))
            raise HubTimeout(f"Invocation of '{target}' timed out") from err
        except asyncio.CancelledError:
            self._post(_Cancel(call))
            raise

    async def send(self, target: str, *args: Any) -> None:
        """Invoke a hub method without waiting for a result.

        Returns once the frame is queued for sending.
        """
        self._ensure_can_invoke(target)
        call = _Call(
            target, list(args), future=asyncio.get_running_loop().create_future()
        )
        self._post(_Invoke(call, "send"))
        await call.future

    def stream(self, target: str, *args: Any) -> AsyncIterator[Any]:
        """Iterate over the items a hub streaming method produces.

        Leaving the loop early cancels the stream on the hub.

        Raises:
            NotConnectedError: The connection is not started or is reconnecting.
        """
        self._ensure_can_invoke(target)
        items: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        return self._stream(_Call(target, list(args), items=items), items)

    async def _stream(
        self, call: _Call, items: asyncio.Queue[tuple[str, Any]]
    ) -> AsyncIterator[Any]:
        self._post(_Invoke(call, "stream"))

        finished = False
        try:
            while True:
                kind, value = await items.get()
                if kind == "item":
                    yield value
                    continue
                finished = True
                if kind == "error":
                    raise value
                return
        finally:
            if not finished:
                self._post(_Cancel(call))

    def _ensure_can_invoke(self, target: str) -> None:
        if self._state not in _INVOKABLE_STATES:
            raise NotConnectedError(
                f"Cannot invoke '{target}' while the connection is {self._state.value}"
            )

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    def _ensure_coordinator(self) -> None:
        if self._coordinator is None or self._coordinator.done():
            self._coordinator = asyncio.create_task(self._run())

    def _post(self, event: _Event) -> None:
        self._events.put_nowait(event)

    async def _run(self) -> None:
        try:
            while self._state is not ConnectionState.CLOSED:
                event = await self._events.get()
                try:
                    await self._handle(event)
                except BackpressureError as err:
                    _LOGGER.error("[%s] Closing connection: %s", self.url, err)
                    await self._close(err)
                except Exception as err:
                    _LOGGER.exception("[%s] Unexpected error, closing connection", self.url)
                    await self._close(err)
        finally:
            await self._release()

    async def _handle(self, event: _Event) -> None:
        if isinstance(event, _Start):
            self._on_start(event)
        elif isinstance(event, _Stop):
            await self._on_stop(event)
        elif isinstance(event, _Invoke):
            await self._on_invoke(event)
        elif isinstance(event, _Cancel):
            if event.call.invocation_id is not None:
                self._dispatcher.cancel(event.call.invocation_id)
        elif event.generation != self._generation:
            _LOGGER.debug("[%s] Ignoring stale %s", self.url, type(event).__name__)
            if isinstance(event, _TransportOpened):
                await self._close_transport(event.transport)
        elif isinstance(event, _Negotiated):
            self._on_negotiated(event)
        elif isinstance(event, _TransportOpened):
            self._on_transport_opened(event)
        elif isinstance(event, _AttemptFailed):
            await self._attempt_failed(event.error, refreshed=event.refreshed)
        elif isinstance(event, _DataReceived):
            await self._on_data(event.data)
        elif isinstance(event, _TransportLost):
            await self._on_transport_lost(event.error)
        elif isinstance(event, _KeepAliveTick):
            await self._on_keep_alive_tick()
        elif isinstance(event, _HandshakeTimeout):
            if self._state is ConnectionState.CONNECTING:
                await self._attempt_failed(HubTimeout("Handshake timed out"))
        elif isinstance(event, _ReconnectDue):
            if self._state is ConnectionState.RECONNECTING:
                self._begin_attempt()

    def _set_state(
        self, state: ConnectionState, reason: BaseException | None = None
    ) -> None:
        """Update connection state and notify callbacks."""
        if self._state is state:
            return
        _LOGGER.debug("[%s] State: %s → %s", self.url, self._state.value, state.value)
        self._state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state, reason)
            except Exception:
                _LOGGER.exception("[%s] State callback failed", self.url)

    # -------------------------------------------------------------------------
    # Start and stop
    # -------------------------------------------------------------------------

    def _on_start(self, event: _Start) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            if not event.waiter.done():
                event.waiter.set_exception(
                    HubClientError(f"Connection is already {self._state.value}")
                )
            return

        self._start_waiter = event.waiter
        self._reconnect_attempt = None
        self._close_reason = None
        _LOGGER.info("[%s] Starting connection", self.url)
        self._begin_attempt()

    async def _on_stop(self, event: _Stop) -> None:
        if self._state is ConnectionState.CONNECTED and self._transport is not None:
            await self._send_close_message(self._transport)
        await self._close(None)
        if not event.waiter.done():
            event.waiter.set_result(None)

    async def _send_close_message(self, transport: TransportSocket) -> None:
        # Frames already accepted by send() go out before Close
        writer, self._writer_task = self._writer_task, None
        queue = self._outbound
        if writer is not None:
            if queue is not None and not writer.done():
                await self._drain_outbound(queue, writer)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
        try:
            await asyncio.wait_for(
                transport.send(self._codec.encode(CloseMessage())), timeout=CLOSE_TIMEOUT
            )
        except (TimeoutError, HubClientError) as err:
            _LOGGER.debug("[%s] Close message not delivered: %s", self.url, err)

    async def _drain_outbound(
        self, queue: asyncio.Queue[bytes], writer: asyncio.Task[None]
    ) -> None:
        drained = asyncio.create_task(queue.join())
        try:
            await asyncio.wait(
                {drained, writer}, timeout=CLOSE_TIMEOUT, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            drained.cancel()
            await asyncio.gather(drained, return_exceptions=True)
        if queue.qsize():
            _LOGGER.warning("[%s] Dropping %d unsent frames on stop", self.url, queue.qsize())

    async def _close(self, reason: BaseException | None) -> None:
        await self._teardown()
        self._dispatcher.detach()
        self._dispatcher.fail_all(ConnectionLostError("Connection closed"))
        self._close_reason = reason
        self._reject_start(reason or NotConnectedError("Connection stopped before it started"))
        if reason is not None:
            _LOGGER.error("[%s] Connection closed: %s", self.url, reason)
        else:
            _LOGGER.info("[%s] Connection closed", self.url)
        self._set_state(ConnectionState.CLOSED, reason)

    async def _release(self) -> None:
        await self._teardown()
        self._dispatcher.detach()
        self._dispatcher.fail_all(ConnectionLostError("Connection closed"))
        self._reject_start(NotConnectedError("Connection is closed"))
        self._set_state(ConnectionState.CLOSED, self._close_reason)
        await self._close_owned_session()

        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, _Stop) and not event.waiter.done():
                event.waiter.set_result(None)
            elif isinstance(event, _Start) and not event.waiter.done():
                event.waiter.set_exception(NotConnectedError("Connection is closed"))
            elif isinstance(event, _Invoke):
                self._fail_call(event.call, NotConnectedError("Connection is closed"))
            elif isinstance(event, _TransportOpened):
                await self._close_transport(event.transport)

    def _reject_start(self, error: BaseException) -> None:
        waiter, self._start_waiter = self._start_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)

    # -------------------------------------------------------------------------
    # Connect attempts
    # -------------------------------------------------------------------------

    def _default_transport(self, name: str) -> TransportSocket:
        if name == WEBSOCKETS:
            return HubWsClient()
        if name == LONG_POLLING:
            return HubLongPollingClient(self._http_session())
        raise NegotiationError(f"Unsupported transport '{name}'")

    def _http_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _close_owned_session(self) -> None:
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            self._owns_session = False
            await session.close()

    def _negotiation_client(self) -> NegotiationClient:
        if self._negotiator is None:
            self._negotiator = NegotiationClient(self._http_session())
        return self._negotiator

    def _begin_attempt(self) -> None:
        self._generation += 1
        self._codec.reset()
        self._handshake_buffer = b""
        self._set_state(ConnectionState.NEGOTIATING)
        self._dispatcher.hold(self._max_outbound_frames)
        self._attempt_task = asyncio.create_task(
            self._open_transport(
                self._generation, refresh_on_auth_error=self._reconnect_attempt is not None
            )
        )

    def _candidate_transports(self, result: NegotiationResult) -> list[str]:
        available = set(result.available_transports)
        candidates = [name for name in self._transports if name in available]
        if not candidates:
            raise NegotiationError(
                f"No supported transport among {list(result.available_transports)}"
            )
        return candidates

    async def _negotiate(self, generation: int) -> NegotiationResult:
        credential = await self._token_provider.current_token()
        result = await self._negotiation_client().negotiate(
            self.url, credential, headers=self._headers
        )
        self._post(_Negotiated(generation, result))
        return result

    async def _open_transport(self, generation: int, *, refresh_on_auth_error: bool) -> None:
        transport: TransportSocket | None = None
        try:
            result = await self._negotiate(generation)
            candidates = self._candidate_transports(result)
            last_error: HubClientError = HubConnectionError("No transport could connect")
            for index, name in enumerate(candidates):
                if index and result.negotiate_version >= 1:
                    # A connection token is single use; get a fresh one
                    result = await self._negotiate(generation)
                transport = self._transport_factory(name)
                try:
                    await transport.connect(
                        result.url,
                        connection_token=result.transport_id,
                        access_token=result.access_token,
                        headers=self._headers,
                    )
                except HubClientError as err:
                    _LOGGER.warning(
                        "[%s] %s transport failed to connect: %s", self.url, name, err
                    )
                    await self._close_transport(transport)
                    transport = None
                    last_error = err
                    continue
                break
            else:
                raise last_error
        except asyncio.CancelledError:
            if transport is not None:
                await self._close_transport(transport)
            raise
        except AuthError as err:
            if not refresh_on_auth_error:
                self._post(_AttemptFailed(generation, err))
                return
            _LOGGER.info("[%s] Credential rejected, refreshing", self.url)
            try:
                await self._token_provider.refresh()
            except Exception as refresh_err:
                self._post(_AttemptFailed(generation, refresh_err))
                return
            self._post(_AttemptFailed(generation, err, refreshed=True))
            return
        except Exception as err:
            self._post(_AttemptFailed(generation, err))
            return

        self._post(_TransportOpened(generation, transport))

    def _on_negotiated(self, event: _Negotiated) -> None:
        if self._state not in (ConnectionState.NEGOTIATING, ConnectionState.CONNECTING):
            return
        self._connection_id = event.result.connection_id
        _LOGGER.debug(
            "[%s] Negotiated connection %s (transports: %s)",
            self.url,
            event.result.connection_id,
            ", ".join(event.result.available_transports),
        )
        self._set_state(ConnectionState.CONNECTING)

    def _on_transport_opened(self, event: _TransportOpened) -> None:
        transport = event.transport
        self._attempt_task = None
        self._transport = transport
        self._outbound = asyncio.Queue(maxsize=self._max_outbound_frames)
        self._outbound_room = asyncio.Event()
        self._reader_task = asyncio.create_task(self._read_loop(event.generation, transport))
        self._writer_task = asyncio.create_task(
            self._write_loop(event.generation, transport, self._outbound, self._outbound_room)
        )
        self._outbound.put_nowait(
            build_handshake_request(self._codec.name, self._codec.version)
        )
        self._handshake_timer = asyncio.create_task(
            self._post_after(self._handshake_timeout, _HandshakeTimeout(event.generation))
        )

    async def _on_handshake(self, response: HandshakeResponse) -> None:
        timer, self._handshake_timer = self._handshake_timer, None
        if timer is not None:
            timer.cancel()

        if response.keep_alive_interval is not None:
            self._keep_alive.configure(response.keep_alive_interval)
        self._keep_alive.start()

        self._set_state(ConnectionState.CONNECTED)
        reconnected = self._reconnect_attempt is not None
        self._reconnect_attempt = None
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(self._generation))
        _LOGGER.info(
            "[%s] %s via %s",
            self.url,
            "Reconnected" if reconnected else "Connected",
            getattr(self._transport, "transport_name", "transport"),
        )

        # Frames queued while connecting go out after the handshake
        for frame in self._dispatcher.drain_held():
            if not await self._wait_for_outbound_room():
                break
            self._enqueue_frame(frame)
        self._dispatcher.attach(self._enqueue_frame)

        waiter, self._start_waiter = self._start_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _attempt_failed(self, error: BaseException, *, refreshed: bool = False) -> None:
        reason = (
            DisconnectReason.HANDSHAKE_ERROR
            if self._transport is not None
            else DisconnectReason.NEGOTIATION_ERROR
        )
        await self._teardown()
        self._dispatcher.detach()
        self._dispatcher.fail_all(ConnectionLostError(f"Connection attempt failed: {error}"))

        if self._reconnect_attempt is None:
            _LOGGER.warning("[%s] Connection failed: %s", self.url, error)
            self._set_state(ConnectionState.DISCONNECTED, error)
            self._reject_start(error)
            return

        if isinstance(error, AuthError) and not refreshed:
            _LOGGER.error("[%s] Credential refresh failed: %s", self.url, error)
            self._set_state(ConnectionState.DISCONNECTED, error)
            return

        _LOGGER.warning(
            "[%s] Reconnect attempt failed (%s): %s", self.url, reason.value, error
        )
        self._reconnect_attempt += 1
        await self._schedule_reconnect(Disconnect(reason, error=error))

    async def _schedule_reconnect(self, disconnect: Disconnect) -> None:
        attempt = self._reconnect_attempt or 0
        error = disconnect.error
        delay = self._policy.delay_for(disconnect, attempt)
        if delay is None:
            await self._close(
                error if error is not None else HubConnectionError("Reconnect attempts exhausted")
            )
            return

        self._set_state(ConnectionState.RECONNECTING, error)
        _LOGGER.info(
            "[%s] Reconnecting in %.2fs (attempt %d, %s)",
            self.url,
            delay,
            attempt + 1,
            disconnect.reason.value,
        )
        self._reconnect_timer = asyncio.create_task(
            self._post_after(delay, _ReconnectDue(self._generation))
        )

    # -------------------------------------------------------------------------
    # Open connection
    # -------------------------------------------------------------------------

    async def _on_data(self, data: bytes) -> None:
        if self._state is ConnectionState.CONNECTING:
            self._handshake_buffer += data
            try:
                response, remaining = parse_handshake_response(self._handshake_buffer)
            except HubHandshakeError as err:
                await self._attempt_failed(err)
                return
            if response is None:
                return
            self._handshake_buffer = b""
            if response.error is not None:
                await self._attempt_failed(
                    HubHandshakeError(f"Handshake rejected: {response.error}")
                )
                return
            await self._on_handshake(response)
            if remaining and self._state is ConnectionState.CONNECTED:
                await self._on_frames(remaining)
        elif self._state is ConnectionState.CONNECTED:
            await self._on_frames(data)

    async def _on_frames(self, data: bytes) -> None:
        self._keep_alive.frame_received()
        try:
            messages = self._codec.decode(data)
        except FramingError as err:
            _LOGGER.warning("[%s] Dropping connection on bad frame: %s", self.url, err)
            await self._connection_lost(
                Disconnect(DisconnectReason.FRAMING_ERROR, error=err)
            )
            return

        for message in messages:
            if isinstance(message, CloseMessage):
                error = (
                    HubConnectionError(f"Server closed the connection: {message.error}")
                    if message.error
                    else None
                )
                await self._connection_lost(
                    Disconnect(
                        DisconnectReason.SERVER_CLOSE,
                        allow_reconnect=message.allow_reconnect,
                        error=error,
                    )
                )
                return
            if isinstance(message, PingMessage):
                continue
            self._dispatcher.dispatch(message)

    async def _on_transport_lost(self, error: BaseException | None) -> None:
        if self._state in (ConnectionState.NEGOTIATING, ConnectionState.CONNECTING):
            await self._attempt_failed(
                error or HubConnectionError("Transport closed during handshake")
            )
        elif self._state is ConnectionState.CONNECTED:
            await self._connection_lost(
                Disconnect(DisconnectReason.TRANSPORT_CLOSED, error=error)
            )

    async def _on_keep_alive_tick(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        if self._keep_alive.is_stale():
            await self._connection_lost(
                Disconnect(
                    DisconnectReason.STALE,
                    error=ConnectionStaleError(
                        f"No message from the hub in {self._keep_alive.server_timeout:.1f}s"
                    ),
                )
            )
        elif self._keep_alive.ping_due() and await self._wait_for_outbound_room():
            self._enqueue_frame(self._codec.encode(PingMessage()))

    async def _connection_lost(self, disconnect: Disconnect) -> None:
        _LOGGER.warning(
            "[%s] Connection lost (%s): %s",
            self.url,
            disconnect.reason.value,
            disconnect.error,
        )
        await self._teardown()
        self._dispatcher.detach()
        lost = (
            disconnect.error
            if isinstance(disconnect.error, ConnectionLostError)
            else ConnectionLostError(f"Connection lost: {disconnect.reason.value}")
        )
        self._dispatcher.fail_all(lost)

        if not self._policy.should_reconnect(disconnect):
            await self._close(disconnect.error)
            return
        self._reconnect_attempt = 0
        await self._schedule_reconnect(disconnect)

    def _enqueue_frame(self, frame: bytes) -> None:
        queue = self._outbound
        if queue is None:
            raise NotConnectedError("Transport is not open")
        try:
            queue.put_nowait(frame)
        except asyncio.QueueFull as err:
            raise BackpressureError(
                f"Outbound queue is full ({self._max_outbound_frames} frames)"
            ) from err
        self._keep_alive.frame_sent()

    async def _wait_for_outbound_room(self) -> bool:
        """Wait until the outbound queue can take a frame.

        Returns False when the writer has stopped, in which case a transport
        loss is already on its way. Raises BackpressureError when the writer
        frees no slot within ``backpressure_timeout``.
        """
        queue, writer, room = self._outbound, self._writer_task, self._outbound_room
        if queue is None or writer is None or room is None or not queue.full():
            return True
        try:
            return await asyncio.wait_for(
                self._outbound_slot(queue, writer, room), self._backpressure_timeout
            )
        except TimeoutError as err:
            raise BackpressureError(
                f"Outbound queue is full ({self._max_outbound_frames} frames) "
                f"and the transport made no progress in {self._backpressure_timeout:.1f}s"
            ) from err

    @staticmethod
    async def _outbound_slot(
        queue: asyncio.Queue[bytes], writer: asyncio.Task[None], room: asyncio.Event
    ) -> bool:
        while queue.full():
            if writer.done():
                return False
            room.clear()
            await room.wait()
        return True

    async def _on_invoke(self, event: _Invoke) -> None:
        call = event.call
        if call.future is not None and call.future.done():
            return

        try:
            if (
                self._state is ConnectionState.CONNECTED
                and not await self._wait_for_outbound_room()
            ):
                self._fail_call(call, ConnectionLostError("Transport closed before sending"))
                return
        except BackpressureError as err:
            self._fail_call(call, err)
            raise

        try:
            if event.kind == "send":
                self._dispatcher.send(call.target, call.arguments)
                if call.future is not None:
                    call.future.set_result(None)
            elif event.kind == "stream":
                call.invocation_id = self._dispatcher.stream(
                    call.target,
                    call.arguments,
                    self._item_handler(call),
                    self._result_handler(call),
                )
            else:
                call.invocation_id = self._dispatcher.invoke(
                    call.target, call.arguments, self._result_handler(call)
                )
        except (NotConnectedError, BackpressureError) as err:
            self._fail_call(call, err)

    @staticmethod
    def _result_handler(call: _Call) -> Callable[[Any, BaseException | None], None]:
        def _handle(result: Any, error: BaseException | None) -> None:
            if call.items is not None:
                if error is not None:
                    call.items.put_nowait(("error", error))
                else:
                    call.items.put_nowait(("complete", None))
                return
            future = call.future
            if future is None or future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        return _handle

    @staticmethod
    def _item_handler(call: _Call) -> Callable[[Any], None]:
        def _handle(item: Any) -> None:
            if call.items is not None:
                call.items.put_nowait(("item", item))

        return _handle

    @staticmethod
    def _fail_call(call: _Call, error: BaseException) -> None:
        if call.items is not None:
            call.items.put_nowait(("error", error))
        elif call.future is not None and not call.future.done():
            call.future.set_exception(error)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def _post_after(self, delay: float, event: _Event) -> None:
        await asyncio.sleep(delay)
        self._post(event)

    async def _read_loop(self, generation: int, transport: TransportSocket) -> None:
        error: BaseException | None = None
        try:
            async for message in transport:
                if message.type is TransportMessageType.DATA:
                    if message.data:
                        self._post(_DataReceived(generation, message.data))
                    continue
                if message.type is TransportMessageType.ERROR:
                    error = HubConnectionError(message.error or "Transport error")
                break
        except HubClientError as err:
            error = err
        self._post(_TransportLost(generation, error))

    async def _write_loop(
        self,
        generation: int,
        transport: TransportSocket,
        queue: asyncio.Queue[bytes],
        room: asyncio.Event,
    ) -> None:
        try:
            while True:
                frame = await queue.get()
                room.set()
                try:
                    await transport.send(frame)
                except HubClientError as err:
                    self._post(_TransportLost(generation, err))
                    return
                finally:
                    queue.task_done()
        finally:
            room.set()

    async def _keepalive_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(max(self._keep_alive.seconds_until_due(), 0.01))
            self._post(_KeepAliveTick(generation))

    async def _teardown(self) -> None:
        """Cancel per-transport tasks and close the transport."""
        self._generation += 1
        tasks = [
            task
            for task in (
                self._attempt_task,
                self._reader_task,
                self._writer_task,
                self._keepalive_task,
                self._handshake_timer,
                self._reconnect_timer,
            )
            if task is not None
        ]
        self._attempt_task = None
        self._reader_task = None
        self._writer_task = None
        self._keepalive_task = None
        self._handshake_timer = None
        self._reconnect_timer = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_transport(transport)

        self._outbound = None
        self._outbound_room = None
        self._keep_alive.stop()
        self._codec.reset()
        self._handshake_buffer = b""

    async def _close_transport(self, transport: TransportSocket) -> None:
        try:
            await asyncio.wait_for(transport.close(), timeout=CLOSE_TIMEOUT)
        except TimeoutError:
            _LOGGER.warning("[%s] Transport close timed out", self.url)
        except HubClientError as err:
            _LOGGER.debug("[%s] Transport close failed: %s", self.url, err)
