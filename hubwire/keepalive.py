"""Keep-alive bookkeeping for an open hub connection.

The monitor only tracks timestamps; the connection owns the timer that asks
it what to do. Every query takes an optional ``now`` so tests can drive it
without a real clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable

DEFAULT_KEEP_ALIVE_INTERVAL = 15.0
SERVER_TIMEOUT_FACTOR = 2.0


class KeepAliveMonitor:
    """Detects a silent hub and decides when to send a ping."""

    def __init__(
        self,
        keep_alive_interval: float = DEFAULT_KEEP_ALIVE_INTERVAL,
        server_timeout: float | None = None,
        *,
        send_pings: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if keep_alive_interval <= 0:
            raise ValueError("keep_alive_interval must be positive")
        if server_timeout is not None and server_timeout <= 0:
            raise ValueError("server_timeout must be positive")

        self._interval = keep_alive_interval
        self._explicit_timeout = server_timeout
        self._send_pings = send_pings
        self._clock = clock
        self._last_received: float | None = None
        self._last_sent: float | None = None

    @property
    def keep_alive_interval(self) -> float:
        return self._interval

    @property
    def server_timeout(self) -> float:
        if self._explicit_timeout is not None:
            return self._explicit_timeout
        return self._interval * SERVER_TIMEOUT_FACTOR

    @property
    def running(self) -> bool:
        return self._last_received is not None

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def configure(self, keep_alive_interval: float) -> None:
        """Apply a server advertised interval.

        A server timeout given explicitly at construction is kept; a derived
        one follows the new interval.
        """
        if keep_alive_interval <= 0:
            raise ValueError("keep_alive_interval must be positive")
        self._interval = keep_alive_interval

    def start(self, now: float | None = None) -> None:
        current = self._now(now)
        self._last_received = current
        self._last_sent = current

    def stop(self) -> None:
        self._last_received = None
        self._last_sent = None

    def frame_received(self, now: float | None = None) -> None:
        if self.running:
            self._last_received = self._now(now)

    def frame_sent(self, now: float | None = None) -> None:
        if self.running:
            self._last_sent = self._now(now)

    def is_stale(self, now: float | None = None) -> bool:
        """True once nothing arrived for ``server_timeout`` seconds."""
        if self._last_received is None:
            return False
        return self._now(now) - self._last_received >= self.server_timeout

    def ping_due(self, now: float | None = None) -> bool:
        """True when nothing was sent for a full interval."""
        if not self._send_pings or self._last_sent is None:
            return False
        return self._now(now) - self._last_sent >= self._interval

    def seconds_until_due(self, now: float | None = None) -> float:
        """Seconds until the next stale check or ping is needed."""
        if self._last_received is None or self._last_sent is None:
            return self._interval
        current = self._now(now)
        until_stale = self._last_received + self.server_timeout - current
        if not self._send_pings:
            return max(until_stale, 0.0)
        until_ping = self._last_sent + self._interval - current
        return max(min(until_stale, until_ping), 0.0)
