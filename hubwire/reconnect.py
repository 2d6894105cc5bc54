"""Reconnection policy with capped exponential backoff."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class DisconnectReason(Enum):
    """Why an established or pending connection went away."""

    TRANSPORT_CLOSED = "transport_closed"
    SERVER_CLOSE = "server_close"
    STALE = "stale"
    HANDSHAKE_ERROR = "handshake_error"
    FRAMING_ERROR = "framing_error"
    NEGOTIATION_ERROR = "negotiation_error"


@dataclass(frozen=True, slots=True)
class Disconnect:
    """Disconnect event fed to the policy."""

    reason: DisconnectReason
    allow_reconnect: bool = True
    error: BaseException | None = None


class ReconnectionPolicy:
    """Computes reconnect delays.

    ``next_delay(n)`` is ``initial_delay * multiplier**n`` stretched by a
    jitter factor in ``[1, 1 + jitter]`` and clamped to ``max_delay``. Keeping
    ``jitter`` below ``multiplier - 1`` makes the sequence non-decreasing.
    """

    def __init__(
        self,
        *,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.5,
        max_attempts: int | None = None,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        if initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be at least initial_delay")
        if jitter < 0:
            raise ValueError("jitter must not be negative")
        if multiplier > 1 and jitter >= multiplier - 1:
            raise ValueError("jitter must be smaller than multiplier - 1")
        if multiplier == 1 and jitter:
            raise ValueError("jitter requires a multiplier above 1")
        if max_attempts is not None and max_attempts < 0:
            raise ValueError("max_attempts must not be negative")

        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._random = random_source

    def should_reconnect(self, disconnect: Disconnect) -> bool:
        """Only a server close that forbids it stops reconnection."""
        if disconnect.reason is DisconnectReason.SERVER_CLOSE:
            return disconnect.allow_reconnect
        return True

    def base_delay(self, attempt: int) -> float:
        """Backoff without jitter for a zero-based attempt number."""
        if attempt < 0:
            raise ValueError("attempt must not be negative")
        # Past this point the cap applies anyway; avoids float overflow
        if self.multiplier > 1 and attempt > 64:
            return self.max_delay
        return min(self.initial_delay * self.multiplier**attempt, self.max_delay)

    def next_delay(self, attempt: int) -> float | None:
        """Delay before reconnect attempt ``attempt``, or None when exhausted."""
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        base = self.base_delay(attempt)
        factor = 1.0 + self.jitter * min(max(self._random(), 0.0), 1.0)
        return min(base * factor, self.max_delay)

    def delay_for(self, disconnect: Disconnect, attempt: int) -> float | None:
        """Delay for the next attempt after ``disconnect``, or None to stop."""
        if not self.should_reconnect(disconnect):
            return None
        return self.next_delay(attempt)
