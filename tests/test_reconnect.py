"""Tests for ReconnectionPolicy."""

from __future__ import annotations

import itertools

import pytest

from hubwire.reconnect import Disconnect, DisconnectReason, ReconnectionPolicy


class TestShouldReconnect:
    """Tests for ReconnectionPolicy.should_reconnect()."""

    @pytest.mark.parametrize(
        "reason",
        [
            DisconnectReason.TRANSPORT_CLOSED,
            DisconnectReason.STALE,
            DisconnectReason.HANDSHAKE_ERROR,
            DisconnectReason.FRAMING_ERROR,
            DisconnectReason.NEGOTIATION_ERROR,
        ],
    )
    def test_reconnects_on_failures(self, reason):
        policy = ReconnectionPolicy()
        assert policy.should_reconnect(Disconnect(reason, allow_reconnect=False)) is True

    def test_server_close(self):
        policy = ReconnectionPolicy()
        assert policy.should_reconnect(
            Disconnect(DisconnectReason.SERVER_CLOSE, allow_reconnect=True)
        )
        assert not policy.should_reconnect(
            Disconnect(DisconnectReason.SERVER_CLOSE, allow_reconnect=False)
        )


class TestNextDelay:
    """Tests for ReconnectionPolicy.next_delay()."""

    def test_exponential_without_jitter(self):
        policy = ReconnectionPolicy(jitter=0.0, random_source=lambda: 0.5)
        assert [policy.next_delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_jitter_range(self):
        low = ReconnectionPolicy(jitter=0.5, random_source=lambda: 0.0)
        high = ReconnectionPolicy(jitter=0.5, random_source=lambda: 1.0)
        assert low.next_delay(1) == 2.0
        assert high.next_delay(1) == 3.0

    def test_non_decreasing_with_worst_case_jitter(self):
        # Alternate extreme jitter draws to stress monotonicity
        draws = itertools.cycle([1.0, 0.0])
        policy = ReconnectionPolicy(
            initial_delay=0.5, multiplier=2.0, jitter=0.9, random_source=lambda: next(draws)
        )
        delays = [policy.next_delay(n) for n in range(12)]
        assert delays == sorted(delays)
        assert max(delays) == 30.0

    def test_max_attempts(self):
        policy = ReconnectionPolicy(max_attempts=2)
        assert policy.next_delay(0) is not None
        assert policy.next_delay(1) is not None
        assert policy.next_delay(2) is None

    def test_large_attempt_is_capped(self):
        assert ReconnectionPolicy(jitter=0.0).next_delay(5000) == 30.0

    def test_delay_for(self):
        policy = ReconnectionPolicy(jitter=0.0)
        assert policy.delay_for(Disconnect(DisconnectReason.STALE), 2) == 4.0
        assert (
            policy.delay_for(
                Disconnect(DisconnectReason.SERVER_CLOSE, allow_reconnect=False), 0
            )
            is None
        )


class TestValidation:
    """Tests for constructor validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"jitter": 1.0, "multiplier": 2.0},
            {"jitter": 0.1, "multiplier": 1.0},
            {"multiplier": 0.5},
            {"initial_delay": -1},
            {"initial_delay": 10, "max_delay": 5},
            {"max_attempts": -1},
        ],
    )
    def test_rejects(self, kwargs):
        with pytest.raises(ValueError):
            ReconnectionPolicy(**kwargs)
