"""Backoff schedule and the in-flight guard."""

from __future__ import annotations

import pytest

from racestay.config import Settings
from racestay.errors import OperationInProgressError
from racestay.sync.backoff import ExponentialBackoff
from racestay.sync.inflight import InFlightRegistry


class TestExponentialBackoff:
    def test_reconnect_schedule(self) -> None:
        backoff = ExponentialBackoff.for_reconnect(Settings())
        delays = []
        while (delay := backoff.next_delay()) is not None:
            delays.append(delay)
        assert delays == [1, 2, 4, 8, 16, 30, 30, 30]
        assert backoff.exhausted

    def test_reset(self) -> None:
        backoff = ExponentialBackoff(max_attempts=1)
        assert backoff.next_delay() == 1
        assert backoff.next_delay() is None
        backoff.reset()
        assert backoff.next_delay() == 1

    def test_read_retries_are_bounded(self) -> None:
        backoff = ExponentialBackoff.for_reads(Settings())
        assert [backoff.next_delay() for _ in range(4)] == [1, 2, 4, None]


class TestInFlightRegistry:
    def test_second_claim_rejected(self) -> None:
        registry = InFlightRegistry()
        with registry.guard(("booking", 1)):
            assert registry.is_busy(("booking", 1))
            with pytest.raises(OperationInProgressError):
                with registry.guard(("booking", 1)):
                    pass
            with registry.guard(("booking", 2)):
                assert len(registry) == 2
        assert len(registry) == 0

    def test_released_on_error(self) -> None:
        registry = InFlightRegistry()
        with pytest.raises(ValueError):
            with registry.guard("k"):
                raise ValueError("boom")
        assert not registry.is_busy("k")
