"""Per-entity in-flight guard: at most one mutation per key at a time."""

from __future__ import annotations

from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from racestay.errors import OperationInProgressError


class InFlightRegistry:
    """Set of entity keys with a mutation currently awaiting the server."""

    def __init__(self) -> None:
        self._busy: set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._busy

    @contextmanager
    def guard(self, key: Hashable) -> Iterator[None]:
        """Claim ``key`` for the duration of the block; released when the call settles."""
        if key in self._busy:
            raise OperationInProgressError(f"An operation on {key} is already in progress", key=str(key))
        self._busy.add(key)
        try:
            yield
        finally:
            self._busy.discard(key)

    def __len__(self) -> int:
        return len(self._busy)
