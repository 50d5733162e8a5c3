"""Capped exponential backoff with a bounded number of attempts."""

from __future__ import annotations

from dataclasses import dataclass

from racestay.config import Settings


@dataclass
class ExponentialBackoff:
    """1s, 2s, 4s, ... capped at ``maximum``; ``None`` once attempts run out."""

    base: float = 1.0
    maximum: float = 30.0
    max_attempts: int = 8
    attempts: int = 0

    @classmethod
    def for_reconnect(cls, settings: Settings) -> ExponentialBackoff:
        return cls(
            base=settings.sync_backoff_base_seconds,
            maximum=settings.sync_backoff_max_seconds,
            max_attempts=settings.sync_max_reconnect_attempts,
        )

    @classmethod
    def for_reads(cls, settings: Settings) -> ExponentialBackoff:
        return cls(
            base=settings.sync_backoff_base_seconds,
            maximum=settings.sync_backoff_max_seconds,
            max_attempts=settings.sync_read_retry_attempts,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float | None:
        if self.exhausted:
            return None
        delay = min(self.base * (2 ** self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
