# deadlock_retry/backoff.py

from __future__ import annotations

import random
from typing import Optional, Protocol

from deadlock_retry.config import RetryConfig


class BackoffPolicy(Protocol):

    def next_delay(self, attempt: int, min_wait_ms: int, max_wait_ms: int) -> int:
        """Milliseconds to wait before retry number `attempt` (1-based)."""
        ...


class NoBackoff:
    """Retry immediately."""

    def next_delay(self, attempt: int, min_wait_ms: int, max_wait_ms: int) -> int:
        return 0


class JitteredBackoff:
    """
    Uniform jitter: min_wait_ms + randint(0, spread).

    The spread defaults to max_wait_ms - min_wait_ms, so every delay lands in
    [min_wait_ms, max_wait_ms]. A smaller explicit spread narrows the band.
    """

    def __init__(self, spread_ms: Optional[int] = None, rng: Optional[random.Random] = None):
        if spread_ms is not None and spread_ms < 0:
            raise ValueError(f"spread_ms must be >= 0, got {spread_ms}")
        self.spread_ms = spread_ms
        self._rng = rng or random.Random()

    def next_delay(self, attempt: int, min_wait_ms: int, max_wait_ms: int) -> int:
        spread = max_wait_ms - min_wait_ms
        if self.spread_ms is not None:
            spread = min(spread, self.spread_ms)
        return min_wait_ms + self._rng.randint(0, max(spread, 0))


def make_backoff(config: RetryConfig) -> BackoffPolicy:
    if config.backoff_enabled:
        return JitteredBackoff()
    return NoBackoff()
