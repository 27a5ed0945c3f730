"""Retry policy — pure decision function for transient task failures.

Key exports:
    RetryPolicy — decide(attempts, max_retries) -> RetryDecision
    RetryDecision — {retry, delay_ms}
"""

from __future__ import annotations

import random
from dataclasses import dataclass

DEFAULT_BASE_DELAY_MS = 500
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


class RetryPolicy:
    """Exponential backoff with bounded jitter.

    ``attempts`` passed to ``decide`` is the number of retries already made,
    so a task is invoked at most ``max_retries + 1`` times. The policy does no
    I/O; pass a seeded ``random.Random`` for deterministic delays.
    """

    def __init__(
        self,
        *,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        jitter_ratio: float = DEFAULT_JITTER_RATIO,
        rng: random.Random | None = None,
    ):
        if base_delay_ms < 0 or max_delay_ms < 0:
            msg = "Retry delays must be non-negative"
            raise ValueError(msg)
        if not 0 <= jitter_ratio <= 1:
            msg = f"jitter_ratio must be within [0, 1], got {jitter_ratio}"
            raise ValueError(msg)
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def decide(self, attempts: int, max_retries: int) -> RetryDecision:
        if attempts >= max_retries:
            return RetryDecision(retry=False, delay_ms=0)
        delay = min(self.base_delay_ms * 2**attempts, self.max_delay_ms)
        jitter = self._rng.uniform(0, delay * self.jitter_ratio)
        return RetryDecision(retry=True, delay_ms=int(delay + jitter))
