"""Exponential backoff with jitter for sync retries."""

import random


class Backoff:
    """Delay sequence initial, 2x initial, 4x initial ... capped at ``maximum``.

    Each delay is scaled by a random factor in ``[1 - jitter, 1 + jitter]``.
    """

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ):
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def next_delay(self) -> float:
        """Record a failure and return how long to wait before retrying."""
        base = min(self.initial * (2 ** min(self._failures, 32)), self.maximum)
        self._failures += 1
        if not self.jitter:
            return base
        return base * self._rng.uniform(1 - self.jitter, 1 + self.jitter)

    def reset(self) -> None:
        self._failures = 0
