"""Exponential backoff with jitter for failed upload attempts."""

from __future__ import annotations

import random
from dataclasses import dataclass

MIN_RETRY_DELAY_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Retry limits and backoff shape.

    ``max_attempts`` counts every admitted attempt, the first one included.
    Retry numbering starts at 1 for the first retry.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    jitter_fraction: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")
        if not 0 <= self.jitter_fraction < 1:
            raise ValueError("jitter_fraction must be within [0, 1).")

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def nominal_delay(self, retry_number: int) -> float:
        """Un-jittered delay for the given retry number."""

        exponent = max(retry_number - 1, 0)
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def delay_for(self, retry_number: int, rng: random.Random | None = None) -> float:
        delay = self.nominal_delay(retry_number)
        if self.jitter_fraction > 0:
            jitter_window = delay * self.jitter_fraction
            delay += (rng or random).uniform(-jitter_window, jitter_window)
        return max(delay, MIN_RETRY_DELAY_SECONDS)


__all__ = ["MIN_RETRY_DELAY_SECONDS", "RetryPolicy"]
