"""Sliding-window throughput estimate for one running upload."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable


class ThroughputMeter:
    """Bytes/second over the most recent ``window_seconds`` of samples.

    The estimate only moves once the samples span at least ``min_span_seconds``,
    so a burst of quick parts does not produce a spike.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 5.0,
        min_span_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds < min_span_seconds:
            raise ValueError("window_seconds must be >= min_span_seconds.")
        self._window_seconds = window_seconds
        self._min_span_seconds = min_span_seconds
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._rate = 0.0

    @property
    def bytes_per_second(self) -> float:
        return self._rate

    def reset(self, bytes_done: int = 0) -> None:
        self._samples.clear()
        self._samples.append((self._clock(), bytes_done))
        self._rate = 0.0

    def record(self, bytes_done: int) -> float:
        now = self._clock()
        if not self._samples:
            self._samples.append((now, bytes_done))
            return self._rate

        self._samples.append((now, bytes_done))
        while len(self._samples) > 2 and now - self._samples[1][0] >= self._window_seconds:
            self._samples.popleft()

        first_time, first_bytes = self._samples[0]
        span = now - first_time
        if span >= self._min_span_seconds and bytes_done >= first_bytes:
            self._rate = (bytes_done - first_bytes) / span
        return self._rate

    def eta_seconds(self, remaining_bytes: int) -> float | None:
        if remaining_bytes <= 0:
            return 0.0
        if self._rate <= 0:
            return None
        return remaining_bytes / self._rate


__all__ = ["ThroughputMeter"]
