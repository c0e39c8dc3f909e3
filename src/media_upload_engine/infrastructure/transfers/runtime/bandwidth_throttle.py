"""Global token-bucket bandwidth throttle shared by all running uploads."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

from media_upload_engine.domain.schedule import ThrottleSchedule

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def mbps_to_bytes_per_second(mbps: float) -> int:
    return max(int(mbps * BYTES_PER_MB), 0)


class BandwidthThrottle:
    """Token bucket with one second of burst at the configured rate.

    ``wait_for_bytes`` debits the bucket under a lock and may drive it negative;
    the caller then sleeps, outside the lock, exactly as long as the refill takes
    to pay the debt back. Later callers queue behind that debt, so the combined
    rate of every transfer stays at the limit. A limit of 0 disables throttling.
    """

    def __init__(
        self,
        bytes_per_second: int = 0,
        *,
        schedule: ThrottleSchedule | None = None,
        burst_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if burst_seconds <= 0:
            raise ValueError("burst_seconds must be > 0.")
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sleep = sleep
        self._burst_seconds = burst_seconds
        self._base_bytes_per_second = max(bytes_per_second, 0)
        self._schedule = schedule
        self._rate = 0.0
        self._capacity = 0.0
        self._tokens = 0.0
        self._last_refill = clock()
        self.throttled_bytes = 0
        self.delay_seconds = 0.0
        self._apply_rate(self._base_bytes_per_second)

    @property
    def enabled(self) -> bool:
        return self._rate > 0

    @property
    def limit_bytes_per_second(self) -> int:
        return int(self._rate)

    def configure(
        self,
        bytes_per_second: int,
        schedule: ThrottleSchedule | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Replace the flat limit and schedule, then apply whichever is active."""

        self._base_bytes_per_second = max(bytes_per_second, 0)
        self._schedule = schedule
        return self.refresh(now or datetime.now().astimezone())

    def refresh(self, now: datetime) -> int:
        """Re-evaluate the time-of-day schedule and return the effective limit."""

        limit = self._base_bytes_per_second
        if self._schedule is not None:
            scheduled_mbps = self._schedule.current_speed_limit_mbps(now)
            if scheduled_mbps is not None:
                limit = mbps_to_bytes_per_second(scheduled_mbps)
        if limit != self.limit_bytes_per_second:
            logger.info(
                "Bandwidth limit changed from %s to %s bytes/s.",
                self.limit_bytes_per_second or "unlimited",
                limit or "unlimited",
            )
            self._apply_rate(limit)
        return limit

    async def wait_for_bytes(
        self,
        byte_count: int,
        cancel_event: asyncio.Event | None = None,
    ) -> float:
        """Debit ``byte_count`` tokens, sleeping off any deficit. Returns the wait.

        When ``cancel_event`` is set during the sleep the wait ends early, the
        debit is refunded and 0.0 is returned.
        """

        if byte_count <= 0 or not self.enabled:
            return 0.0

        async with self._lock:
            if not self.enabled:
                return 0.0
            self._refill_unlocked()
            self._tokens -= byte_count
            wait_seconds = -self._tokens / self._rate if self._tokens < 0 else 0.0
            if wait_seconds > 0:
                self.throttled_bytes += byte_count
                self.delay_seconds += wait_seconds

        if wait_seconds <= 0:
            return 0.0
        if cancel_event is None:
            await self._sleep(wait_seconds)
            return wait_seconds
        if await self._sleep_unless_set(wait_seconds, cancel_event):
            return wait_seconds

        async with self._lock:
            self._tokens = min(self._capacity, self._tokens + byte_count)
        return 0.0

    async def _sleep_unless_set(self, seconds: float, event: asyncio.Event) -> bool:
        if event.is_set():
            return False
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return sleeper.done() and not sleeper.cancelled()

    def _refill_unlocked(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def _apply_rate(self, bytes_per_second: int) -> None:
        if bytes_per_second <= 0:
            self._rate = 0.0
            self._capacity = 0.0
            self._tokens = 0.0
            self._last_refill = self._clock()
            return

        was_enabled = self.enabled
        if was_enabled:
            self._refill_unlocked()
        self._rate = float(bytes_per_second)
        self._capacity = self._rate * self._burst_seconds
        self._tokens = min(self._tokens, self._capacity) if was_enabled else self._capacity
        self._last_refill = self._clock()


__all__ = ["BYTES_PER_MB", "BandwidthThrottle", "mbps_to_bytes_per_second"]
