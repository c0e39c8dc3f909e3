from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from media_upload_engine.domain.schedule import ScheduleRule, ThrottleSchedule
from media_upload_engine.infrastructure.transfers.runtime import (
    BYTES_PER_MB,
    BandwidthThrottle,
    mbps_to_bytes_per_second,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _throttle(clock: FakeClock, bytes_per_second: int = 100, **kwargs: object) -> BandwidthThrottle:
    return BandwidthThrottle(
        bytes_per_second,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,  # type: ignore[arg-type]
    )


def test_traffic_at_the_limit_never_waits() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        throttle = _throttle(clock)
        for _ in range(10):
            assert await throttle.wait_for_bytes(100) == 0.0
            clock.now += 1.0

    asyncio.run(scenario())


def test_double_rate_traffic_is_slowed_to_the_limit() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        throttle = _throttle(clock)
        for _ in range(10):
            await throttle.wait_for_bytes(100)

        assert clock.now == pytest.approx(9.0)
        assert len(clock.sleeps) == 9
        assert throttle.throttled_bytes == 900
        assert throttle.delay_seconds == pytest.approx(9.0)

    asyncio.run(scenario())


def test_disabled_throttle_is_a_no_op() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        throttle = _throttle(clock, bytes_per_second=0)
        assert throttle.enabled is False
        assert await throttle.wait_for_bytes(10_000_000) == 0.0
        assert clock.sleeps == []

    asyncio.run(scenario())


def test_cancel_event_ends_the_wait_and_refunds_the_debit() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        parked = asyncio.Event()

        async def blocking_sleep(seconds: float) -> None:
            clock.sleeps.append(seconds)
            parked.set()
            await asyncio.Event().wait()

        throttle = BandwidthThrottle(100, clock=clock, sleep=blocking_sleep)
        cancel = asyncio.Event()
        waiting = asyncio.create_task(throttle.wait_for_bytes(300, cancel))
        await parked.wait()
        cancel.set()

        assert await asyncio.wait_for(waiting, timeout=5) == 0.0
        assert clock.sleeps == [pytest.approx(2.0)]

        assert await throttle.wait_for_bytes(100) == 0.0
        assert clock.sleeps == [pytest.approx(2.0)]

    asyncio.run(scenario())


def test_already_set_cancel_event_skips_the_sleep() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        throttle = _throttle(clock)
        cancel = asyncio.Event()
        cancel.set()

        assert await throttle.wait_for_bytes(250, cancel) == 0.0
        assert clock.sleeps == []

    asyncio.run(scenario())


def test_schedule_overrides_flat_limit_while_active() -> None:
    clock = FakeClock()
    throttle = _throttle(clock, bytes_per_second=0)
    nights = ThrottleSchedule(
        rules=(ScheduleRule(start_minute=22 * 60, end_minute=6 * 60, speed_limit_mbps=2.0),)
    )

    limit = throttle.configure(0, nights, now=datetime(2024, 1, 2, 12, 0))
    assert limit == 0
    assert throttle.enabled is False

    assert throttle.refresh(datetime(2024, 1, 2, 23, 0)) == 2 * BYTES_PER_MB
    assert throttle.limit_bytes_per_second == 2 * BYTES_PER_MB

    assert throttle.refresh(datetime(2024, 1, 3, 7, 0)) == 0
    assert throttle.enabled is False


def test_mbps_conversion_floors_negative_values() -> None:
    assert mbps_to_bytes_per_second(1.5) == int(1.5 * BYTES_PER_MB)
    assert mbps_to_bytes_per_second(-3) == 0


def test_burst_seconds_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BandwidthThrottle(100, burst_seconds=0)
