from __future__ import annotations

import random

import pytest

from media_upload_engine.domain.retry_policy import MIN_RETRY_DELAY_SECONDS, RetryPolicy


def test_max_attempts_counts_the_first_attempt() -> None:
    policy = RetryPolicy(max_attempts=3)

    assert policy.should_retry(1) is True
    assert policy.should_retry(2) is True
    assert policy.should_retry(3) is False


def test_nominal_delay_doubles_and_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=30.0)

    assert [policy.nominal_delay(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 30.0, 30.0]


def test_jittered_delay_stays_within_fraction() -> None:
    policy = RetryPolicy(base_delay_seconds=10.0, jitter_fraction=0.2)
    rng = random.Random(42)

    delays = [policy.delay_for(1, rng) for _ in range(200)]

    assert all(8.0 <= delay <= 12.0 for delay in delays)
    assert len(set(delays)) > 1


def test_delay_never_drops_below_one_second() -> None:
    policy = RetryPolicy(base_delay_seconds=0.2, max_delay_seconds=0.2, jitter_fraction=0.0)

    assert policy.delay_for(1) == MIN_RETRY_DELAY_SECONDS


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_seconds": 0},
        {"base_delay_seconds": 10, "max_delay_seconds": 5},
        {"jitter_fraction": 1.0},
    ],
)
def test_invalid_policies_are_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)  # type: ignore[arg-type]
