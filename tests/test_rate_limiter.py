from __future__ import annotations

import pytest

from vetting.rate_limiter import TokenBucket


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_burst_then_refill():
    clock = FakeMonotonic()
    bucket = TokenBucket(rate_per_minute=60, burst=3, clock=clock)

    assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    clock.now += 1.0
    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is False


def test_refill_is_capped_at_burst():
    clock = FakeMonotonic()
    bucket = TokenBucket(rate_per_minute=60, burst=2, clock=clock)
    bucket.try_acquire()
    bucket.try_acquire()

    clock.now += 3600
    assert [bucket.try_acquire() for _ in range(3)] == [True, True, False]


@pytest.mark.asyncio
async def test_acquire_gives_up_when_wait_exceeds_limit():
    clock = FakeMonotonic()
    bucket = TokenBucket(rate_per_minute=6, burst=1, clock=clock)

    assert await bucket.acquire() is True
    # The next token is ten seconds away.
    assert await bucket.acquire(max_wait=5.0) is False


@pytest.mark.asyncio
async def test_acquire_waits_for_short_refill():
    bucket = TokenBucket(rate_per_minute=600, burst=1)

    assert await bucket.acquire() is True
    assert await bucket.acquire(max_wait=1.0) is True
