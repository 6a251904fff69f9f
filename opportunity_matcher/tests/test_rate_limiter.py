"""
Tests for the sliding-window rate limiter.
"""

import pytest

from opportunity_matcher.core.exceptions import RateLimitExceeded
from opportunity_matcher.libs.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(max_requests=2, window_seconds=60, max_keys=3, clock=clock)


@pytest.mark.asyncio
async def test_allows_up_to_limit_within_window(limiter):
    assert await limiter.allow("u1") is True
    assert await limiter.allow("u1") is True
    assert await limiter.allow("u1") is False
    assert await limiter.remaining("u1") == 0


@pytest.mark.asyncio
async def test_keys_are_independent(limiter):
    await limiter.allow("u1")
    await limiter.allow("u1")

    assert await limiter.allow("u2") is True
    assert await limiter.remaining("u2") == 1


@pytest.mark.asyncio
async def test_window_slides(limiter, clock):
    await limiter.allow("u1")
    clock.advance(30)
    await limiter.allow("u1")
    assert await limiter.allow("u1") is False

    clock.advance(30)

    assert await limiter.allow("u1") is True
    assert await limiter.allow("u1") is False


@pytest.mark.asyncio
async def test_acquire_raises_with_retry_after(limiter, clock):
    await limiter.acquire("u1")
    clock.advance(10)
    await limiter.acquire("u1")

    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.acquire("u1")

    assert exc_info.value.key == "u1"
    assert exc_info.value.retry_after == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_prune_removes_expired_keys(limiter, clock):
    await limiter.allow("u1")
    clock.advance(45)
    await limiter.allow("u2")
    clock.advance(20)

    removed = await limiter.prune()

    assert removed == 1
    assert len(limiter) == 1
    assert await limiter.remaining("u1") == 2


@pytest.mark.asyncio
async def test_least_recently_active_keys_are_evicted(limiter, clock):
    for key in ("u1", "u2", "u3"):
        await limiter.allow(key)
        clock.advance(1)
    await limiter.allow("u1")
    clock.advance(1)

    await limiter.allow("u4")

    assert len(limiter) == 3
    # u2 was the least recently active key, so its budget is fresh again
    assert await limiter.remaining("u2") == 2
    assert await limiter.remaining("u1") == 0
