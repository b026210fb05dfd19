"""
Unit tests for the dual-window rate limiter
"""
import asyncio

import pytest

from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.config import RateLimitSettings
from pos_sync.utils.exceptions import OperationCancelled, WouldExceedDeadline
from pos_sync.utils.rate_limiting import RateLimiter, RateLimiterRegistry, TokenBucket


def max_in_window(times, window):
    """Largest number of grants inside any half-open window of ``window`` seconds"""
    times = sorted(times)
    best, start = 0, 0
    for end, t in enumerate(times):
        while t - times[start] >= window - 1e-9:
            start += 1
        best = max(best, end - start + 1)
    return best


class TestTokenBucket:

    def test_capacity_then_wait(self):
        bucket = TokenBucket(capacity=2, window=1.0)
        bucket.consume(0.0)
        bucket.consume(0.1)

        assert bucket.tokens(0.2) == 0
        assert bucket.time_until_available(0.2) == pytest.approx(0.8)
        assert bucket.tokens(1.0) == 1

    def test_status(self):
        bucket = TokenBucket(capacity=4, window=1.0)
        bucket.consume(0.0)

        status = bucket.get_status(0.5)
        assert status["tokens"] == 3
        assert status["utilization"] == pytest.approx(0.25)


class TestRateLimiter:
    """Test that both ceilings hold under load"""

    @pytest.fixture
    def limiter(self, fake_clock):
        return RateLimiter(RateLimitSettings(requests_per_second=10, requests_per_minute=100),
                           clock=fake_clock, sleep=fake_clock.sleep, name="test")

    async def test_150_requests_respect_both_windows(self, limiter, fake_clock):
        """150 sequential acquires never exceed 10 in any second or 100 in any minute"""
        start = fake_clock()
        grants = []
        for _ in range(150):
            await limiter.acquire()
            grants.append(fake_clock())

        assert max_in_window(grants, 1.0) <= 10
        assert max_in_window(grants, 60.0) <= 100
        assert fake_clock() - start >= 14
        assert limiter.stats["total_grants"] == 150

    async def test_concurrent_callers_share_ceiling(self, limiter, fake_clock):
        grants = []

        async def call():
            await limiter.acquire()
            grants.append(fake_clock())

        await asyncio.gather(*(call() for _ in range(40)))

        assert len(grants) == 40
        assert max_in_window(grants, 1.0) <= 10

    async def test_no_wait_under_limit(self, limiter, fake_clock):
        waited = await limiter.acquire()

        assert waited == 0.0
        assert fake_clock.sleeps == []

    async def test_would_exceed_deadline(self, limiter, fake_clock):
        for _ in range(10):
            await limiter.acquire()

        with pytest.raises(WouldExceedDeadline) as exc_info:
            await limiter.acquire(deadline=fake_clock() + 0.1)

        assert exc_info.value.wait_seconds > 0.1
        assert limiter.stats["deadline_rejections"] == 1

    async def test_cancel_token_deadline_is_honoured(self, limiter, fake_clock):
        token = CancellationToken(deadline=fake_clock() + 0.5, clock=fake_clock)
        for _ in range(10):
            await limiter.acquire(cancel_token=token)

        with pytest.raises(WouldExceedDeadline):
            await limiter.acquire(cancel_token=token)

    async def test_cancelled_token_stops_waiting(self, limiter):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await limiter.acquire(cancel_token=token)

    async def test_pause_blocks_grants(self, limiter, fake_clock):
        start = fake_clock()
        limiter.pause(2.5)

        await limiter.acquire()

        assert fake_clock() - start >= 2.5
        assert limiter.stats["pauses"] == 1
        assert limiter.stats["last_pause_seconds"] == 2.5

    def test_pause_never_shortens(self, limiter, fake_clock):
        limiter.pause(5)
        limiter.pause(1)

        assert limiter.paused_until == pytest.approx(fake_clock() + 5)

    def test_get_status(self, limiter):
        status = limiter.get_status()

        assert status["name"] == "test"
        assert status["burst"]["capacity"] == 10
        assert status["sustained"]["capacity"] == 100


class TestRateLimiterRegistry:

    def test_one_limiter_per_integration(self):
        registry = RateLimiterRegistry(RateLimitSettings())

        first = registry.get("integration-a")
        assert registry.get("integration-a") is first
        assert registry.get("integration-b") is not first
        assert len(registry) == 2

        registry.remove("integration-a")
        assert registry.get("integration-a") is not first
