"""Tests for the fixed-window login rate limiter."""

import pytest

from gatehouse.service.errors import DependencyUnavailableError
from gatehouse.service.rate_limit import LoginRateLimiter, rate_bucket_key
from gatehouse.storage.redis_cache import MemoryCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class UnreachableCache(MemoryCache):
    async def incr_with_expiry_on_first_write(self, key, ttl_seconds):
        raise ConnectionError("redis unreachable")

    async def delete(self, key):
        raise ConnectionError("redis unreachable")


class TtlBlindCache(MemoryCache):
    async def ttl(self, key):
        raise ConnectionError("redis unreachable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return LoginRateLimiter(MemoryCache(clock=clock), max_attempts=5, window_seconds=600)


class TestLoginRateLimiter:
    """Window of 5 attempts per 10 minutes, keyed by normalized email."""

    def test_bucket_key_is_normalized(self):
        assert rate_bucket_key("  A@Test.COM ") == "login:attempts:a@test.com"

    async def test_sixth_attempt_blocked(self, limiter):
        for expected in range(1, 6):
            decision = await limiter.check("a@test.com")
            assert decision.allowed is True
            assert decision.attempts == expected

        decision = await limiter.check("a@test.com")
        assert decision.allowed is False
        assert decision.attempts == 6

    async def test_case_variants_share_a_bucket(self, limiter):
        for _ in range(5):
            await limiter.check("a@test.com")
        decision = await limiter.check("A@TEST.com")
        assert decision.allowed is False

    async def test_window_resets_after_duration(self, limiter, clock):
        for _ in range(6):
            await limiter.check("a@test.com")

        clock.now = 599
        assert (await limiter.check("a@test.com")).allowed is False

        clock.now = 600
        decision = await limiter.check("a@test.com")
        assert decision.allowed is True
        assert decision.attempts == 1

    async def test_attempts_do_not_extend_the_window(self, limiter, clock):
        await limiter.check("a@test.com")
        for second in (100, 200, 300, 400, 500, 590):
            clock.now = second
            await limiter.check("a@test.com")

        clock.now = 600
        assert (await limiter.check("a@test.com")).attempts == 1

    async def test_blocked_decision_reports_remaining_window(self, limiter, clock):
        for _ in range(5):
            await limiter.check("a@test.com")

        clock.now = 540
        decision = await limiter.check("a@test.com")
        assert decision.allowed is False
        assert decision.retry_after_seconds == 60

    async def test_retry_after_falls_back_to_window_when_ttl_unreadable(self, clock):
        limiter = LoginRateLimiter(
            TtlBlindCache(clock=clock), max_attempts=1, window_seconds=600
        )
        await limiter.check("a@test.com")
        clock.now = 300
        assert (await limiter.check("a@test.com")).retry_after_seconds == 600

    async def test_reset_clears_bucket(self, limiter):
        for _ in range(6):
            await limiter.check("a@test.com")
        await limiter.reset("a@test.com")
        assert (await limiter.check("a@test.com")).allowed is True

    async def test_fail_open_when_cache_unreachable(self):
        limiter = LoginRateLimiter(UnreachableCache(), fail_open=True)
        decision = await limiter.check("a@test.com")
        assert decision.allowed is True
        assert decision.degraded is True
        assert decision.attempts is None

    async def test_fail_closed_when_configured(self):
        limiter = LoginRateLimiter(UnreachableCache(), fail_open=False)
        with pytest.raises(DependencyUnavailableError):
            await limiter.check("a@test.com")

    async def test_reset_failure_is_swallowed(self):
        limiter = LoginRateLimiter(UnreachableCache())
        await limiter.reset("a@test.com")
