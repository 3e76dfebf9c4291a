"""Tests for the per-channel rate limiter."""

import pytest

from roomrelay.delivery.rate_limiter import RateLimiter


def make_limiter(clock, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, sleep=clock.sleep, **kwargs)


def max_in_rolling_window(times: list[float], window: float = 1.0) -> int:
    return max(sum(1 for u in times if t <= u < t + window) for t in times)


class TestTryAcquire:
    """Non-blocking acquisition."""

    def test_allows_three_per_second(self, clock):
        limiter = make_limiter(clock)
        start = clock.now

        assert [limiter.try_acquire("g1") for _ in range(4)] == [True, True, True, False]

        clock.advance(0.999)
        assert limiter.try_acquire("g1") is False

        clock.now = start + 1.0
        assert limiter.try_acquire("g1") is True

    def test_full_refill_after_window(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            limiter.try_acquire("g1")

        clock.advance(1.0)

        assert limiter.available_tokens("g1") == 3

    def test_channels_are_independent(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            assert limiter.try_acquire("g1")

        assert limiter.try_acquire("g2") is True

    def test_wait_time(self, clock):
        limiter = make_limiter(clock)
        assert limiter.wait_time_ms("g1") == 0

        for _ in range(3):
            limiter.try_acquire("g1")
        clock.advance(0.25)

        assert limiter.wait_time_ms("g1") == 750


class TestAcquire:
    """Blocking acquisition with a wait ceiling."""

    @pytest.mark.asyncio
    async def test_ten_sends_within_half_a_second(self, clock):
        """Three go immediately, the rest are spread so no second sees more than three."""
        limiter = make_limiter(clock)
        start = clock.now
        grants: list[float] = []
        waits = []

        for i in range(10):
            clock.now = max(clock.now, start + i * 0.05)
            result = await limiter.acquire("g1")
            waits.append(result.waited_ms)
            grants.append(clock.now)

        assert waits[:3] == [0, 0, 0]
        assert all(w > 0 for w in waits[3:])
        assert max_in_rolling_window(grants) <= 3
        assert limiter.stats()["g1"]["forced"] == 0

    @pytest.mark.asyncio
    async def test_exceeding_max_wait_proceeds_anyway(self, clock):
        limiter = make_limiter(clock, max_wait_ms=500, forced_sleep_ms=200)
        for _ in range(3):
            await limiter.acquire("g1")

        result = await limiter.acquire("g1")

        assert result.forced is True
        assert clock.sleeps == [0.2]
        assert limiter.stats()["g1"]["forced"] == 1

    @pytest.mark.asyncio
    async def test_custom_limits(self, clock):
        limiter = make_limiter(clock, max_per_window=1, window_ms=2000)

        await limiter.acquire("g1")
        result = await limiter.acquire("g1")

        assert result.waited_ms == 2000
        assert result.forced is False

    @pytest.mark.asyncio
    async def test_one_throttle_per_blocked_call(self, clock):
        """A caller that loses the freed token twice is still throttled once."""
        steals = 2

        async def contended_sleep(seconds: float) -> None:
            nonlocal steals
            await clock.sleep(seconds)
            if steals:
                steals -= 1
                assert limiter.try_acquire("g1") is True

        limiter = RateLimiter(clock=clock, sleep=contended_sleep,
                              max_per_window=1, max_wait_ms=10_000)
        limiter.try_acquire("g1")

        result = await limiter.acquire("g1")

        assert result.waited_ms == 3000
        assert len(clock.sleeps) == 3
        assert limiter.stats()["g1"] == {"granted": 4, "throttled": 1, "forced": 0}


class TestManagement:
    def test_reset_channel(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            limiter.try_acquire("g1")

        limiter.reset_channel("g1")

        assert limiter.try_acquire("g1") is True

    def test_stats_and_clear(self, clock):
        limiter = make_limiter(clock)
        for _ in range(4):
            limiter.try_acquire("g1")

        assert limiter.stats()["g1"] == {"granted": 3, "throttled": 1, "forced": 0}

        limiter.clear()
        assert limiter.stats() == {}
