"""Unit tests for evidence.services.rate_limiter — per-domain spacing and cooldown."""

import pytest

from evidence.services.rate_limiter import RateLimiter, domain_of


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    opts = dict(min_delay=2.0, max_delay=2.0, window=60.0, max_requests=100, cooldown=5.0)
    opts.update(kwargs)
    return RateLimiter(clock=clock, sleep=clock.sleep, **opts)


class TestDomainOf:
    def test_strips_www_and_lowercases(self):
        assert domain_of("https://www.Example.com/path?q=1") == "example.com"

    def test_keeps_subdomains(self):
        assert domain_of("http://shop.example.com") == "shop.example.com"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_consecutive_requests_are_spaced(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        stamps = []
        for _ in range(5):
            await limiter.wait("https://example.com/a")
            stamps.append(clock.now)
        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(g >= 2.0 for g in gaps)

    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self):
        clock = FakeClock()
        assert await _limiter(clock).wait("https://example.com") == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_no_wait_when_gap_already_elapsed(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        await limiter.wait("example.com")
        clock.now += 10
        assert await limiter.wait("example.com") == 0.0

    @pytest.mark.asyncio
    async def test_cooldown_escalates_past_window_limit(self):
        clock = FakeClock()
        limiter = _limiter(clock, min_delay=1.0, max_delay=1.0, max_requests=2, window=1000.0)
        slept = [await limiter.wait("example.com") for _ in range(4)]
        assert slept == [0.0, 1.0, 6.0, 11.0]

    @pytest.mark.asyncio
    async def test_window_rollover_resets_count(self):
        clock = FakeClock()
        limiter = _limiter(clock, min_delay=1.0, max_delay=1.0, max_requests=1, window=10.0)
        await limiter.wait("example.com")
        await limiter.wait("example.com")
        assert limiter.state("example.com").count_in_window == 2
        clock.now += 100
        assert await limiter.wait("example.com") == 0.0
        assert limiter.state("example.com").count_in_window == 1

    @pytest.mark.asyncio
    async def test_domains_are_independent(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        await limiter.wait("https://a.example.com")
        assert await limiter.wait("https://b.example.com") == 0.0

    @pytest.mark.asyncio
    async def test_reset(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        await limiter.wait("example.com")
        limiter.reset("example.com")
        assert await limiter.wait("example.com") == 0.0

    def test_max_below_min_uses_min(self):
        limiter = RateLimiter(min_delay=3.0, max_delay=1.0)
        assert limiter.max_delay == 3.0
