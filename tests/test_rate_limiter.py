"""Tests for the per-worker RateLimiter."""

import pytest

from contentqueue.services.rate_limiter import GENERATION, PUBLISHING, RateLimit, RateLimiter


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: list = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def limiter(clock):
    return RateLimiter(
        {GENERATION: RateLimit(requests_per_minute=3, requests_per_hour=5,
                               burst_limit=2, burst_seconds=10.0)},
        clock=clock, sleep=clock.sleep,
    )


class TestCheck:

    def test_unknown_service_is_unlimited(self, limiter):
        for _ in range(100):
            limiter.record(PUBLISHING)
        assert limiter.check(PUBLISHING).allowed

    def test_burst_limit_and_wait(self, limiter, clock):
        limiter.record(GENERATION)
        clock.now += 4
        limiter.record(GENERATION)

        check = limiter.check(GENERATION)

        assert not check.allowed
        assert "burst" in check.reason
        assert check.wait_seconds == pytest.approx(6.0)

    def test_per_minute_limit(self, limiter, clock):
        for _ in range(3):
            limiter.record(GENERATION)
            clock.now += 11

        check = limiter.check(GENERATION)

        assert not check.allowed
        assert "per-minute" in check.reason
        assert check.wait_seconds == pytest.approx(60 - 33)

    def test_per_hour_limit(self, limiter, clock):
        for _ in range(5):
            limiter.record(GENERATION)
            clock.now += 61

        check = limiter.check(GENERATION)

        assert not check.allowed
        assert "per-hour" in check.reason

    def test_old_requests_slide_out(self, limiter, clock):
        for _ in range(5):
            limiter.record(GENERATION)
            clock.now += 61
        clock.now += 3600
        assert limiter.check(GENERATION).allowed
        assert limiter.usage(GENERATION) == {"last_minute": 0, "last_hour": 0}

    def test_zero_ceiling_is_not_enforced(self, clock):
        limiter = RateLimiter({GENERATION: RateLimit(0, 0)}, clock=clock)
        for _ in range(50):
            limiter.record(GENERATION)
        assert limiter.check(GENERATION).allowed


class TestAcquire:

    def test_acquire_without_waiting(self, limiter, clock):
        assert limiter.acquire(GENERATION) == 0.0
        assert clock.sleeps == []
        assert limiter.usage(GENERATION)["last_minute"] == 1

    def test_acquire_waits_for_the_window(self, limiter, clock):
        limiter.acquire(GENERATION)
        limiter.acquire(GENERATION)

        waited = limiter.acquire(GENERATION)

        assert waited == pytest.approx(10.0)
        assert clock.sleeps == [pytest.approx(10.0)]
        assert limiter.usage(GENERATION)["last_minute"] == 3


class TestReset:

    def test_reset_one_service(self, limiter):
        limiter.record(GENERATION)
        limiter.record(PUBLISHING)

        limiter.reset(GENERATION)

        assert limiter.usage(GENERATION)["last_hour"] == 0
        assert limiter.usage(PUBLISHING)["last_hour"] == 1

    def test_reset_all(self, limiter):
        limiter.record(GENERATION)
        limiter.record(GENERATION)
        limiter.reset()
        assert limiter.check(GENERATION).allowed

    def test_instances_do_not_share_counts(self, clock):
        limits = {GENERATION: RateLimit(requests_per_minute=1, requests_per_hour=0)}
        first = RateLimiter(limits, clock=clock)
        second = RateLimiter(limits, clock=clock)

        first.record(GENERATION)

        assert not first.check(GENERATION).allowed
        assert second.check(GENERATION).allowed


class TestFromSettings:

    def test_limits_come_from_settings(self, settings):
        limiter = RateLimiter.from_settings(settings)
        assert limiter.limits[GENERATION].requests_per_minute == settings.generation_requests_per_minute
        assert limiter.limits[PUBLISHING].burst_limit == settings.publish_burst_limit
