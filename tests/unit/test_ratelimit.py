from __future__ import annotations

import pytest

from conftest import FakeClock
from ugc_motion.ratelimit import SlidingWindowRateLimiter


def test_allows_up_to_capacity_within_window() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)
    assert limiter.allow()
    assert limiter.allow()
    decision = limiter.request()
    assert not decision.allowed
    assert decision.reason == "rate_limited"
    assert decision.retry_after_s == pytest.approx(60.0)


def test_entries_expire_after_window() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)
    limiter.allow()
    clock.sleep(30)
    limiter.allow()
    clock.sleep(29)
    decision = limiter.request()
    assert not decision.allowed
    assert decision.retry_after_s == pytest.approx(1.0)
    clock.sleep(1)
    assert limiter.allow()


def test_acquire_sleeps_on_the_clock() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)
    assert limiter.acquire() == 0.0
    assert limiter.acquire() == 0.0
    waited = limiter.acquire()
    assert waited == pytest.approx(60.0)
    assert clock.now() == pytest.approx(60.0)


def test_no_more_than_capacity_in_any_window() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock)
    accepted = []
    for _ in range(6):
        limiter.acquire()
        accepted.append(clock.now())
        clock.sleep(5)
    for i, ts in enumerate(accepted):
        in_window = [t for t in accepted if ts <= t < ts + 60.0]
        assert len(in_window) <= 2, (i, accepted)


def test_request_larger_than_capacity_is_rejected() -> None:
    limiter = SlidingWindowRateLimiter(2, 60.0, clock=FakeClock())
    decision = limiter.request(tokens=3)
    assert decision.reason == "exceeds_capacity"
    with pytest.raises(ValueError):
        limiter.acquire(tokens=3)


def test_invalid_construction() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0, 60.0)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(2, 0)
