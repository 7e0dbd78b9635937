"""Adaptive pacing and per-request backoff."""

import pytest

from doctor_finder.config import PacingConfig
from doctor_finder.rate_limiter import (
    BLOCKED,
    OTHER_ERROR,
    RATE_LIMITED,
    SERVER_ERROR,
    SUCCESS,
    AdaptiveRateLimiter,
    retry_delay,
)


def make_limiter(**overrides):
    pacing = PacingConfig(min_delay=0.05, initial_delay=0.1, max_delay=2.0, **overrides)
    slept = []
    clock = [0.0]
    limiter = AdaptiveRateLimiter(pacing, name="test", sleep=slept.append, clock=lambda: clock[0])
    return limiter, slept, clock


def test_five_successes_speed_up_by_a_fifth():
    limiter, _, _ = make_limiter()
    for _ in range(4):
        limiter.record(SUCCESS)
    assert limiter.delay == pytest.approx(0.1)
    limiter.record(SUCCESS)
    assert limiter.delay == pytest.approx(0.08)
    assert limiter.consecutive_successes == 0


def test_blocked_slows_down_at_least_fivefold():
    limiter, _, _ = make_limiter()
    for _ in range(5):
        limiter.record(SUCCESS)
    limiter.record(BLOCKED)
    assert limiter.delay == pytest.approx(0.4)
    assert limiter.delay >= 0.4 - 1e-9
    assert limiter.consecutive_errors == 1


def test_slowdown_is_clamped_to_ceiling():
    limiter, _, _ = make_limiter()
    for _ in range(10):
        limiter.record(BLOCKED)
    assert limiter.delay == pytest.approx(2.0)


def test_speedup_is_clamped_to_floor():
    limiter, _, _ = make_limiter()
    for _ in range(100):
        limiter.record(SUCCESS)
    assert limiter.delay == pytest.approx(0.05)


def test_severity_ordering():
    delays = {}
    for outcome in (BLOCKED, RATE_LIMITED, SERVER_ERROR, OTHER_ERROR):
        limiter, _, _ = make_limiter()
        limiter.record(outcome)
        delays[outcome] = limiter.delay
    assert delays[BLOCKED] > delays[RATE_LIMITED] > delays[SERVER_ERROR] > delays[OTHER_ERROR] > 0.1


def test_error_resets_success_streak():
    limiter, _, _ = make_limiter()
    for _ in range(4):
        limiter.record(SUCCESS)
    limiter.record(OTHER_ERROR)
    for _ in range(4):
        limiter.record(SUCCESS)
    assert limiter.delay == pytest.approx(0.15)


def test_zero_delay_can_still_slow_down():
    pacing = PacingConfig(min_delay=0.0, initial_delay=0.0, max_delay=1.0)
    limiter = AdaptiveRateLimiter(pacing, sleep=lambda s: None)
    limiter.record(RATE_LIMITED)
    assert limiter.delay > 0


def test_wait_spaces_requests_by_current_delay():
    limiter, slept, clock = make_limiter()
    assert limiter.wait() == 0
    waited = limiter.wait()
    assert waited == pytest.approx(0.1)
    assert slept == [pytest.approx(0.1)]
    clock[0] = 5.0
    assert limiter.wait() == 0
    assert limiter.total_requests == 3


def test_retry_delay_is_exponential_and_capped():
    assert retry_delay(1, 2.0) == pytest.approx(2.0)
    assert retry_delay(2, 2.0) == pytest.approx(4.0)
    assert retry_delay(3, 2.0) == pytest.approx(8.0)
    assert retry_delay(10, 2.0, maximum=30.0) == pytest.approx(30.0)


def test_snapshot():
    limiter, _, _ = make_limiter()
    limiter.record(SERVER_ERROR)
    snap = limiter.snapshot
    assert snap["name"] == "test"
    assert snap["delay_ms"] == pytest.approx(200.0)
    assert snap["total_errors"] == 1
