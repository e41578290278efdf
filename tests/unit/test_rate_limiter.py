"""
Unit Tests - SlidingWindowRateLimiter and ExponentialBackoff
"""

import random
import threading

import pytest

from firi_sync.errors import SyncCancelledError
from firi_sync.exchange.rate_limiter import ExponentialBackoff, SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:

    def test_first_slots_are_immediate(self, limiter, fake_clock):
        for _ in range(6):
            assert limiter.wait_for_slot() == 0.0
        assert fake_clock.sleeps == []

    def test_seventh_request_waits_for_window(self, limiter, fake_clock):
        for _ in range(6):
            limiter.wait_for_slot()

        waited = limiter.wait_for_slot()

        assert waited == pytest.approx(1.0)
        assert fake_clock.sleeps == [pytest.approx(1.0)]

    def test_min_delay_applied_after_each_slot(self, fake_clock):
        limiter = SlidingWindowRateLimiter(
            6, 1.0, 0.25, clock=fake_clock.now, sleep=fake_clock.sleep
        )
        limiter.wait_for_slot()
        limiter.wait_for_slot()
        assert fake_clock.sleeps == [0.25, 0.25]

    def test_stats_and_reset(self, limiter):
        for _ in range(3):
            limiter.wait_for_slot()

        stats = limiter.get_stats()
        assert stats["requests_in_window"] == 3
        assert stats["total_granted"] == 3
        assert stats["max_requests"] == 6

        limiter.reset()
        assert limiter.get_stats()["requests_in_window"] == 0
        assert limiter.get_stats()["total_granted"] == 0

    def test_cancelled_event_raises(self, limiter):
        event = threading.Event()
        event.set()
        with pytest.raises(SyncCancelledError):
            limiter.wait_for_slot(cancel_event=event)

    @pytest.mark.parametrize("max_requests,window", [(0, 1.0), (6, 0.0), (-1, 1.0)])
    def test_rejects_invalid_parameters(self, max_requests, window):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(max_requests, window)


class TestExponentialBackoff:

    def test_doubles_without_jitter(self):
        backoff = ExponentialBackoff(jitter=0.0)
        assert [backoff.delay_for(a) for a in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_jitter_stays_within_ten_percent(self):
        backoff = ExponentialBackoff(rng=random.Random(7))
        for _ in range(50):
            assert 0.9 <= backoff.delay_for(0) <= 1.1
