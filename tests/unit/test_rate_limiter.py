"""
Unit tests for RequestThrottle.

Tests the in-flight ceiling, dispatch spacing and backoff helper using
an injected clock so nothing actually sleeps.
"""

import threading

import pytest

pytestmark = pytest.mark.unit


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestComputeBackoff:
    """Tests for compute_backoff."""

    def test_exponential(self):
        """Test base * 2^(attempt-1)."""
        from haru_workers.metadata.rate_limiter import compute_backoff

        assert [compute_backoff(a, 1.0) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert compute_backoff(2, 0.5) == 1.0

    def test_jitter_bounds(self):
        """Test jitter adds at most jitter_seconds."""
        from haru_workers.metadata.rate_limiter import compute_backoff

        for _ in range(50):
            delay = compute_backoff(1, 1.0, jitter_seconds=0.25)
            assert 1.0 <= delay <= 1.25


class TestRequestThrottle:
    """Tests for RequestThrottle."""

    def test_first_dispatch_immediate(self):
        """Test the first caller does not wait."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        clock = FakeClock()
        throttle = RequestThrottle(RateLimitConfig(request_delay_seconds=1.0), clock=clock, sleep=clock.sleep)

        assert throttle.wait_for_turn() == 0
        assert clock.sleeps == []

    def test_back_to_back_dispatches_spaced(self):
        """Test three immediate dispatches are spaced by the configured delay."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        clock = FakeClock()
        throttle = RequestThrottle(RateLimitConfig(request_delay_seconds=1.0), clock=clock, sleep=clock.sleep)

        # Reserve slots without advancing the clock, as concurrent callers would
        waits = []
        for _ in range(3):
            saved = clock.now
            waits.append(throttle.wait_for_turn())
            clock.now = saved

        assert waits == [0, 1.0, 2.0]
        assert clock.sleeps == [1.0, 2.0]

    def test_no_wait_after_idle(self):
        """Test callers arriving after the spacing window do not wait."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        clock = FakeClock()
        throttle = RequestThrottle(RateLimitConfig(request_delay_seconds=1.0), clock=clock, sleep=clock.sleep)

        throttle.wait_for_turn()
        clock.now += 5
        assert throttle.wait_for_turn() == 0

    def test_slot_tracks_in_flight(self):
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        throttle = RequestThrottle(RateLimitConfig(max_concurrent_requests=2))

        with throttle.slot():
            assert throttle.in_flight == 1
            with throttle.slot():
                assert throttle.in_flight == 2
        assert throttle.in_flight == 0
        assert throttle.get_stats()["peak_in_flight"] == 2

    def test_slot_released_on_exception(self):
        """Test a failing block still gives its permit back."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        throttle = RequestThrottle(RateLimitConfig(max_concurrent_requests=1))

        with pytest.raises(RuntimeError):
            with throttle.slot():
                raise RuntimeError("boom")

        assert throttle.in_flight == 0
        # The single permit must be available again
        acquired = threading.Event()

        def worker():
            with throttle.slot():
                acquired.set()

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join(timeout=2)
        assert acquired.is_set()

    def test_ceiling_enforced_across_threads(self):
        """Test no more than max_concurrent_requests blocks run at once."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        throttle = RequestThrottle(RateLimitConfig(max_concurrent_requests=2, request_delay_seconds=0))
        lock = threading.Lock()
        active = [0]
        peak = [0]
        release = threading.Event()

        def worker():
            with throttle.slot():
                with lock:
                    active[0] += 1
                    peak[0] = max(peak[0], active[0])
                release.wait(0.05)
                with lock:
                    active[0] -= 1

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert peak[0] <= 2
        assert throttle.in_flight == 0

    def test_update_delay_and_stats(self):
        from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle

        clock = FakeClock()
        throttle = RequestThrottle(RateLimitConfig(request_delay_seconds=1.0), clock=clock, sleep=clock.sleep)
        throttle.update_delay(0.25)
        throttle.wait_for_turn()

        stats = throttle.get_stats()
        assert stats["request_delay_seconds"] == 0.25
        assert stats["total_dispatches"] == 1

        throttle.reset()
        assert throttle.get_stats()["total_dispatches"] == 0
