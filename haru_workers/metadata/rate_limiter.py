"""
Request Throttle for the Gemini API.

Implements client-side flow control with:
- A hard ceiling on in-flight requests (blocking, no queue of its own)
- Minimum spacing between consecutive dispatches
- Exponential backoff helper for retries
- Thread-safe shared state
"""

import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limiter configuration."""
    max_concurrent_requests: int = 5
    request_delay_seconds: float = 1.0  # Spacing between dispatches
    max_retries: int = 3  # Total attempts per call
    base_backoff_seconds: float = 1.0
    jitter_seconds: float = 0.0  # Upper bound of random extra backoff
    timeout_seconds: float = 30.0  # Per AI call


def compute_backoff(attempt: int, base_seconds: float, jitter_seconds: float = 0.0) -> float:
    """
    Delay before retrying after the given (1-based) failed attempt.

    base * 2^(attempt-1), plus uniform jitter in [0, jitter_seconds].
    """
    delay = base_seconds * (2 ** (attempt - 1))
    if jitter_seconds > 0:
        delay += random.uniform(0, jitter_seconds)
    return delay


class RequestThrottle:
    """
    Thread-safe throttle shared by every AI call in the process.

    Features:
    - slot() context manager holds one of max_concurrent_requests permits
      and always gives it back
    - wait_for_turn() spaces dispatches by request_delay_seconds
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._semaphore = threading.BoundedSemaphore(self.config.max_concurrent_requests)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._next_dispatch = 0.0
        self._total_dispatches = 0

        logger.info(
            f"RequestThrottle: max {self.config.max_concurrent_requests} in flight, "
            f"{self.config.request_delay_seconds}s spacing"
        )

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one in-flight permit for the duration of the block."""
        self._semaphore.acquire()
        with self._lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
            self._semaphore.release()

    def wait_for_turn(self) -> float:
        """
        Block until this caller may dispatch.

        Returns:
            Seconds waited
        """
        with self._lock:
            now = self._clock()
            dispatch_at = max(now, self._next_dispatch)
            self._next_dispatch = dispatch_at + self.config.request_delay_seconds
            self._total_dispatches += 1

        wait = dispatch_at - now
        if wait > 0:
            logger.debug(f"Spacing requests: waiting {wait:.2f}s")
            self._sleep(wait)
        return wait

    def update_delay(self, request_delay_seconds: float) -> None:
        with self._lock:
            self.config.request_delay_seconds = request_delay_seconds

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "in_flight": self._in_flight,
                "peak_in_flight": self._peak_in_flight,
                "max_concurrent_requests": self.config.max_concurrent_requests,
                "request_delay_seconds": self.config.request_delay_seconds,
                "total_dispatches": self._total_dispatches,
            }

    def reset(self) -> None:
        with self._lock:
            self._next_dispatch = 0.0
            self._peak_in_flight = self._in_flight
            self._total_dispatches = 0
