"""Token-bucket limiter shared by every component that calls API-Football.

One instance is created at startup and handed to the client; the sync job, the
worker and the aggregator all go through that client, so the provider's rate
limit is enforced in exactly one place instead of ad-hoc sleeps.
"""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    ``acquire()`` blocks until a token is available; ``pause()`` lets the
    caller push back the next allowed request (e.g. when the provider reports
    that the remaining quota is nearly exhausted).
    """

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._blocked_until = 0.0
        self._lock = threading.Lock()
        self.total_acquired = 0
        self.total_waited = 0.0

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    def _reserve(self, tokens: int) -> float:
        """Take tokens if possible; otherwise return how long to wait. Lock held."""
        now = self._clock()
        if now < self._blocked_until:
            return self._blocked_until - now
        self._refill(now)
        if self._tokens >= tokens:
            self._tokens -= tokens
            self.total_acquired += tokens
            return 0.0
        return (tokens - self._tokens) / self.rate

    def try_acquire(self, tokens: int = 1) -> bool:
        """Non-blocking acquire."""
        with self._lock:
            return self._reserve(tokens) == 0.0

    def acquire(self, tokens: int = 1) -> float:
        """Block until ``tokens`` are available. Returns seconds spent waiting."""
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        waited = 0.0
        while True:
            with self._lock:
                wait = self._reserve(tokens)
            if wait <= 0:
                if waited:
                    with self._lock:
                        self.total_waited += waited
                return waited
            self._sleep(wait)
            waited += wait

    def pause(self, seconds: float) -> None:
        """Refuse all acquisitions for the next ``seconds``."""
        if seconds <= 0:
            return
        with self._lock:
            until = self._clock() + seconds
            if until > self._blocked_until:
                self._blocked_until = until
                logger.warning(f"⏸️ Upstream requests paused for {seconds:.1f}s")

    def stats(self) -> dict:
        with self._lock:
            self._refill(self._clock())
            return {
                'rate_per_second': self.rate,
                'capacity': self.capacity,
                'available_tokens': round(self._tokens, 3),
                'total_acquired': self.total_acquired,
                'total_waited_seconds': round(self.total_waited, 3),
            }
