"""Smooth permit-based rate limiter shared by all workers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from repo_digest.engine.interrupts import sleep_with_stop

logger = logging.getLogger(__name__)

PERMITS_PER_WORKER_PER_SECOND = 2.0


def default_permits_per_second(concurrency: int) -> float:
    """Permit rate derived from worker concurrency when none is configured."""

    return max(1, concurrency) * PERMITS_PER_WORKER_PER_SECOND


class RateLimiter:
    """Hands out permits spaced ``1 / permits_per_second`` apart.

    Permits do not accumulate while idle, so a quiet period never turns into a
    burst. Each caller reserves the next free slot under the lock and waits for
    it outside the lock; admission order among waiters is not guaranteed.
    """

    def __init__(
        self,
        permits_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if permits_per_second <= 0:
            raise ValueError("permits_per_second must be > 0.")
        self.permits_per_second = permits_per_second
        self._interval = 1.0 / permits_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_free_at: float | None = None

    def acquire(self, stop_event: threading.Event | None = None) -> float:
        """Block until a permit is available; return the seconds spent waiting."""

        with self._lock:
            now = self._clock()
            slot = now if self._next_free_at is None else max(now, self._next_free_at)
            self._next_free_at = slot + self._interval
            wait_seconds = slot - now

        if wait_seconds > 0:
            logger.debug("Rate limiter wait %.3fs", wait_seconds)
            sleep_with_stop(wait_seconds, stop_event, sleep=self._sleep)
        elif stop_event is not None:
            sleep_with_stop(0.0, stop_event)
        return wait_seconds
