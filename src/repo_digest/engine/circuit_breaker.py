"""Process-wide circuit breaker guarding the analysis backend."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from repo_digest.engine.models import BreakerSnapshot, BreakerStatus

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Fails fast once ``failure_threshold`` consecutive failures are seen.

    While OPEN, requests are rejected until ``reset_timeout_seconds`` have
    passed since opening. After that requests are let through as trials: a
    success closes the breaker, a failure reopens it and restarts the timer.
    Failures of calls admitted before the breaker opened are counted but do
    not move the reopen time.
    """

    def __init__(
        self,
        failure_threshold: int,
        reset_timeout_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0.")
        if reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must be >= 0.")
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._status = BreakerStatus.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._open_count = 0
        self._trial_granted = False

    @property
    def status(self) -> BreakerStatus:
        with self._lock:
            return self._status

    @property
    def open_count(self) -> int:
        """How many times the breaker opened since construction or the last reset."""

        with self._lock:
            return self._open_count

    def allow_request(self) -> bool:
        with self._lock:
            if self._status == BreakerStatus.CLOSED:
                return True
            if self._opened_at is None:
                return True
            if self._clock() - self._opened_at < self.reset_timeout_seconds:
                return False
            self._trial_granted = True
            return True

    def record_success(self) -> None:
        with self._lock:
            was_open = self._status == BreakerStatus.OPEN
            self._status = BreakerStatus.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial_granted = False
        if was_open:
            logger.info("Circuit breaker closed after successful trial request")

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._status == BreakerStatus.OPEN:
                if not self._trial_granted:
                    return
                # Failed trial: reopen and restart the timer.
                self._trial_granted = False
                self._opened_at = self._clock()
                self._open_count += 1
                failures = self._consecutive_failures
                reopened = True
            elif self._consecutive_failures >= self.failure_threshold:
                self._status = BreakerStatus.OPEN
                self._opened_at = self._clock()
                self._open_count += 1
                failures = self._consecutive_failures
                reopened = False
            else:
                return
        logger.warning(
            "Circuit breaker %s after %d consecutive failures; rejecting requests for %.1fs",
            "reopened" if reopened else "opened",
            failures,
            self.reset_timeout_seconds,
        )

    def reset(self) -> None:
        with self._lock:
            self._status = BreakerStatus.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._open_count = 0
            self._trial_granted = False

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                status=self._status,
                consecutive_failures=self._consecutive_failures,
                opened_at=self._opened_at,
                failure_threshold=self.failure_threshold,
                reset_timeout_seconds=self.reset_timeout_seconds,
            )
