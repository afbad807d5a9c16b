"""Bounded thread pool with caller-runs backpressure."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, TypeVar

from repo_digest.engine.models import ShutdownReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerPool:
    """Runs up to ``2 * core_size`` tasks in parallel with ``queue_capacity`` more queued.

    When admission is exhausted the submitting thread executes the task itself
    and receives an already-resolved future, so work is never dropped.
    """

    def __init__(
        self,
        core_size: int,
        queue_capacity: int,
        *,
        thread_name_prefix: str = "repo-digest",
    ) -> None:
        if core_size <= 0:
            raise ValueError("core_size must be > 0.")
        if queue_capacity < 0:
            raise ValueError("queue_capacity must be >= 0.")
        self.core_size = core_size
        self.max_workers = core_size * 2
        self.queue_capacity = queue_capacity
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._admission = threading.BoundedSemaphore(self.max_workers + queue_capacity)
        self._lock = threading.Lock()
        self._pending: set[Future[Any]] = set()
        self._completed = 0
        self._caller_runs = 0
        self._closed = False

    @property
    def caller_runs(self) -> int:
        """How many tasks ran on the submitting thread."""

        with self._lock:
            return self._caller_runs

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        with self._lock:
            if self._closed:
                raise RuntimeError("Worker pool is shut down.")

        if not self._admission.acquire(blocking=False):
            return self._run_on_caller(fn, *args)

        try:
            future = self._executor.submit(self._run_counted, fn, *args)
        except RuntimeError:
            self._admission.release()
            raise
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def shutdown(self, timeout_seconds: float) -> ShutdownReport:
        """Wait up to ``timeout_seconds`` for tasks, then cancel those not yet started."""

        with self._lock:
            self._closed = True
            pending = set(self._pending)

        _, not_done = wait(pending, timeout=max(0.0, timeout_seconds))
        discarded = sum(1 for future in not_done if future.cancel())
        self._executor.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            completed = self._completed
        report = ShutdownReport(
            completed=completed,
            discarded=discarded,
            timed_out=bool(not_done),
        )
        logger.info(
            "Worker pool shut down: completed=%d discarded=%d timed_out=%s",
            report.completed,
            report.discarded,
            report.timed_out,
        )
        return report

    def _run_on_caller(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        with self._lock:
            self._caller_runs += 1
        logger.debug("Worker pool saturated; running task on submitting thread")
        future: Future[T] = Future()
        future.set_running_or_notify_cancel()
        try:
            result = self._run_counted(fn, *args)
        except Exception as error:  # noqa: BLE001
            future.set_exception(error)
        else:
            future.set_result(result)
        return future

    def _run_counted(self, fn: Callable[..., T], *args: Any) -> T:
        # Counted before the future resolves.
        try:
            return fn(*args)
        finally:
            with self._lock:
                self._completed += 1

    def _on_done(self, future: Future[Any]) -> None:
        self._admission.release()
        with self._lock:
            self._pending.discard(future)
