"""Concurrent chunk dispatch with rate limiting, circuit breaking, retries and checkpoints."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import CancelledError, Future, as_completed
from typing import Protocol

from repo_digest.config import Settings
from repo_digest.engine.backend.base import AnalysisBackend
from repo_digest.engine.checkpoint import CheckpointStore, checkpoint_key
from repo_digest.engine.circuit_breaker import CircuitBreaker
from repo_digest.engine.failure_classifier import classify_exception
from repo_digest.engine.interrupts import AnalysisInterrupted, sleep_with_stop
from repo_digest.engine.metrics import RunMetrics, RunMetricsSnapshot, render_report_lines
from repo_digest.engine.models import (
    AnalysisResult,
    Chunk,
    ChunkOutcome,
    FailureKind,
    FileDetail,
    ShutdownReport,
    SourceFile,
)
from repo_digest.engine.pool import WorkerPool
from repo_digest.engine.rate_limiter import RateLimiter, default_permits_per_second
from repo_digest.engine.retry import JitterStrategy, RetryPolicy
from repo_digest.engine.splitter import split_files

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """\
Review the following source chunk. Describe its purpose, point out bugs,
risky constructs and maintainability problems, and suggest concrete
improvements. Answer in plain text using at most {max_output_tokens} tokens.

File: {path}
Lines: {start_line}-{end_line}
Part: {part} of {parts}
Construct: {construct}

```
{content}
```
"""
CHUNK_SEPARATOR = "\n\n"


class Splitter(Protocol):
    def __call__(
        self,
        files: Sequence[SourceFile],
        token_budget: int,
        *,
        window_overlap_lines: int = ...,
    ) -> list[Chunk]: ...


def build_prompt(chunk: Chunk, *, max_output_tokens: int) -> str:
    """Render the fixed instruction template around one chunk."""

    construct = f"{chunk.kind} {chunk.identifier}" if chunk.kind and chunk.identifier else "none"
    return PROMPT_TEMPLATE.format(
        max_output_tokens=max_output_tokens,
        path=chunk.path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        part=chunk.part + 1,
        parts=chunk.parts,
        construct=construct,
        content=chunk.content,
    )


class Orchestrator:
    """Runs one analysis task per chunk on a bounded pool and aggregates the outcomes.

    Breaker, rate limiter, checkpoints and metrics are owned objects shared by
    every worker; pass them in to share state across orchestrators or to
    observe them from tests. Missing ones are built from ``settings`` when the
    first run starts.
    """

    def __init__(  # noqa: PLR0913
        self,
        backend: AnalysisBackend,
        settings: Settings,
        *,
        splitter: Splitter | None = None,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        checkpoints: CheckpointStore | None = None,
        metrics: RunMetrics | None = None,
        retry_policy: RetryPolicy | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.metrics = metrics or RunMetrics()
        self._splitter: Splitter = splitter or split_files
        self._rate_limiter = rate_limiter
        self._breaker = breaker
        self._checkpoints = checkpoints
        self._retry_policy = retry_policy
        self._rng = rng or random.Random()  # noqa: S311
        self._sleep = sleep
        self._stop_event = stop_event or threading.Event()
        self._pool: WorkerPool | None = None
        self._pool_lock = threading.Lock()
        self._shut_down = False

    @property
    def breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            raise RuntimeError("Circuit breaker is built when the first run starts.")
        return self._breaker

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Ask waiting workers to give up; in-flight backend calls still finish."""

        if not self._stop_event.is_set():
            logger.warning("Stop requested; abandoning chunks waiting on rate limit or backoff")
        self._stop_event.set()

    def analyze(self, files: Sequence[SourceFile]) -> AnalysisResult:
        """Analyze ``files`` and block until every chunk task has resolved.

        Raises ``ValueError`` for invalid settings before any chunk is
        dispatched. Chunk failures never raise; they are counted in the result.
        """

        self.settings.validate()
        if self._shut_down:
            raise RuntimeError("Orchestrator is shut down.")
        self._build_components()
        breaker = self.breaker
        breaker.reset()

        chunks = self._splitter(
            files,
            self.settings.chunking.token_budget,
            window_overlap_lines=self.settings.chunking.window_overlap_lines,
        )
        logger.info("Dispatching %d chunks from %d files", len(chunks), len(files))

        baseline = self.metrics.snapshot()
        outcomes, discarded = self._dispatch(chunks)
        result = self._aggregate(chunks, outcomes, discarded=discarded, baseline=baseline)
        for line in result.metrics_report:
            logger.info("%s", line)
        return result

    def shutdown(self, timeout_seconds: float | None = None) -> ShutdownReport:
        """Stop accepting runs, wait up to the bound, then discard unstarted tasks."""

        timeout = (
            self.settings.worker.shutdown_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        with self._pool_lock:
            self._shut_down = True
            pool = self._pool
        if pool is None:
            return ShutdownReport(completed=0, discarded=0, timed_out=False)
        report = pool.shutdown(timeout)
        for line in self.metrics.report():
            logger.info("%s", line)
        return report

    def _build_components(self) -> None:
        settings = self.settings
        if self._breaker is None:
            self._breaker = CircuitBreaker(
                settings.breaker.failure_threshold,
                settings.breaker.reset_timeout_seconds,
            )
        if self._rate_limiter is None:
            permits = settings.rate_limit.permits_per_second or default_permits_per_second(
                settings.worker.concurrency,
            )
            self._rate_limiter = RateLimiter(permits, sleep=self._sleep)
        if self._retry_policy is None:
            self._retry_policy = RetryPolicy(
                max_retries=settings.retry.max_retries,
                base_delay_seconds=settings.retry.base_delay_seconds,
                max_delay_seconds=settings.retry.max_delay_seconds,
                jitter=JitterStrategy(settings.retry.jitter),
            )
        if self._checkpoints is None and settings.checkpoint.enabled:
            self._checkpoints = CheckpointStore(settings.checkpoint.directory)

    def _ensure_pool(self) -> WorkerPool:
        with self._pool_lock:
            if self._shut_down:
                raise RuntimeError("Orchestrator is shut down.")
            if self._pool is None:
                self._pool = WorkerPool(
                    self.settings.worker.concurrency,
                    self.settings.worker.queue_capacity,
                    thread_name_prefix="repo-digest-worker",
                )
            return self._pool

    def _dispatch(self, chunks: list[Chunk]) -> tuple[dict[int, ChunkOutcome], set[int]]:
        if not chunks:
            return {}, set()
        pool = self._ensure_pool()
        futures: dict[Future[ChunkOutcome], int] = {}
        for chunk in chunks:
            futures[pool.submit(self._process_chunk, chunk)] = chunk.index

        outcomes: dict[int, ChunkOutcome] = {}
        discarded: set[int] = set()
        for future in as_completed(futures):
            index = futures[future]
            try:
                outcomes[index] = future.result()
            except CancelledError:
                discarded.add(index)

        submitted = {chunk.index for chunk in chunks}
        resolved = set(outcomes) | discarded
        if resolved != submitted:
            raise RuntimeError(
                f"Resolved chunk indices do not match submitted ones: "
                f"missing={sorted(submitted - resolved)} extra={sorted(resolved - submitted)}",
            )
        return outcomes, discarded

    def _process_chunk(self, chunk: Chunk) -> ChunkOutcome:
        try:
            return self._run_state_machine(chunk)
        except Exception:
            logger.exception("Unexpected error while analyzing %s", chunk.source_label)
            self.metrics.record_abandoned(FailureKind.OTHER)
            return ChunkOutcome(
                index=chunk.index,
                source_files=(chunk.path,),
                text=None,
                failure=FailureKind.OTHER,
            )

    def _run_state_machine(self, chunk: Chunk) -> ChunkOutcome:  # noqa: C901
        breaker = self.breaker
        rate_limiter = self._rate_limiter
        policy = self._retry_policy
        if rate_limiter is None or policy is None:
            raise RuntimeError("Orchestrator components are not built.")

        source_files = (chunk.path,)
        key = checkpoint_key(chunk.content)
        self.metrics.record_request_start()

        if self._checkpoints is not None and self.settings.checkpoint.enabled:
            record = self._checkpoints.load(key)
            if record is not None:
                self.metrics.record_success(0.0)
                self.metrics.record_checkpoint_hit()
                logger.debug("Checkpoint hit for %s", chunk.source_label)
                return ChunkOutcome(
                    index=chunk.index,
                    source_files=source_files,
                    text=record.result,
                    from_checkpoint=True,
                    latency_seconds=0.0,
                )

        if not breaker.allow_request():
            self.metrics.record_circuit_breaker_open()
            self.metrics.record_abandoned(FailureKind.BREAKER_OPEN)
            logger.debug("Circuit breaker open; skipping %s", chunk.source_label)
            return ChunkOutcome(
                index=chunk.index,
                source_files=source_files,
                text=None,
                failure=FailureKind.BREAKER_OPEN,
            )

        max_output_tokens = self.settings.backend.max_output_tokens
        failure: FailureKind = FailureKind.OTHER
        attempts = 0
        retries = 0
        for attempt in range(policy.max_retries + 1):
            try:
                rate_limiter.acquire(self._stop_event)
            except AnalysisInterrupted:
                return self._interrupted(chunk, attempts=attempts, retries=retries)

            attempts += 1
            prompt = build_prompt(chunk, max_output_tokens=max_output_tokens)
            started = time.monotonic()
            try:
                text = self.backend.analyze(prompt, max_output_tokens)
            except Exception as error:  # noqa: BLE001
                failure = classify_exception(error)
                breaker.record_failure()
                self.metrics.record_failure(failure)
                logger.warning(
                    "Backend call failed for %s (attempt %d, kind=%s): %s",
                    chunk.source_label,
                    attempt + 1,
                    failure.value,
                    error,
                )
                if not policy.should_retry(failure, attempt):
                    break
                retries += 1
                self.metrics.record_retry()
                delay = policy.delay(attempt, self._rng)
                logger.debug("Retrying %s in %.2fs", chunk.source_label, delay)
                try:
                    sleep_with_stop(delay, self._stop_event, sleep=self._sleep)
                except AnalysisInterrupted:
                    return self._interrupted(chunk, attempts=attempts, retries=retries)
                continue

            latency = time.monotonic() - started
            self.metrics.record_success(latency)
            breaker.record_success()
            self._save_checkpoint(key, text, chunk)
            return ChunkOutcome(
                index=chunk.index,
                source_files=source_files,
                text=text,
                attempts=attempts,
                retries=retries,
                latency_seconds=latency,
            )

        self.metrics.record_abandoned(failure)
        logger.warning(
            "Abandoning %s after %d attempt(s): %s",
            chunk.source_label,
            attempts,
            failure.value,
        )
        return ChunkOutcome(
            index=chunk.index,
            source_files=source_files,
            text=None,
            failure=failure,
            attempts=attempts,
            retries=retries,
        )

    def _interrupted(self, chunk: Chunk, *, attempts: int, retries: int) -> ChunkOutcome:
        self.metrics.record_abandoned(FailureKind.INTERRUPTED)
        logger.info("Interrupted while waiting on %s", chunk.source_label)
        return ChunkOutcome(
            index=chunk.index,
            source_files=(chunk.path,),
            text=None,
            failure=FailureKind.INTERRUPTED,
            attempts=attempts,
            retries=retries,
        )

    def _save_checkpoint(self, key: str, text: str, chunk: Chunk) -> None:
        if self._checkpoints is None or not self.settings.checkpoint.enabled:
            return
        try:
            self._checkpoints.save(key, text)
        except OSError as error:
            logger.warning("Could not save checkpoint for %s: %s", chunk.source_label, error)

    def _aggregate(
        self,
        chunks: list[Chunk],
        outcomes: dict[int, ChunkOutcome],
        *,
        discarded: set[int],
        baseline: RunMetricsSnapshot,
    ) -> AnalysisResult:
        ordered = [outcomes[chunk.index] for chunk in chunks if chunk.index in outcomes]
        by_path: dict[str, list[ChunkOutcome]] = {}
        for chunk in chunks:
            by_path.setdefault(chunk.path, [])
        for outcome in ordered:
            for path in outcome.source_files:
                by_path.setdefault(path, []).append(outcome)

        details: list[FileDetail] = []
        for path, file_outcomes in by_path.items():
            succeeded = [outcome for outcome in file_outcomes if outcome.succeeded]
            details.append(
                FileDetail(
                    path=path,
                    chunk_indices=tuple(outcome.index for outcome in succeeded),
                    analysis=CHUNK_SEPARATOR.join(outcome.text or "" for outcome in succeeded),
                    failed_chunks=len(file_outcomes) - len(succeeded),
                ),
            )

        successful = sum(1 for outcome in ordered if outcome.succeeded)
        failed = len(ordered) - successful
        rejected = sum(1 for outcome in ordered if outcome.failure == FailureKind.BREAKER_OPEN)
        interrupted = self.stop_requested or any(
            outcome.failure == FailureKind.INTERRUPTED for outcome in ordered
        )
        self.metrics.record_discarded(len(discarded))
        return AnalysisResult(
            total_chunks=len(chunks),
            successful_chunks=successful,
            failed_chunks=failed,
            breaker_rejected_chunks=rejected,
            details=tuple(details),
            summary=_summarize(
                total=len(chunks),
                successful=successful,
                failed=failed,
                rejected=rejected,
                files=len(details),
                discarded=len(discarded),
                interrupted=interrupted,
            ),
            interrupted=interrupted,
            discarded_chunks=len(discarded),
            metrics_report=tuple(
                render_report_lines(snapshot=self.metrics.snapshot().since(baseline)),
            ),
            outcomes=tuple(ordered),
        )


def _summarize(  # noqa: PLR0913
    *,
    total: int,
    successful: int,
    failed: int,
    rejected: int,
    files: int,
    discarded: int,
    interrupted: bool,
) -> str:
    if total == 0:
        return "No chunks to analyze."
    summary = f"Analyzed {successful} of {total} chunks across {files} files"
    if failed:
        summary += f"; {failed} failed"
        if rejected:
            summary += f" ({rejected} rejected by the circuit breaker)"
    if discarded:
        summary += f"; {discarded} discarded at shutdown"
    if interrupted:
        summary += "; run was interrupted"
    if successful == 0:
        summary += "; no analysis was produced"
    return summary + "."
