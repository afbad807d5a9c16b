from __future__ import annotations

import allure
import pytest

from repo_digest.engine.checkpoint import CheckpointStore
from repo_digest.engine.models import BreakerStatus, FailureKind, SourceFile
from repo_digest.engine.orchestrator import Orchestrator, build_prompt
from repo_digest.engine.splitter import split_files

pytestmark = [
    allure.epic("Analysis Engine"),
    allure.feature("Orchestration"),
]


def _files(count: int) -> list[SourceFile]:
    return [
        SourceFile(
            path=f"src/module_{index:02d}.py",
            content=f"def handler_{index}():\n    return {index}\n",
        )
        for index in range(count)
    ]


class _UnwritableStore(CheckpointStore):
    def save(self, key, text, timestamp=None):
        raise OSError("disk full")


class _BrokenStore(CheckpointStore):
    def load(self, key):
        raise RuntimeError("corrupt index")


def test_non_retryable_failures_are_attempted_once(engine_settings, backend_factory) -> None:
    engine_settings.breaker.failure_threshold = 100
    backend = backend_factory(always_fail=True, failure_kind=FailureKind.AUTHENTICATION)
    orchestrator = Orchestrator(backend, engine_settings)

    result = orchestrator.analyze(_files(6))
    orchestrator.shutdown()

    assert backend.call_count == 6
    assert result.total_chunks == 6
    assert result.failed_chunks == result.total_chunks
    assert result.successful_chunks == 0
    assert all(outcome.attempts == 1 for outcome in result.outcomes)
    assert all(outcome.failure == FailureKind.AUTHENTICATION for outcome in result.outcomes)
    assert result.summary.endswith("no analysis was produced.")
    snapshot = orchestrator.metrics.snapshot()
    assert snapshot.retries == 0
    assert snapshot.failures_by_kind == {"authentication": 6}


def test_retryable_failures_succeed_on_third_attempt(engine_settings, backend_factory) -> None:
    engine_settings.breaker.failure_threshold = 100
    engine_settings.retry.max_retries = 3
    backend = backend_factory(failures_before_success=2, failure_kind=FailureKind.RATE_LIMITED)
    orchestrator = Orchestrator(backend, engine_settings)

    result = orchestrator.analyze(_files(4))
    orchestrator.shutdown()

    assert result.successful_chunks == 4
    assert result.failed_chunks == 0
    assert all((outcome.attempts, outcome.retries) == (3, 2) for outcome in result.outcomes)
    assert backend.call_count == 12
    snapshot = orchestrator.metrics.snapshot()
    assert snapshot.retries == 8
    assert snapshot.failures == 8
    assert snapshot.successes == 4
    assert snapshot.success_rate == 1.0


def test_healthy_backend_analyzes_every_file(engine_settings, backend_factory) -> None:
    backend = backend_factory()
    orchestrator = Orchestrator(backend, engine_settings)
    files = _files(10)

    result = orchestrator.analyze(files)
    orchestrator.shutdown()

    assert result.successful_chunks == 10
    assert result.failed_chunks == 0
    assert result.completed_cleanly
    assert orchestrator.breaker.status == BreakerStatus.CLOSED
    assert orchestrator.breaker.open_count == 0
    assert [detail.path for detail in result.details] == [source.path for source in files]
    assert result.details[3].analysis == (
        f"ok {files[3].path} (max {engine_settings.backend.max_output_tokens})"
    )
    assert result.summary == "Analyzed 10 of 10 chunks across 10 files."


def test_open_breaker_rejects_remaining_chunks_without_backend_calls(
    engine_settings,
    backend_factory,
) -> None:
    engine_settings.worker.concurrency = 1
    engine_settings.worker.queue_capacity = 16
    engine_settings.breaker.failure_threshold = 2
    engine_settings.retry.max_retries = 1
    backend = backend_factory(always_fail=True, failure_kind=FailureKind.NETWORK)
    orchestrator = Orchestrator(backend, engine_settings)

    result = orchestrator.analyze(_files(8))
    orchestrator.shutdown()

    rejected = [o for o in result.outcomes if o.failure == FailureKind.BREAKER_OPEN]
    exhausted = [o for o in result.outcomes if o.failure == FailureKind.NETWORK]
    assert rejected
    assert len(rejected) + len(exhausted) == 8
    assert all(outcome.attempts == 0 for outcome in rejected)
    assert all(outcome.attempts == 2 for outcome in exhausted)
    assert backend.call_count == 2 * len(exhausted)
    assert result.breaker_rejected_chunks == len(rejected)
    assert orchestrator.breaker.status == BreakerStatus.OPEN

    snapshot = orchestrator.metrics.snapshot()
    assert snapshot.abandoned_by_kind == {
        "breaker_open": len(rejected),
        "network": len(exhausted),
    }
    assert snapshot.circuit_breaker_opens == len(rejected)
    assert "rejected by the circuit breaker" in result.summary


def test_rerun_is_served_from_checkpoints(engine_settings, backend_factory) -> None:
    files = _files(5)
    first = Orchestrator(backend_factory(), engine_settings)
    first_result = first.analyze(files)
    first.shutdown()

    backend = backend_factory(always_fail=True)
    second = Orchestrator(backend, engine_settings)
    second_result = second.analyze(files)
    second.shutdown()

    assert backend.call_count == 0
    assert second_result.successful_chunks == 5
    assert all(outcome.from_checkpoint for outcome in second_result.outcomes)
    assert [d.analysis for d in second_result.details] == [
        d.analysis for d in first_result.details
    ]
    assert second.metrics.snapshot().checkpoint_hits == 5


def test_identical_chunks_share_one_checkpoint_record(engine_settings, backend_factory) -> None:
    content = "def shared():\n    return 0\n"
    files = [SourceFile(path=path, content=content) for path in ("a.py", "b.py")]
    store = CheckpointStore(engine_settings.checkpoint.directory)
    orchestrator = Orchestrator(backend_factory(), engine_settings, checkpoints=store)

    result = orchestrator.analyze(files)
    orchestrator.shutdown()

    assert result.successful_chunks == 2
    assert store.count() == 1


def test_each_run_reports_only_its_own_counts(engine_settings, backend_factory) -> None:
    engine_settings.checkpoint.enabled = False
    orchestrator = Orchestrator(backend_factory(), engine_settings)

    first = orchestrator.analyze(_files(2))
    second = orchestrator.analyze(_files(3))
    orchestrator.shutdown()

    assert "Requests: started=2 succeeded=2 abandoned=0 discarded=0" in first.metrics_report
    assert "Requests: started=3 succeeded=3 abandoned=0 discarded=0" in second.metrics_report
    assert "Latency: n=3" in " ".join(second.metrics_report)
    assert orchestrator.metrics.snapshot().requests_started == 5


def test_disabled_checkpoints_write_nothing(engine_settings, backend_factory) -> None:
    engine_settings.checkpoint.enabled = False
    orchestrator = Orchestrator(backend_factory(), engine_settings)

    orchestrator.analyze(_files(2))
    orchestrator.shutdown()

    assert not engine_settings.checkpoint.directory.exists()


def test_checkpoint_write_failure_keeps_chunk_successful(engine_settings, backend_factory) -> None:
    store = _UnwritableStore(engine_settings.checkpoint.directory)
    orchestrator = Orchestrator(backend_factory(), engine_settings, checkpoints=store)

    result = orchestrator.analyze(_files(2))
    orchestrator.shutdown()

    assert result.successful_chunks == 2


def test_unexpected_worker_error_becomes_other_failure(engine_settings, backend_factory) -> None:
    store = _BrokenStore(engine_settings.checkpoint.directory)
    backend = backend_factory()
    orchestrator = Orchestrator(backend, engine_settings, checkpoints=store)

    result = orchestrator.analyze(_files(3))
    orchestrator.shutdown()

    assert backend.call_count == 0
    assert result.failed_chunks == 3
    assert {outcome.failure for outcome in result.outcomes} == {FailureKind.OTHER}


def test_invalid_settings_fail_before_dispatch(engine_settings, backend_factory) -> None:
    engine_settings.worker.concurrency = 0
    backend = backend_factory()
    orchestrator = Orchestrator(backend, engine_settings)

    with pytest.raises(ValueError, match="REPO_DIGEST_CONCURRENCY"):
        orchestrator.analyze(_files(2))

    assert backend.call_count == 0
    assert orchestrator.metrics.snapshot().requests_started == 0


def test_stop_before_run_interrupts_every_chunk(engine_settings, backend_factory) -> None:
    backend = backend_factory()
    orchestrator = Orchestrator(backend, engine_settings)
    orchestrator.request_stop()

    result = orchestrator.analyze(_files(3))
    orchestrator.shutdown()

    assert backend.call_count == 0
    assert orchestrator.stop_requested
    assert result.interrupted
    assert not result.completed_cleanly
    assert {outcome.failure for outcome in result.outcomes} == {FailureKind.INTERRUPTED}
    assert "run was interrupted" in result.summary


def test_stop_during_backoff_abandons_chunk(engine_settings, backend_factory) -> None:
    engine_settings.retry.base_delay_seconds = 1.0
    engine_settings.retry.max_delay_seconds = 1.0
    engine_settings.retry.jitter = "none"
    backend = backend_factory(always_fail=True)
    orchestrator = Orchestrator(
        backend,
        engine_settings,
        sleep=lambda _seconds: orchestrator.request_stop(),
    )

    result = orchestrator.analyze(_files(1))
    orchestrator.shutdown()

    outcome = result.outcomes[0]
    assert outcome.failure == FailureKind.INTERRUPTED
    assert (outcome.attempts, outcome.retries) == (1, 1)
    assert backend.call_count == 1


def test_outcomes_are_in_chunk_order(engine_settings, backend_factory) -> None:
    engine_settings.chunking.token_budget = 40
    engine_settings.worker.queue_capacity = 1
    files = [
        SourceFile(
            path="notes.md",
            content="\n".join(f"note {index} about the design" for index in range(60)),
        ),
        *_files(3),
    ]
    orchestrator = Orchestrator(backend_factory(), engine_settings)

    result = orchestrator.analyze(files)
    orchestrator.shutdown()

    assert result.total_chunks > len(files)
    assert [outcome.index for outcome in result.outcomes] == list(range(result.total_chunks))
    notes = result.details[0]
    assert notes.path == "notes.md"
    assert list(notes.chunk_indices) == sorted(notes.chunk_indices)


def test_empty_input_produces_empty_result(engine_settings, backend_factory) -> None:
    orchestrator = Orchestrator(backend_factory(), engine_settings)

    result = orchestrator.analyze([])

    assert result.total_chunks == 0
    assert result.summary == "No chunks to analyze."
    assert orchestrator.shutdown().completed == 0


def test_custom_splitter_is_used(engine_settings, backend_factory) -> None:
    seen: list[tuple[int, int]] = []

    def _splitter(files, token_budget, *, window_overlap_lines=0):
        seen.append((token_budget, window_overlap_lines))
        return split_files(files, token_budget, window_overlap_lines=window_overlap_lines)

    orchestrator = Orchestrator(backend_factory(), engine_settings, splitter=_splitter)
    orchestrator.analyze(_files(1))
    orchestrator.shutdown()

    assert seen == [(4_000, 5)]


def test_shutdown_is_final(engine_settings, backend_factory) -> None:
    orchestrator = Orchestrator(backend_factory(), engine_settings)
    orchestrator.analyze(_files(3))

    report = orchestrator.shutdown()

    assert report.completed == 3
    assert report.discarded == 0
    assert not report.timed_out
    with pytest.raises(RuntimeError, match="shut down"):
        orchestrator.analyze(_files(1))


def test_breaker_is_built_on_first_run(engine_settings, backend_factory) -> None:
    orchestrator = Orchestrator(backend_factory(), engine_settings)

    with pytest.raises(RuntimeError, match="first run"):
        _ = orchestrator.breaker


def test_prompt_carries_chunk_attribution() -> None:
    chunk = split_files(
        [SourceFile(path="app/models.py", content="class User:\n    name = 'x'\n")],
        token_budget=1_000,
    )[0]

    prompt = build_prompt(chunk, max_output_tokens=256)

    assert "File: app/models.py" in prompt
    assert "Lines: 1-2" in prompt
    assert "Part: 1 of 1" in prompt
    assert "Construct: none" in prompt
    assert "at most 256 tokens" in prompt
    assert "class User:\n    name = 'x'" in prompt
