from __future__ import annotations

import allure
import pytest

from repo_digest.engine.metrics import RunMetrics
from repo_digest.engine.models import FailureKind

pytestmark = [
    allure.epic("Analysis Engine"),
    allure.feature("Run Metrics"),
]


def test_empty_run_report() -> None:
    lines = RunMetrics().report()

    assert lines == [
        "Analysis run report",
        "Requests: started=0 succeeded=0 abandoned=0 discarded=0",
        "Success rate: n/a",
        "Attempts: failed=0 retries=0 checkpoint_hits=0 breaker_rejections=0",
        "Failures by kind: none",
        "Abandoned by kind: none",
        "Latency: none",
    ]


def test_report_counts_attempts_and_chunks_separately() -> None:
    metrics = RunMetrics()
    for _ in range(3):
        metrics.record_request_start()
    metrics.record_failure(FailureKind.NETWORK)
    metrics.record_retry()
    metrics.record_success(1.0)
    metrics.record_success(3.0)
    metrics.record_failure(FailureKind.AUTHENTICATION)
    metrics.record_abandoned(FailureKind.AUTHENTICATION)
    metrics.record_checkpoint_hit()
    metrics.record_discarded(2)
    metrics.record_discarded(0)

    snapshot = metrics.snapshot()
    lines = metrics.report()

    assert snapshot.abandoned == 1
    assert snapshot.success_rate == pytest.approx(2 / 3)
    assert lines[1] == "Requests: started=3 succeeded=2 abandoned=1 discarded=2"
    assert lines[2] == "Success rate: 66.67%"
    assert lines[3] == "Attempts: failed=2 retries=1 checkpoint_hits=1 breaker_rejections=0"
    assert lines[4] == "Failures by kind: authentication=1 network=1"
    assert lines[5] == "Abandoned by kind: authentication=1"
    assert lines[6] == "Latency: n=2 p50=2.00s p90=2.80s p99=2.98s max=3.00s"


def test_latency_percentiles_interpolate() -> None:
    metrics = RunMetrics()
    for value in (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.1):
        metrics.record_success(value)

    latency = metrics.snapshot().latency

    assert latency.sample_size == 11
    assert latency.p50_seconds == pytest.approx(0.6)
    assert latency.p90_seconds == pytest.approx(1.0)
    assert latency.max_seconds == pytest.approx(1.1)


def test_negative_latency_is_clamped() -> None:
    metrics = RunMetrics()
    metrics.record_success(-0.5)

    assert metrics.snapshot().latencies_seconds == (0.0,)
