"""Run metrics for analysis dispatch."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field

from repo_digest.engine.models import FailureKind


@dataclass(slots=True, frozen=True)
class LatencyPercentiles:
    """Latency percentiles over successful backend calls."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float
    max_seconds: float


@dataclass(slots=True, frozen=True)
class RunMetricsSnapshot:
    """Consistent copy of run counters taken under the metrics lock."""

    requests_started: int
    successes: int
    failures: int
    retries: int
    circuit_breaker_opens: int
    checkpoint_hits: int
    discarded: int
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    abandoned_by_kind: dict[str, int] = field(default_factory=dict)
    latencies_seconds: tuple[float, ...] = ()

    @property
    def abandoned(self) -> int:
        return sum(self.abandoned_by_kind.values())

    @property
    def success_rate(self) -> float | None:
        return _safe_ratio(
            numerator=self.successes,
            denominator=self.successes + self.abandoned,
        )

    @property
    def latency(self) -> LatencyPercentiles:
        values = list(self.latencies_seconds)
        return LatencyPercentiles(
            sample_size=len(values),
            p50_seconds=_percentile(values, 0.50),
            p90_seconds=_percentile(values, 0.90),
            p99_seconds=_percentile(values, 0.99),
            max_seconds=max(values, default=0.0),
        )

    def since(self, baseline: RunMetricsSnapshot) -> RunMetricsSnapshot:
        """Counts recorded after ``baseline`` was taken from the same metrics."""

        return RunMetricsSnapshot(
            requests_started=self.requests_started - baseline.requests_started,
            successes=self.successes - baseline.successes,
            failures=self.failures - baseline.failures,
            retries=self.retries - baseline.retries,
            circuit_breaker_opens=self.circuit_breaker_opens - baseline.circuit_breaker_opens,
            checkpoint_hits=self.checkpoint_hits - baseline.checkpoint_hits,
            discarded=self.discarded - baseline.discarded,
            failures_by_kind=_subtract(self.failures_by_kind, baseline.failures_by_kind),
            abandoned_by_kind=_subtract(self.abandoned_by_kind, baseline.abandoned_by_kind),
            latencies_seconds=self.latencies_seconds[len(baseline.latencies_seconds) :],
        )


class RunMetrics:
    """Counters shared by every worker, accumulated over every run.

    ``successes`` and abandoned chunks are counted per chunk; ``failures`` and
    ``retries`` are counted per backend attempt.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_started = 0
        self._successes = 0
        self._failures = 0
        self._retries = 0
        self._breaker_opens = 0
        self._checkpoint_hits = 0
        self._discarded = 0
        self._failures_by_kind = Counter[str]()
        self._abandoned_by_kind = Counter[str]()
        self._latencies: list[float] = []

    def record_request_start(self) -> None:
        with self._lock:
            self._requests_started += 1

    def record_success(self, latency_seconds: float) -> None:
        with self._lock:
            self._successes += 1
            self._latencies.append(max(0.0, latency_seconds))

    def record_failure(self, kind: FailureKind) -> None:
        with self._lock:
            self._failures += 1
            self._failures_by_kind[kind.value] += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_circuit_breaker_open(self) -> None:
        with self._lock:
            self._breaker_opens += 1

    def record_checkpoint_hit(self) -> None:
        with self._lock:
            self._checkpoint_hits += 1

    def record_abandoned(self, kind: FailureKind) -> None:
        with self._lock:
            self._abandoned_by_kind[kind.value] += 1

    def record_discarded(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._discarded += count

    def snapshot(self) -> RunMetricsSnapshot:
        with self._lock:
            return RunMetricsSnapshot(
                requests_started=self._requests_started,
                successes=self._successes,
                failures=self._failures,
                retries=self._retries,
                circuit_breaker_opens=self._breaker_opens,
                checkpoint_hits=self._checkpoint_hits,
                discarded=self._discarded,
                failures_by_kind=dict(sorted(self._failures_by_kind.items())),
                abandoned_by_kind=dict(sorted(self._abandoned_by_kind.items())),
                latencies_seconds=tuple(self._latencies),
            )

    def report(self) -> list[str]:
        return render_report_lines(snapshot=self.snapshot())


def render_report_lines(*, snapshot: RunMetricsSnapshot) -> list[str]:
    """Render operator-facing run report lines."""

    latency = snapshot.latency
    lines = [
        "Analysis run report",
        (
            f"Requests: started={snapshot.requests_started} "
            f"succeeded={snapshot.successes} "
            f"abandoned={snapshot.abandoned} "
            f"discarded={snapshot.discarded}"
        ),
        f"Success rate: {_fmt_ratio(snapshot.success_rate)}",
        (
            f"Attempts: failed={snapshot.failures} retries={snapshot.retries} "
            f"checkpoint_hits={snapshot.checkpoint_hits} "
            f"breaker_rejections={snapshot.circuit_breaker_opens}"
        ),
        "Failures by kind: " + (_fmt_key_value(snapshot.failures_by_kind) or "none"),
        "Abandoned by kind: " + (_fmt_key_value(snapshot.abandoned_by_kind) or "none"),
    ]
    if latency.sample_size:
        lines.append(
            f"Latency: n={latency.sample_size} "
            f"p50={latency.p50_seconds:.2f}s "
            f"p90={latency.p90_seconds:.2f}s "
            f"p99={latency.p99_seconds:.2f}s "
            f"max={latency.max_seconds:.2f}s",
        )
    else:
        lines.append("Latency: none")
    return lines


def _subtract(current: dict[str, int], baseline: dict[str, int]) -> dict[str, int]:
    delta = {key: count - baseline.get(key, 0) for key, count in current.items()}
    return {key: count for key, count in delta.items() if count > 0}


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
