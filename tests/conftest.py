"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from repo_digest.config import Settings
from repo_digest.engine.backend.base import BackendError
from repo_digest.engine.models import FailureKind


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in [key for key in os.environ if key.startswith("REPO_DIGEST_")]:
        monkeypatch.delenv(name, raising=False)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedBackend:
    """Thread-safe fake backend that fails according to a per-prompt script."""

    def __init__(
        self,
        *,
        failures_before_success: int = 0,
        failure_kind: FailureKind = FailureKind.NETWORK,
        always_fail: bool = False,
    ) -> None:
        self.failures_before_success = failures_before_success
        self.failure_kind = failure_kind
        self.always_fail = always_fail
        self.calls: list[str] = []
        self._attempts: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def analyze(self, prompt: str, max_output_tokens: int) -> str:
        with self._lock:
            self.calls.append(prompt)
            attempt = self._attempts.get(prompt, 0) + 1
            self._attempts[prompt] = attempt
        if self.always_fail or attempt <= self.failures_before_success:
            raise BackendError(f"scripted failure #{attempt}", kind=self.failure_kind)
        first_line = next(
            (line for line in prompt.splitlines() if line.startswith("File: ")),
            "File: ?",
        )
        return f"ok {first_line[6:]} (max {max_output_tokens})"


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine_settings(tmp_path: Path) -> Settings:
    """Fast settings for orchestrator tests: no real sleeping, local checkpoints."""

    settings = Settings()
    settings.worker.concurrency = 2
    settings.worker.queue_capacity = 4
    settings.worker.shutdown_timeout_seconds = 5
    settings.retry.base_delay_seconds = 0.0
    settings.retry.max_delay_seconds = 0.0
    settings.rate_limit.permits_per_second = 10_000.0
    settings.checkpoint.directory = tmp_path / "checkpoints"
    settings.chunking.token_budget = 4_000
    return settings


@pytest.fixture()
def backend_factory() -> type[ScriptedBackend]:
    return ScriptedBackend
