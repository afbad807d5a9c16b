"""Controllers for analysis CLI commands."""

from __future__ import annotations

import logging
import shlex
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from repo_digest.config import Settings
from repo_digest.engine.backend import AnalysisBackend, CliAgentBackend, HttpChatBackend
from repo_digest.engine.checkpoint import CheckpointStore
from repo_digest.engine.models import AnalysisResult, ShutdownReport
from repo_digest.engine.orchestrator import Orchestrator
from repo_digest.sources import iter_source_files

logger = logging.getLogger(__name__)

ECHO_AGENT_COMMAND_TEMPLATE = (
    shlex.quote(sys.executable)
    + " -m repo_digest.engine.backend.echo_agent --prompt-file {prompt_file}"
)


@dataclass(slots=True)
class AnalyzeCommand:
    """CLI input for one analysis run."""

    path: Path
    backend: str | None = None
    command_template: str | None = None
    use_echo_agent: bool = False
    model: str | None = None
    concurrency: int | None = None
    token_budget: int | None = None
    max_retries: int | None = None
    permits_per_second: float | None = None
    checkpoint_dir: Path | None = None
    no_checkpoint: bool = False
    show_details: bool = True


@dataclass(slots=True)
class AnalyzeResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class CheckpointsCommand:
    """CLI input for checkpoint maintenance."""

    checkpoint_dir: Path | None = None


class AnalysisCliController:
    """Coordinates analysis runs and checkpoint maintenance for the CLI."""

    def analyze(self, command: AnalyzeCommand) -> AnalyzeResult:
        settings = _analyze_settings(command)
        settings.validate()
        settings.validate_backend()

        files = list(
            iter_source_files(
                command.path,
                include_extensions=settings.sources.include_extensions,
                exclude_dirs=settings.sources.exclude_dirs,
                max_file_bytes=settings.sources.max_file_bytes,
            ),
        )
        backend = build_backend(settings)
        orchestrator = Orchestrator(backend, settings)
        try:
            with _signal_handlers(orchestrator):
                result = orchestrator.analyze(files)
        finally:
            shutdown = orchestrator.shutdown(settings.worker.shutdown_timeout_seconds)
            close = getattr(backend, "close", None)
            if callable(close):
                close()

        lines = render_result_lines(
            result=result,
            shutdown=shutdown,
            show_details=command.show_details,
        )
        success = result.total_chunks == 0 or result.successful_chunks > 0
        return AnalyzeResult(lines=lines, success=success)

    def clear_checkpoints(self, command: CheckpointsCommand) -> list[str]:
        store = CheckpointStore(_checkpoint_dir(command.checkpoint_dir))
        removed = store.clear()
        return [f"Checkpoints cleared: removed={removed} directory={store.directory}"]

    def checkpoint_stats(self, command: CheckpointsCommand) -> list[str]:
        store = CheckpointStore(_checkpoint_dir(command.checkpoint_dir))
        return [f"Checkpoints: count={store.count()} directory={store.directory}"]


def build_backend(settings: Settings) -> AnalysisBackend:
    """Construct the configured backend; raises ``ValueError`` on bad settings."""

    backend = settings.backend
    if backend.kind == "cli":
        return CliAgentBackend(
            command_template=backend.command_template,
            model=backend.model,
            timeout_seconds=backend.timeout_seconds,
        )
    if backend.kind == "http":
        return HttpChatBackend(
            base_url=backend.base_url,
            api_key=backend.api_key,
            model=backend.model,
            timeout_seconds=backend.timeout_seconds,
        )
    raise ValueError(f"Unsupported backend kind: {backend.kind!r}")


def render_result_lines(
    *,
    result: AnalysisResult,
    shutdown: ShutdownReport,
    show_details: bool,
) -> list[str]:
    """Render the run summary, per-file analyses and metrics report."""

    lines = [
        result.summary,
        (
            f"Chunks: total={result.total_chunks} succeeded={result.successful_chunks} "
            f"failed={result.failed_chunks} breaker_rejected={result.breaker_rejected_chunks} "
            f"discarded={result.discarded_chunks}"
        ),
    ]
    if show_details:
        for detail in result.details:
            lines.append("")
            header = f"== {detail.path} (chunks={len(detail.chunk_indices)}"
            if detail.failed_chunks:
                header += f", failed={detail.failed_chunks}"
            lines.append(header + ") ==")
            lines.append(detail.analysis or "(no analysis)")
    lines.append("")
    lines.extend(result.metrics_report)
    lines.append(
        f"Shutdown: completed={shutdown.completed} discarded={shutdown.discarded} "
        f"timed_out={shutdown.timed_out}",
    )
    return lines


def _analyze_settings(command: AnalyzeCommand) -> Settings:
    settings = Settings.from_env()
    if command.use_echo_agent:
        settings.backend.kind = "cli"
        settings.backend.command_template = ECHO_AGENT_COMMAND_TEMPLATE
    if command.backend is not None:
        settings.backend.kind = command.backend
    if command.command_template is not None:
        settings.backend.command_template = command.command_template
    if command.model is not None:
        settings.backend.model = command.model
    if command.concurrency is not None:
        settings.worker.concurrency = command.concurrency
    if command.token_budget is not None:
        settings.chunking.token_budget = command.token_budget
    if command.max_retries is not None:
        settings.retry.max_retries = command.max_retries
    if command.permits_per_second is not None:
        settings.rate_limit.permits_per_second = command.permits_per_second
    if command.checkpoint_dir is not None:
        settings.checkpoint.directory = command.checkpoint_dir
    if command.no_checkpoint:
        settings.checkpoint.enabled = False
    return settings


def _checkpoint_dir(override: Path | None) -> Path:
    if override is not None:
        return override
    return Settings.from_env().checkpoint.directory


@contextmanager
def _signal_handlers(orchestrator: Orchestrator) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s", name)
        orchestrator.request_stop()

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
