"""CLI entrypoint for repo-digest."""

import logging
from pathlib import Path

import rich_click as click

from repo_digest import __version__
from repo_digest.engine.controllers import (
    AnalysisCliController,
    AnalyzeCommand,
    CheckpointsCommand,
)

click.rich_click.USE_MARKDOWN = True
ANALYSIS_CONTROLLER = AnalysisCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
ALL_CHUNKS_FAILED_EXIT_CODE = 2


class AnalysisFailedError(click.ClickException):
    """Raised when no chunk of a run could be analyzed."""

    exit_code = ALL_CHUNKS_FAILED_EXIT_CODE


@click.group()
@click.version_option(version=__version__, prog_name="repo-digest")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity for engine diagnostics (written to stderr).",
)
def repo_digest(log_level: str) -> None:
    """Batch-analyze source files through a rate-limited LLM backend."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@repo_digest.command("analyze")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--backend",
    type=click.Choice(("http", "cli")),
    default=None,
    help="Backend kind. Defaults to REPO_DIGEST_BACKEND.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help="CLI agent command template with {prompt} or {prompt_file}.",
)
@click.option(
    "--echo-agent",
    is_flag=True,
    default=False,
    help="Use the built-in deterministic echo agent instead of a real backend.",
)
@click.option("--model", default=None, help="Model name passed to the backend.")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Worker count.")
@click.option(
    "--token-budget",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum estimated tokens per chunk.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retries per chunk.")
@click.option(
    "--rate",
    "permits_per_second",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Backend requests per second. Defaults to twice the concurrency.",
)
@click.option(
    "--checkpoint-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Checkpoint directory.",
)
@click.option("--no-checkpoint", is_flag=True, default=False, help="Disable checkpoint reuse.")
@click.option(
    "--details/--no-details",
    default=True,
    show_default=True,
    help="Print per-file analyses.",
)
def analyze(  # noqa: PLR0913
    path: Path,
    backend: str | None,
    command_template: str | None,
    echo_agent: bool,
    model: str | None,
    concurrency: int | None,
    token_budget: int | None,
    max_retries: int | None,
    permits_per_second: float | None,
    checkpoint_dir: Path | None,
    no_checkpoint: bool,
    details: bool,
) -> None:
    """Split PATH into chunks and analyze each one with the configured backend."""

    try:
        result = ANALYSIS_CONTROLLER.analyze(
            AnalyzeCommand(
                path=path,
                backend=backend,
                command_template=command_template,
                use_echo_agent=echo_agent,
                model=model,
                concurrency=concurrency,
                token_budget=token_budget,
                max_retries=max_retries,
                permits_per_second=permits_per_second,
                checkpoint_dir=checkpoint_dir,
                no_checkpoint=no_checkpoint,
                show_details=details,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if not result.success:
        raise AnalysisFailedError("Every chunk failed; see the run report above.")


@repo_digest.group()
def checkpoints() -> None:
    """Checkpoint maintenance commands."""


@checkpoints.command("clear")
@click.option(
    "--checkpoint-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Checkpoint directory. Defaults to REPO_DIGEST_CHECKPOINT_DIR.",
)
def checkpoints_clear(checkpoint_dir: Path | None) -> None:
    """Remove every stored checkpoint."""

    try:
        lines = ANALYSIS_CONTROLLER.clear_checkpoints(
            CheckpointsCommand(checkpoint_dir=checkpoint_dir),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@checkpoints.command("stats")
@click.option(
    "--checkpoint-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Checkpoint directory. Defaults to REPO_DIGEST_CHECKPOINT_DIR.",
)
def checkpoints_stats(checkpoint_dir: Path | None) -> None:
    """Show how many checkpoints are stored."""

    try:
        lines = ANALYSIS_CONTROLLER.checkpoint_stats(
            CheckpointsCommand(checkpoint_dir=checkpoint_dir),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repo_digest()
