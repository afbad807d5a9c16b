"""Subprocess-based backend running a local CLI agent per prompt."""

from __future__ import annotations

import logging
import shlex
import string
import subprocess
import tempfile
from pathlib import Path

from repo_digest.engine.backend.base import BackendError
from repo_digest.engine.failure_classifier import classify_cli_failure
from repo_digest.engine.models import FailureKind

logger = logging.getLogger(__name__)

SUPPORTED_PLACEHOLDERS = frozenset({"prompt", "prompt_file", "model", "max_output_tokens"})
DEFAULT_TIMEOUT_SECONDS = 60.0
_STREAM_PREVIEW_CHARS = 300


class CliAgentBackend:
    """Render ``command_template`` for each prompt and return the agent's stdout.

    The template must reference ``{prompt}`` or ``{prompt_file}``; values are
    shell-quoted before the rendered command is split into argv.
    """

    def __init__(
        self,
        *,
        command_template: str,
        model: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.command_template = validate_command_template(command_template)
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.transient_exit_codes = transient_exit_codes

    def analyze(self, prompt: str, max_output_tokens: int) -> str:
        with tempfile.TemporaryDirectory(prefix="repo-digest-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
                model=self.model,
                max_output_tokens=max_output_tokens,
            )
            completed = self._run(argv)

        if completed.returncode != 0:
            classification = classify_cli_failure(
                exit_code=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.debug("CLI agent failure: %s", classification.to_log_details())
            raise BackendError(
                f"CLI agent exited with code {completed.returncode}: "
                f"{completed.stderr.strip()[:_STREAM_PREVIEW_CHARS]}",
                kind=classification.kind,
            )

        output = completed.stdout.strip()
        if not output:
            raise BackendError("CLI agent produced no output.", kind=FailureKind.OTHER)
        return output

    def _run(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise BackendError(
                f"CLI agent timed out after {self.timeout_seconds:.0f}s",
                kind=FailureKind.TIMEOUT,
            ) from error
        except FileNotFoundError as error:
            raise BackendError(
                f"CLI agent command not found: {argv[0]}",
                kind=FailureKind.MALFORMED_REQUEST,
            ) from error
        except OSError as error:
            raise BackendError(
                f"CLI agent failed to start: {error}",
                kind=FailureKind.NETWORK,
            ) from error


def validate_command_template(command_template: str) -> str:
    """Return the stripped template or raise ``ValueError`` describing the problem."""

    stripped = command_template.strip()
    if not stripped:
        raise ValueError("CLI backend command template is empty.")
    try:
        fields = {
            field_name
            for _, field_name, _, _ in string.Formatter().parse(stripped)
            if field_name is not None
        }
    except ValueError as error:
        raise ValueError(f"CLI backend command template is malformed: {error}") from error
    unsupported = fields - SUPPORTED_PLACEHOLDERS
    if unsupported:
        raise ValueError(
            "Unsupported command template placeholder(s): "
            + ", ".join(f"{{{name}}}" for name in sorted(unsupported)),
        )
    if not fields & {"prompt", "prompt_file"}:
        raise ValueError("CLI backend command template must include {prompt} or {prompt_file}.")
    return stripped


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    model: str,
    max_output_tokens: int,
) -> list[str]:
    rendered = command_template.format(
        prompt=shlex.quote(prompt),
        prompt_file=shlex.quote(str(prompt_file)),
        model=shlex.quote(model),
        max_output_tokens=str(max_output_tokens),
    )
    argv = shlex.split(rendered)
    if not argv:
        raise BackendError(
            "CLI backend command template rendered empty command.",
            kind=FailureKind.MALFORMED_REQUEST,
        )
    return argv
