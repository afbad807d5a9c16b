"""Backend interface for chunk analysis calls."""

from __future__ import annotations

from typing import Protocol

from repo_digest.engine.models import FailureKind


class BackendError(RuntimeError):
    """Backend call failure tagged with its normalized kind."""

    def __init__(self, message: str, *, kind: FailureKind) -> None:
        super().__init__(message)
        self.kind = kind


class AnalysisBackend(Protocol):
    """Protocol implemented by analysis backends.

    Implementations must be safe to call from several worker threads at once.
    """

    def analyze(self, prompt: str, max_output_tokens: int) -> str:
        """Return the analysis text for ``prompt`` or raise ``BackendError``."""
