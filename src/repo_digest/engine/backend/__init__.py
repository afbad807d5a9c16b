"""Analysis backend implementations."""

from repo_digest.engine.backend.base import AnalysisBackend, BackendError
from repo_digest.engine.backend.cli_backend import CliAgentBackend
from repo_digest.engine.backend.http_backend import HttpChatBackend

__all__ = [
    "AnalysisBackend",
    "BackendError",
    "CliAgentBackend",
    "HttpChatBackend",
]
