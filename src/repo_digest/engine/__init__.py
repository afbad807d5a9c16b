"""Chunked analysis engine: splitting, dispatch and resilience."""

from repo_digest.engine.models import (
    AnalysisResult,
    Chunk,
    ChunkOutcome,
    FailureKind,
    FileDetail,
    ShutdownReport,
    SourceFile,
)
from repo_digest.engine.orchestrator import Orchestrator
from repo_digest.engine.splitter import split_files

__all__ = [
    "AnalysisResult",
    "Chunk",
    "ChunkOutcome",
    "FailureKind",
    "FileDetail",
    "Orchestrator",
    "ShutdownReport",
    "SourceFile",
    "split_files",
]
