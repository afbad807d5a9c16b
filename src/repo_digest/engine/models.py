"""Domain models for chunked analysis runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FailureKind(str, Enum):
    """Normalized failure kinds used by retry policy, breaker and metrics."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"
    MALFORMED_REQUEST = "malformed_request"
    OTHER = "other"
    BREAKER_OPEN = "breaker_open"
    INTERRUPTED = "interrupted"


class BreakerStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"


@dataclass(slots=True, frozen=True)
class SourceFile:
    """One readable artifact handed over by the source supplier."""

    path: str
    content: str


@dataclass(slots=True, frozen=True)
class Chunk:
    """Bounded, attributed slice of one source file.

    Line numbers are 1-based and inclusive. ``overlap_lines`` leading lines
    repeat the tail of the previous chunk of the same file; only windowed
    splitting produces overlap.
    """

    path: str
    start_line: int
    end_line: int
    index: int
    total: int
    part: int
    parts: int
    estimated_tokens: int
    content: str
    kind: str | None = None
    identifier: str | None = None
    overlap_lines: int = 0

    @property
    def line_count(self) -> int:
        return max(0, self.end_line - self.start_line + 1)

    @property
    def core_start_line(self) -> int:
        """First line not shared with the previous chunk."""

        return self.start_line + self.overlap_lines

    @property
    def source_label(self) -> str:
        label = f"{self.path}:{self.start_line}-{self.end_line}"
        if self.kind and self.identifier:
            return f"{label} ({self.kind} {self.identifier})"
        return label


@dataclass(slots=True, frozen=True)
class ChunkOutcome:
    """Resolution of one chunk task; ``text`` is None when the chunk was abandoned."""

    index: int
    source_files: tuple[str, ...]
    text: str | None
    failure: FailureKind | None = None
    attempts: int = 0
    retries: int = 0
    from_checkpoint: bool = False
    latency_seconds: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.text is not None


@dataclass(slots=True, frozen=True)
class BreakerSnapshot:
    """Point-in-time view of circuit breaker state."""

    status: BreakerStatus
    consecutive_failures: int
    opened_at: float | None
    failure_threshold: int
    reset_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class CheckpointRecord:
    """Durable result of a previously analyzed chunk content."""

    key: str
    result: str
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class FileDetail:
    """Per-file aggregate of successful chunk analyses."""

    path: str
    chunk_indices: tuple[int, ...]
    analysis: str
    failed_chunks: int = 0


@dataclass(slots=True, frozen=True)
class ShutdownReport:
    """Outcome of a bounded pool shutdown."""

    completed: int
    discarded: int
    timed_out: bool


@dataclass(slots=True, frozen=True)
class AnalysisResult:
    """Aggregate of one analysis run, built once from all chunk outcomes."""

    total_chunks: int
    successful_chunks: int
    failed_chunks: int
    breaker_rejected_chunks: int
    details: tuple[FileDetail, ...]
    summary: str
    interrupted: bool = False
    discarded_chunks: int = 0
    metrics_report: tuple[str, ...] = ()
    outcomes: tuple[ChunkOutcome, ...] = field(default=(), repr=False)

    @property
    def completed_cleanly(self) -> bool:
        return self.failed_chunks == 0 and self.discarded_chunks == 0 and not self.interrupted
