"""Runtime configuration for chunked repository analysis."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

BACKEND_KINDS = ("http", "cli")
JITTER_STRATEGIES = ("none", "full", "decorrelated")
DEFAULT_INCLUDE_EXTENSIONS: tuple[str, ...] = (
    ".py",
    ".java",
    ".kt",
    ".scala",
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    ".go",
    ".rs",
    ".rb",
    ".php",
    ".c",
    ".h",
    ".cpp",
    ".hpp",
    ".cs",
    ".swift",
    ".sh",
    ".sql",
    ".md",
    ".rst",
    ".txt",
)
DEFAULT_EXCLUDE_DIRS: tuple[str, ...] = (
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "node_modules",
    "__pycache__",
    "build",
    "dist",
    "target",
    ".repo_digest",
)


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool sizing and shutdown settings."""

    concurrency: int = 4
    queue_capacity: int = 64
    shutdown_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RetrySettings:
    """Per-chunk retry and backoff settings."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: str = "full"


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker settings."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0


@dataclass(slots=True)
class RateLimitSettings:
    """Outbound request rate; ``None`` derives the rate from concurrency."""

    permits_per_second: float | None = None


@dataclass(slots=True)
class CheckpointSettings:
    """Durable result cache settings."""

    enabled: bool = True
    directory: Path = Path(".repo_digest/checkpoints")


@dataclass(slots=True)
class ChunkingSettings:
    """Chunk splitting settings."""

    token_budget: int = 4_000
    window_overlap_lines: int = 5


@dataclass(slots=True)
class BackendSettings:
    """Remote analysis backend settings."""

    kind: str = "http"
    base_url: str = "https://api.deepseek.com/v1"
    api_key: str = ""
    model: str = "deepseek-chat"
    max_output_tokens: int = 1_024
    timeout_seconds: float = 60.0
    command_template: str = ""


@dataclass(slots=True)
class SourceSettings:
    """Local source discovery settings."""

    include_extensions: tuple[str, ...] = DEFAULT_INCLUDE_EXTENSIONS
    exclude_dirs: tuple[str, ...] = DEFAULT_EXCLUDE_DIRS
    max_file_bytes: int = 1_000_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    chunking: ChunkingSettings = field(default_factory=ChunkingSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    sources: SourceSettings = field(default_factory=SourceSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        permits_raw = os.getenv("REPO_DIGEST_PERMITS_PER_SECOND", "").strip()
        return cls(
            worker=WorkerSettings(
                concurrency=int(os.getenv("REPO_DIGEST_CONCURRENCY", "4")),
                queue_capacity=int(os.getenv("REPO_DIGEST_QUEUE_CAPACITY", "64")),
                shutdown_timeout_seconds=float(
                    os.getenv("REPO_DIGEST_SHUTDOWN_TIMEOUT_SECONDS", "30"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("REPO_DIGEST_MAX_RETRIES", "3")),
                base_delay_seconds=float(os.getenv("REPO_DIGEST_RETRY_BASE_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("REPO_DIGEST_RETRY_MAX_SECONDS", "30.0")),
                jitter=os.getenv("REPO_DIGEST_RETRY_JITTER", "full").strip().lower(),
            ),
            breaker=BreakerSettings(
                failure_threshold=int(os.getenv("REPO_DIGEST_BREAKER_FAILURE_THRESHOLD", "5")),
                reset_timeout_seconds=float(
                    os.getenv("REPO_DIGEST_BREAKER_RESET_TIMEOUT_SECONDS", "60"),
                ),
            ),
            rate_limit=RateLimitSettings(
                permits_per_second=float(permits_raw) if permits_raw else None,
            ),
            checkpoint=CheckpointSettings(
                enabled=_env_bool("REPO_DIGEST_CHECKPOINT_ENABLED", default=True),
                directory=Path(
                    os.getenv("REPO_DIGEST_CHECKPOINT_DIR", ".repo_digest/checkpoints"),
                ),
            ),
            chunking=ChunkingSettings(
                token_budget=int(os.getenv("REPO_DIGEST_TOKEN_BUDGET", "4000")),
                window_overlap_lines=int(os.getenv("REPO_DIGEST_WINDOW_OVERLAP_LINES", "5")),
            ),
            backend=BackendSettings(
                kind=os.getenv("REPO_DIGEST_BACKEND", "http").strip().lower(),
                base_url=os.getenv("REPO_DIGEST_BASE_URL", "https://api.deepseek.com/v1"),
                api_key=os.getenv("REPO_DIGEST_API_KEY", ""),
                model=os.getenv("REPO_DIGEST_MODEL", "deepseek-chat"),
                max_output_tokens=int(os.getenv("REPO_DIGEST_MAX_OUTPUT_TOKENS", "1024")),
                timeout_seconds=float(os.getenv("REPO_DIGEST_BACKEND_TIMEOUT_SECONDS", "60")),
                command_template=os.getenv("REPO_DIGEST_COMMAND_TEMPLATE", ""),
            ),
            sources=SourceSettings(
                include_extensions=_env_csv(
                    "REPO_DIGEST_INCLUDE_EXTENSIONS",
                    DEFAULT_INCLUDE_EXTENSIONS,
                ),
                exclude_dirs=_env_csv("REPO_DIGEST_EXCLUDE_DIRS", DEFAULT_EXCLUDE_DIRS),
                max_file_bytes=int(os.getenv("REPO_DIGEST_MAX_FILE_BYTES", "1000000")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error if engine settings are out of range."""

        if self.worker.concurrency <= 0:
            raise ValueError("REPO_DIGEST_CONCURRENCY must be > 0.")
        if self.worker.queue_capacity < 0:
            raise ValueError("REPO_DIGEST_QUEUE_CAPACITY must be >= 0.")
        if self.worker.shutdown_timeout_seconds < 0:
            raise ValueError("REPO_DIGEST_SHUTDOWN_TIMEOUT_SECONDS must be >= 0.")
        if self.retry.max_retries < 0:
            raise ValueError("REPO_DIGEST_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("REPO_DIGEST_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "REPO_DIGEST_RETRY_MAX_SECONDS must be >= REPO_DIGEST_RETRY_BASE_SECONDS.",
            )
        if self.retry.jitter not in JITTER_STRATEGIES:
            raise ValueError(
                f"REPO_DIGEST_RETRY_JITTER must be one of {', '.join(JITTER_STRATEGIES)}; "
                f"got {self.retry.jitter!r}.",
            )
        if self.breaker.failure_threshold <= 0:
            raise ValueError("REPO_DIGEST_BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.breaker.reset_timeout_seconds < 0:
            raise ValueError("REPO_DIGEST_BREAKER_RESET_TIMEOUT_SECONDS must be >= 0.")
        permits = self.rate_limit.permits_per_second
        if permits is not None and permits <= 0:
            raise ValueError("REPO_DIGEST_PERMITS_PER_SECOND must be > 0.")
        if self.chunking.token_budget <= 0:
            raise ValueError("REPO_DIGEST_TOKEN_BUDGET must be > 0.")
        if self.chunking.window_overlap_lines < 0:
            raise ValueError("REPO_DIGEST_WINDOW_OVERLAP_LINES must be >= 0.")
        if self.backend.max_output_tokens <= 0:
            raise ValueError("REPO_DIGEST_MAX_OUTPUT_TOKENS must be > 0.")
        if self.sources.max_file_bytes <= 0:
            raise ValueError("REPO_DIGEST_MAX_FILE_BYTES must be > 0.")

    def validate_backend(self) -> None:
        """Raise configuration error if the selected backend cannot be built."""

        if self.backend.kind not in BACKEND_KINDS:
            raise ValueError(
                f"REPO_DIGEST_BACKEND must be one of {', '.join(BACKEND_KINDS)}; "
                f"got {self.backend.kind!r}.",
            )
        if self.backend.timeout_seconds <= 0:
            raise ValueError("REPO_DIGEST_BACKEND_TIMEOUT_SECONDS must be > 0.")
        if self.backend.kind == "http":
            _validate_base_url(self.backend.base_url)
            if not self.backend.api_key.strip():
                raise ValueError("REPO_DIGEST_API_KEY is required for the http backend.")
            if not self.backend.model.strip():
                raise ValueError("REPO_DIGEST_MODEL must not be empty for the http backend.")
        elif not self.backend.command_template.strip():
            raise ValueError(
                "REPO_DIGEST_COMMAND_TEMPLATE is required for the cli backend. "
                "Set it or pass --command.",
            )


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid REPO_DIGEST_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
