"""Deterministic backend failure classification for retry and breaker decisions."""

from __future__ import annotations

from dataclasses import dataclass

from repo_digest.engine.models import FailureKind

FAILURE_CLASSIFIER_VERSION = 1

_AUTHENTICATION_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
    "401",
    "403",
)
_MALFORMED_REQUEST_PATTERNS: tuple[str, ...] = (
    "bad request",
    "invalid request",
    "context length",
    "maximum context",
    "too large",
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "quota",
    "resource_exhausted",
    "please retry",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
    "bad gateway",
    "service unavailable",
)

# Rules are evaluated in order; the first matching pattern decides the kind.
_RULES: tuple[tuple[FailureKind, tuple[str, ...]], ...] = (
    (FailureKind.AUTHENTICATION, _AUTHENTICATION_PATTERNS),
    (FailureKind.MALFORMED_REQUEST, _MALFORMED_REQUEST_PATTERNS),
    (FailureKind.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (FailureKind.TIMEOUT, _TIMEOUT_PATTERNS),
    (FailureKind.NETWORK, _NETWORK_PATTERNS),
)

_RATE_LIMITED_STATUSES = frozenset({429})
_AUTHENTICATION_STATUSES = frozenset({401, 403})
_MALFORMED_REQUEST_STATUSES = frozenset({400, 404, 413, 422})
_NETWORK_STATUSES = frozenset({408})


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_cli_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> FailureClassification:
    """Classify a non-zero CLI agent exit from its output streams."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)
    for kind, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                kind=kind,
                matched_rule=kind.value,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return FailureClassification(
            kind=FailureKind.NETWORK,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )

    return FailureClassification(
        kind=FailureKind.OTHER,
        matched_rule="fallback_other",
        matched_pattern=None,
    )


def classify_http_status(status_code: int) -> FailureKind:
    """Map an HTTP error status to a failure kind."""

    if status_code in _RATE_LIMITED_STATUSES:
        return FailureKind.RATE_LIMITED
    if status_code in _AUTHENTICATION_STATUSES:
        return FailureKind.AUTHENTICATION
    if status_code in _MALFORMED_REQUEST_STATUSES:
        return FailureKind.MALFORMED_REQUEST
    if status_code in _NETWORK_STATUSES or status_code >= 500:  # noqa: PLR2004
        return FailureKind.NETWORK
    return FailureKind.OTHER


def classify_exception(error: BaseException) -> FailureKind:
    """Classify an exception raised by a backend that did not report a kind itself."""

    kind = getattr(error, "kind", None)
    if isinstance(kind, FailureKind):
        return kind
    if isinstance(error, TimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return FailureKind.NETWORK
    return FailureKind.OTHER


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
