"""Retry decisions and jittered exponential backoff."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

from repo_digest.engine.models import FailureKind

DEFAULT_NON_RETRYABLE = frozenset({FailureKind.AUTHENTICATION, FailureKind.MALFORMED_REQUEST})
_NEVER_RETRIED = frozenset({FailureKind.BREAKER_OPEN, FailureKind.INTERRUPTED})
# Keeps base * 2**attempt finite for arbitrarily large attempt numbers.
_MAX_EXPONENT = 64


class JitterStrategy(str, Enum):
    """How randomness is applied to the computed backoff."""

    NONE = "none"
    FULL = "full"
    DECORRELATED = "decorrelated"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Stateless retry configuration.

    ``attempt`` is zero-based: attempt 0 is the first call, so a chunk gets at
    most ``max_retries + 1`` backend calls.
    """

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: JitterStrategy = JitterStrategy.FULL
    non_retryable: frozenset[FailureKind] = DEFAULT_NON_RETRYABLE

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")

    def should_retry(self, kind: FailureKind, attempt: int) -> bool:
        if kind in self.non_retryable or kind in _NEVER_RETRIED:
            return False
        return attempt < self.max_retries

    def computed_delay(self, attempt: int) -> float:
        """Backoff before jitter: ``min(max_delay, base * 2**attempt)``."""

        exponent = min(max(attempt, 0), _MAX_EXPONENT)
        return min(self.max_delay_seconds, self.base_delay_seconds * (2**exponent))

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Jittered backoff to sleep after failed ``attempt``; never above ``max_delay``."""

        computed = self.computed_delay(attempt)
        source = rng or random
        if self.jitter == JitterStrategy.NONE:
            return computed
        if self.jitter == JitterStrategy.DECORRELATED:
            upper = min(self.max_delay_seconds, computed * 3)
            lower = min(self.base_delay_seconds, upper)
            return min(self.max_delay_seconds, source.uniform(lower, upper))
        return min(self.max_delay_seconds, source.uniform(0, computed))
