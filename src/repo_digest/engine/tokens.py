"""Length-based token cost heuristics."""

from __future__ import annotations

import math
from pathlib import PurePosixPath

# Tokens per character; code splits into more tokens than prose.
SCRIPT_TOKENS_PER_CHAR = 0.30
PROSE_TOKENS_PER_CHAR = 0.25

PROSE_EXTENSIONS = frozenset({"", ".md", ".markdown", ".txt", ".rst", ".adoc", ".org"})


def is_prose(path: str) -> bool:
    """Whether the file at ``path`` is treated as prose rather than script."""

    return PurePosixPath(path.replace("\\", "/")).suffix.lower() in PROSE_EXTENSIONS


def tokens_per_char(path: str) -> float:
    return PROSE_TOKENS_PER_CHAR if is_prose(path) else SCRIPT_TOKENS_PER_CHAR


def estimate_tokens(text: str, path: str = "") -> int:
    """Estimate backend token cost of ``text``; empty text costs nothing."""

    if not text:
        return 0
    return max(1, math.ceil(len(text) * tokens_per_char(path)))


def estimate_lines(lines: list[str], start: int, end: int, path: str = "") -> int:
    """Estimate the cost of ``lines[start:end + 1]`` joined by newlines (0-based, inclusive)."""

    if end < start:
        return 0
    chars = sum(len(line) for line in lines[start : end + 1]) + (end - start)
    if chars == 0:
        return 0
    return max(1, math.ceil(chars * tokens_per_char(path)))
