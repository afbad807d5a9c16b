"""Local deterministic agent for CLI backend integration tests and demos."""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

_FILE_RE = re.compile(r"^File: (?P<path>.+)$", re.MULTILINE)
_LINES_RE = re.compile(r"^Lines: (?P<start>\d+)-(?P<end>\d+)$", re.MULTILINE)
_CONSTRUCT_RE = re.compile(r"^Construct: (?P<construct>.+)$", re.MULTILINE)
_FENCE = "```"


def describe(prompt: str) -> str:
    """Build a one-line review of the chunk embedded in ``prompt``."""

    path_match = _FILE_RE.search(prompt)
    lines_match = _LINES_RE.search(prompt)
    construct_match = _CONSTRUCT_RE.search(prompt)
    path = path_match.group("path") if path_match else "<unknown>"
    line_range = (
        f"{lines_match.group('start')}-{lines_match.group('end')}" if lines_match else "?"
    )
    construct = construct_match.group("construct") if construct_match else "none"
    body = _fenced_body(prompt)
    non_blank = sum(1 for line in body if line.strip())
    return (
        f"echo review of {path} lines {line_range}: "
        f"{non_blank} non-blank lines, construct {construct}"
    )


def _fenced_body(prompt: str) -> list[str]:
    lines = prompt.splitlines()
    try:
        start = lines.index(_FENCE) + 1
    except ValueError:
        return []
    try:
        end = len(lines) - 1 - lines[::-1].index(_FENCE)
    except ValueError:
        end = len(lines)
    return lines[start:end] if end >= start else []


def main(argv: list[str] | None = None) -> int:
    """Print a deterministic review, or fail on request."""

    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt-file")
    source.add_argument("--prompt")
    parser.add_argument("--fail-with", default=None, help="print message to stderr and exit 1")
    args = parser.parse_args(argv)

    if args.fail_with:
        sys.stderr.write(f"{args.fail_with}\n")
        return 1

    prompt = (
        Path(args.prompt_file).read_text("utf-8") if args.prompt_file is not None else args.prompt
    )
    sys.stdout.write(describe(prompt) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
