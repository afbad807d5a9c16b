"""Split source files into token-bounded chunks along structural boundaries."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from repo_digest.engine.models import Chunk, SourceFile
from repo_digest.engine.tokens import estimate_lines

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_OVERLAP_LINES = 5

_MODIFIERS = (
    r"(?:(?:export|default|public|private|protected|internal|abstract|final|static|sealed"
    r"|partial|data|open|async|pub(?:\([^)]*\))?|unsafe|inline)\s+)*"
)
_IDENT = r"([A-Za-z_$][\w$]*)"
_DECLARATION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "class",
        re.compile(
            rf"^(\s*){_MODIFIERS}"
            rf"(?:class|interface|enum|struct|trait|record|object|union)\s+{_IDENT}",
        ),
    ),
    (
        "function",
        re.compile(
            rf"^(\s*){_MODIFIERS}(?:def|function\*?|fn|fun|func)\s+(?:\([^)]*\)\s*)?{_IDENT}",
        ),
    ),
    ("impl", re.compile(rf"^(\s*){_MODIFIERS}impl(?:<[^>]*>)?\s+{_IDENT}")),
    (
        "type",
        re.compile(rf"^(\s*){_MODIFIERS}type\s+{_IDENT}(?:\s*[=<{{]|\s+(?:struct|interface)\b)"),
    ),
    (
        "method",
        re.compile(
            r"^(\s*)(?:(?:public|private|protected|static|final|abstract|synchronized|override"
            r"|virtual|async)\s+)+[\w<>\[\],.?]+(?:\s*<[^>]*>)?\s+([A-Za-z_]\w*)\s*\("
        ),
    ),
)

# Decorators and attributes that belong to the declaration below them.
_ATTRIBUTE_LINE = re.compile(r"^(\s*)(?:@[\w$]|#\[)")


@dataclass(slots=True, frozen=True)
class Declaration:
    """Declaration signature found on one line (0-based line numbers).

    ``start`` is the first of any decorator or attribute lines directly above
    the signature, or ``line`` when there are none.
    """

    line: int
    indent: int
    kind: str
    identifier: str
    start: int


@dataclass(slots=True)
class _Piece:
    start: int
    end: int
    kind: str | None = None
    identifier: str | None = None
    overlap: int = 0


def split_files(
    files: Sequence[SourceFile],
    token_budget: int,
    *,
    window_overlap_lines: int = DEFAULT_WINDOW_OVERLAP_LINES,
) -> list[Chunk]:
    """Split ``files`` into an ordered list of chunks that fit ``token_budget``.

    Chunks keep file order, then line order within a file. ``index`` is the
    global ordinal and ``total`` the global chunk count.
    """

    if token_budget <= 0:
        raise ValueError("token_budget must be > 0.")
    if window_overlap_lines < 0:
        raise ValueError("window_overlap_lines must be >= 0.")

    planned: list[tuple[SourceFile, list[str], list[_Piece]]] = []
    for source in files:
        lines = split_lines(source.content)
        pieces = plan_file(
            lines,
            path=source.path,
            token_budget=token_budget,
            window_overlap_lines=window_overlap_lines,
        )
        planned.append((source, lines, pieces))

    total = sum(len(pieces) for _, _, pieces in planned)
    chunks: list[Chunk] = []
    for source, lines, pieces in planned:
        for part, piece in enumerate(pieces):
            content = "\n".join(lines[piece.start : piece.end + 1])
            chunks.append(
                Chunk(
                    path=source.path,
                    start_line=piece.start + 1,
                    end_line=piece.end + 1,
                    index=len(chunks),
                    total=total,
                    part=part,
                    parts=len(pieces),
                    estimated_tokens=estimate_lines(lines, piece.start, piece.end, source.path),
                    content=content,
                    kind=piece.kind,
                    identifier=piece.identifier,
                    overlap_lines=piece.overlap,
                ),
            )
        if len(pieces) > 1:
            logger.debug("Split %s into %d chunks", source.path, len(pieces))
    return chunks


def split_lines(content: str) -> list[str]:
    """Split text on newlines; a trailing newline does not open an extra line."""

    if not content:
        return []
    lines = content.split("\n")
    if content.endswith("\n"):
        lines.pop()
    return lines


def plan_file(
    lines: list[str],
    *,
    path: str,
    token_budget: int,
    window_overlap_lines: int = DEFAULT_WINDOW_OVERLAP_LINES,
) -> list[_Piece]:
    """Plan 0-based inclusive line ranges for one file."""

    if not lines:
        return [_Piece(start=0, end=-1)]
    last = len(lines) - 1
    if estimate_lines(lines, 0, last, path) <= token_budget:
        return [_Piece(start=0, end=last)]

    declarations = find_declarations(lines)
    if not declarations:
        return _plan_windows(
            lines,
            path=path,
            token_budget=token_budget,
            overlap=window_overlap_lines,
        )

    pieces = _plan_structural(lines, declarations, path=path, token_budget=token_budget)
    return _pack(pieces, lines, path=path, token_budget=token_budget)


def find_declarations(lines: list[str]) -> list[Declaration]:
    """Find declaration signatures, one per line at most."""

    found: list[Declaration] = []
    for number, line in enumerate(lines):
        if not line.strip():
            continue
        for kind, pattern in _DECLARATION_PATTERNS:
            match = pattern.match(line)
            if match is None:
                continue
            indent = len(match.group(1).expandtabs(4))
            found.append(
                Declaration(
                    line=number,
                    indent=indent,
                    kind=kind,
                    identifier=match.group(2),
                    start=_attribute_start(lines, number, indent),
                ),
            )
            break
    return found


def _attribute_start(lines: list[str], line: int, indent: int) -> int:
    start = line
    while start > 0:
        match = _ATTRIBUTE_LINE.match(lines[start - 1])
        if match is None or len(match.group(1).expandtabs(4)) != indent:
            break
        start -= 1
    return start


def _plan_structural(
    lines: list[str],
    declarations: list[Declaration],
    *,
    path: str,
    token_budget: int,
) -> list[_Piece]:
    # Work stack of (piece, header_is_declaration). Ranges are pushed in reverse so
    # pieces pop out in line order.
    result: list[_Piece] = []
    stack: list[tuple[_Piece, bool]] = [(_Piece(start=0, end=len(lines) - 1), False)]
    while stack:
        piece, has_header = stack.pop()
        if estimate_lines(lines, piece.start, piece.end, path) <= token_budget:
            result.append(piece)
            continue

        first_inner = piece.start + 1 if has_header else piece.start
        inner = [
            decl for decl in declarations if first_inner <= decl.start and decl.line <= piece.end
        ]
        segments = _segments_at_top_level(piece, inner)
        if len(segments) > 1:
            stack.extend(reversed(segments))
            continue
        if segments[0][1] and not has_header:
            # The range starts at its only top-level declaration: look inside it next.
            stack.append(segments[0])
            continue

        if piece.start == piece.end:
            logger.warning(
                "Line %d of %s exceeds the token budget on its own; emitting it oversized",
                piece.start + 1,
                path,
            )
            result.append(piece)
            continue

        middle = _bisect_point(piece, declarations)
        stack.append((_Piece(middle + 1, piece.end, piece.kind, piece.identifier), False))
        stack.append((_Piece(piece.start, middle, piece.kind, piece.identifier), False))
    return result


def _segments_at_top_level(
    piece: _Piece,
    declarations: list[Declaration],
) -> list[tuple[_Piece, bool]]:
    if not declarations:
        return [(piece, False)]
    top_indent = min(decl.indent for decl in declarations)
    tops = [decl for decl in declarations if decl.indent == top_indent]

    segments: list[tuple[_Piece, bool]] = []
    if tops[0].start > piece.start:
        preamble = _Piece(piece.start, tops[0].start - 1, piece.kind, piece.identifier)
        segments.append((preamble, False))
    for position, decl in enumerate(tops):
        end = tops[position + 1].start - 1 if position + 1 < len(tops) else piece.end
        segments.append((_Piece(decl.start, end, decl.kind, decl.identifier), True))
    return segments


def _bisect_point(piece: _Piece, declarations: list[Declaration]) -> int:
    # Never cut between a declaration and its decorators.
    middle = piece.start + (piece.end - piece.start) // 2
    for decl in declarations:
        if decl.start <= middle < decl.line:
            if decl.start > piece.start:
                return decl.start - 1
            if decl.line < piece.end:
                return decl.line
    return middle


def _pack(pieces: list[_Piece], lines: list[str], *, path: str, token_budget: int) -> list[_Piece]:
    groups: list[list[_Piece]] = []
    for piece in pieces:
        if groups and estimate_lines(lines, groups[-1][0].start, piece.end, path) <= token_budget:
            groups[-1].append(piece)
        else:
            groups.append([piece])
    return [_merge(group) for group in groups]


def _merge(group: list[_Piece]) -> _Piece:
    # A chunk keeps a structural tag only when it holds a single construct.
    tags = {(piece.kind, piece.identifier) for piece in group if piece.kind is not None}
    kind, identifier = next(iter(tags)) if len(tags) == 1 else (None, None)
    return _Piece(group[0].start, group[-1].end, kind, identifier)


def _plan_windows(
    lines: list[str],
    *,
    path: str,
    token_budget: int,
    overlap: int,
) -> list[_Piece]:
    last = len(lines) - 1
    average = max(estimate_lines(lines, 0, last, path) / len(lines), 1e-9)
    # Window size reserves room for the lead overlap lines.
    window = max(1, int(token_budget / average) - overlap)

    pieces: list[_Piece] = []
    start = 0
    while start <= last:
        end = min(last, start + window - 1)
        while end > start and estimate_lines(lines, start, end, path) > token_budget:
            end = start + (end - start) // 2
        lead = min(overlap, start, max(0, end - start))
        while lead > 0 and estimate_lines(lines, start - lead, end, path) > token_budget:
            lead -= 1
        if estimate_lines(lines, start, end, path) > token_budget:
            logger.warning(
                "Line %d of %s exceeds the token budget on its own; emitting it oversized",
                start + 1,
                path,
            )
        pieces.append(_Piece(start=start - lead, end=end, overlap=lead))
        start = end + 1
    return pieces
