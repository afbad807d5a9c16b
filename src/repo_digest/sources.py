"""Local directory source supplier."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

from repo_digest.engine.models import SourceFile

logger = logging.getLogger(__name__)

_BINARY_SNIFF_BYTES = 8_192


def iter_source_files(
    root: Path,
    *,
    include_extensions: tuple[str, ...],
    exclude_dirs: tuple[str, ...],
    max_file_bytes: int,
) -> Iterator[SourceFile]:
    """Yield readable text files under ``root`` in sorted path order.

    Paths are reported relative to ``root`` with forward slashes. Oversized,
    binary and undecodable files are skipped with a log line.
    """

    root = Path(root)
    if root.is_file():
        source = _read_source(root, label=root.name, max_file_bytes=max_file_bytes)
        if source is not None:
            yield source
        return
    if not root.is_dir():
        raise ValueError(f"Source path does not exist: {root}")

    extensions = {extension.lower() for extension in include_extensions}
    excluded = set(exclude_dirs)
    listed = 0
    for directory, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in excluded)
        for filename in sorted(filenames):
            path = Path(directory) / filename
            if extensions and path.suffix.lower() not in extensions:
                continue
            label = path.relative_to(root).as_posix()
            source = _read_source(path, label=label, max_file_bytes=max_file_bytes)
            if source is None:
                continue
            listed += 1
            yield source
    logger.info("Listed %d files from local path: %s", listed, root)


def _read_source(path: Path, *, label: str, max_file_bytes: int) -> SourceFile | None:
    try:
        size = path.stat().st_size
        if size > max_file_bytes:
            logger.info("Skipping %s: %d bytes exceeds limit %d", label, size, max_file_bytes)
            return None
        raw = path.read_bytes()
    except OSError as error:
        logger.warning("Skipping unreadable file %s: %s", label, error)
        return None
    if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
        logger.debug("Skipping binary file %s", label)
        return None
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Skipping non UTF-8 file %s", label)
        return None
    return SourceFile(path=label, content=content.replace("\r\n", "\n"))
