"""Content-addressed durable checkpoints of chunk analysis results."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path

from repo_digest.engine.common import from_iso, load_json, utc_now, write_json_atomic
from repo_digest.engine.models import CheckpointRecord

logger = logging.getLogger(__name__)

CHECKPOINT_FORMAT_VERSION = 1
KEY_LENGTH = 32


def checkpoint_key(text: str) -> str:
    """Fixed-length SHA-256 prefix of the exact chunk text."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:KEY_LENGTH]


class CheckpointStore:
    """One JSON file per key under ``directory``.

    Records are only created or cleared wholesale, never updated in place.
    Writes go through a temp file and rename, so workers saving distinct keys
    at the same time cannot corrupt each other.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        _validate_key(key)
        return self.directory / key[:2] / f"{key}.json"

    def load(self, key: str) -> CheckpointRecord | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            raw = load_json(path)
            record = CheckpointRecord(
                key=str(raw["key"]),
                result=_require_str(raw, "result"),
                timestamp=from_iso(_require_str(raw, "timestamp")),
            )
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError) as error:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, error)
            return None
        if record.key != key:
            logger.warning("Ignoring checkpoint %s recorded for key %s", path, record.key)
            return None
        return record

    def save(self, key: str, text: str, timestamp: datetime | None = None) -> CheckpointRecord:
        """Create the record for ``key``; an existing readable record wins and is returned."""

        record = CheckpointRecord(key=key, result=text, timestamp=timestamp or utc_now())
        path = self.path_for(key)
        payload = {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "key": record.key,
            "result": record.result,
            "timestamp": record.timestamp.isoformat(),
        }
        if not write_json_atomic(path, payload, overwrite=False):
            existing = self.load(key)
            if existing is not None:
                logger.debug("Checkpoint already present: key=%s", key)
                return existing
            # Unreadable records are replaced.
            write_json_atomic(path, payload)
        logger.debug("Checkpoint saved: key=%s chars=%d", key, len(text))
        return record

    def clear(self) -> int:
        """Remove every record; return how many were removed."""

        if not self.directory.exists():
            return 0
        removed = 0
        for path in sorted(self.directory.glob("*/*.json")):
            path.unlink(missing_ok=True)
            removed += 1
        for bucket in sorted(self.directory.iterdir()):
            if bucket.is_dir() and not any(bucket.iterdir()):
                bucket.rmdir()
        logger.info("Cleared %d checkpoints from %s", removed, self.directory)
        return removed

    def count(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob("*/*.json"))


def _validate_key(key: str) -> None:
    if len(key) < 2 or not all(char in "0123456789abcdef" for char in key):
        raise ValueError(f"Invalid checkpoint key: {key!r}")


def _require_str(raw: dict[str, object], name: str) -> str:
    value = raw[name]
    if not isinstance(value, str):
        raise TypeError(f"checkpoint.{name} must be a string")
    return value
