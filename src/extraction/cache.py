"""Content-addressed cache of extraction snapshots.

Entries are keyed by the SHA-256 of the uploaded bytes and never expire;
plan sets are immutable once uploaded. A force refresh simply overwrites
the entry for its hash.
"""
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Protocol

from schemas.snapshot import CACHE_VERSION, ExtractionSnapshot

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "PLAN_EXTRACT_CACHE_DIR"


def compute_file_hash(data: bytes) -> str:
    """Hex SHA-256 of the full file content."""
    return hashlib.sha256(data).hexdigest()


def default_cache_dir() -> Path:
    return Path(os.environ.get(CACHE_DIR_ENV) or Path.home() / ".cache" / "plan-extract")


class ContentCache(Protocol):
    def get(self, file_hash: str) -> Optional[ExtractionSnapshot]: ...

    def put(self, file_hash: str, snapshot: ExtractionSnapshot) -> None: ...

    def invalidate(self, file_hash: str) -> None: ...


@dataclass
class FileContentCache:
    """
    Snapshot cache on the local filesystem.

    Directory structure:
        {cache_dir}/
            <sha256>.json   {"cache_version": N, "snapshot": {...}}
    """
    cache_dir: Path = field(default_factory=default_cache_dir)

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)

    def _path(self, file_hash: str) -> Path:
        return self.cache_dir / f"{file_hash}.json"

    def get(self, file_hash: str) -> Optional[ExtractionSnapshot]:
        path = self._path(file_hash)
        if not path.exists():
            return None

        payload = json.loads(path.read_text())
        if payload.get("cache_version") != CACHE_VERSION:
            logger.info(f"Cache entry {file_hash[:12]} has version {payload.get('cache_version')}; ignoring")
            return None
        return ExtractionSnapshot.model_validate(payload["snapshot"])

    def put(self, file_hash: str, snapshot: ExtractionSnapshot) -> None:
        """Write an entry atomically: temp file in the same directory, then rename."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        payload = {"cache_version": CACHE_VERSION, "snapshot": snapshot.model_dump(mode="json")}

        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{file_hash[:12]}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, self._path(file_hash))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def invalidate(self, file_hash: str) -> None:
        path = self._path(file_hash)
        if path.exists():
            path.unlink()

    def clear(self) -> int:
        """Remove every entry. Returns the number of entries removed."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for path in self.cache_dir.glob("*.json"):
            path.unlink()
            removed += 1
        return removed


@dataclass
class MemoryContentCache:
    """In-process cache; stores serialized snapshots so hits are independent copies."""
    entries: Dict[str, dict] = field(default_factory=dict)

    def get(self, file_hash: str) -> Optional[ExtractionSnapshot]:
        payload = self.entries.get(file_hash)
        if payload is None:
            return None
        return ExtractionSnapshot.model_validate(payload)

    def put(self, file_hash: str, snapshot: ExtractionSnapshot) -> None:
        self.entries[file_hash] = snapshot.model_dump(mode="json")

    def invalidate(self, file_hash: str) -> None:
        self.entries.pop(file_hash, None)

    def clear(self) -> int:
        removed = len(self.entries)
        self.entries.clear()
        return removed
