"""Staleness detection: stored file checksums vs. live file content.

Read-only diagnostic. A memory is stale when any readable related file hashes
differently from its recorded checksum, or has no recorded checksum at all.
Unreadable files are skipped.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from models import Memory

CHUNK_SIZE = 1 << 16


def hash_file(file_path: str, root: Path) -> str | None:
    """SHA-256 hex digest of a file, or None if it cannot be read."""
    path = Path(file_path)
    if not path.is_absolute():
        path = root / path
    digest = hashlib.sha256()
    try:
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError:
        return None
    return digest.hexdigest()


def compute_checksums(file_paths: list[str], root: Path) -> dict[str, str]:
    """Checksums of the readable files among ``file_paths``."""
    checksums = {}
    for fp in file_paths:
        file_hash = hash_file(fp, root)
        if file_hash:
            checksums[fp] = file_hash
    return checksums


@dataclass
class StaleMemory:
    memory: Memory
    stale_files: list[str]

    def to_dict(self) -> dict[str, Any]:
        m = self.memory
        return {
            "id": m.id,
            "content": m.content,
            "category": m.category,
            "importance": m.importance,
            "updated_at": m.updated_at,
            "related_files": m.related_files,
            "stale_files": self.stale_files,
        }


@dataclass
class StaleReport:
    stale: list[StaleMemory] = field(default_factory=list)
    total_checked: int = 0
    total_with_files: int = 0

    @property
    def total_stale(self) -> int:
        return len(self.stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale": [s.to_dict() for s in self.stale],
            "total_checked": self.total_checked,
            "total_with_files": self.total_with_files,
            "total_stale": self.total_stale,
        }


class StalenessDetector:
    def __init__(self, root: Path):
        self.root = root

    def stale_files(self, memory: Memory) -> list[str]:
        changed = []
        for file_path in memory.related_files:
            current = hash_file(file_path, self.root)
            if current is None:
                continue
            if memory.file_checksums.get(file_path) != current:
                changed.append(file_path)
        return changed

    def check_stale(self, memories: list[Memory]) -> StaleReport:
        active = [m for m in memories if not m.is_trashed]
        report = StaleReport(total_checked=len(active))
        for memory in active:
            if not memory.related_files:
                continue
            report.total_with_files += 1
            changed = self.stale_files(memory)
            if changed:
                report.stale.append(StaleMemory(memory, changed))
        # Critical memories first.
        report.stale.sort(key=lambda s: s.memory.importance, reverse=True)
        return report

    def checksums(self, file_paths: list[str]) -> dict[str, str]:
        return compute_checksums(file_paths, self.root)
