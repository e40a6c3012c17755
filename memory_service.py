"""Memory write paths and reads: remember, reflect, forget, restore, trash, stats."""

from __future__ import annotations

import re
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from config import Config
from errors import Conflict, NotFound, ValidationError
from models import MEMORY_SOURCES, Memory, SearchFilters, normalize_tags, validate_category_name
from staleness import StaleReport, StalenessDetector
from utils import log, now_iso, parse_iso

if TYPE_CHECKING:
    from categories import CategoryHierarchy
    from embeddings import EmbeddingProvider
    from vector_store import VectorStore

ID_PREFIX_MATCH_LIMIT = 100
FULL_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


@dataclass
class MemoryStats:
    total: int = 0
    trashed: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_project: dict[str, int] = field(default_factory=dict)
    oldest: str | None = None
    newest: str | None = None


class MemoryService:
    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        hierarchy: CategoryHierarchy,
        config: Config,
        detector: StalenessDetector | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.hierarchy = hierarchy
        self.config = config
        self.detector = detector or StalenessDetector(config.project_root)

    # -- lookups ------------------------------------------------------------

    def get(self, memory_id: str) -> Memory:
        memory = self.store.get(memory_id)
        if memory is None:
            raise NotFound(f"Memory {memory_id} not found")
        return memory

    def find(self, memory_id: str) -> Memory:
        """Find a memory by full id or an unambiguous id prefix."""
        memory_id = memory_id.strip()
        if not memory_id:
            raise ValidationError("memory_id is required")
        if FULL_ID_PATTERN.match(memory_id):
            return self.get(memory_id)
        matches = self.store.find_by_prefix(memory_id, limit=ID_PREFIX_MATCH_LIMIT)
        if not matches:
            raise NotFound(f"Memory {memory_id} not found")
        exact = [m for m in matches if m.id == memory_id]
        if exact:
            return exact[0]
        if len(matches) > 1:
            ids = ", ".join(m.id for m in matches)
            if len(matches) >= ID_PREFIX_MATCH_LIMIT:
                ids = f"{ids}..."
            raise ValidationError(f"Ambiguous ID prefix. Matches: {ids}. Provide the full ID.")
        return matches[0]

    # -- writes -------------------------------------------------------------

    def _validate_importance(self, importance: int) -> int:
        if not isinstance(importance, int) or not 1 <= importance <= 10:
            raise ValidationError(f"importance must be an integer 1-10, got {importance!r}")
        return importance

    def remember(
        self,
        content: str,
        category: str | None = None,
        project: str | None = None,
        tags: list[str] | None = None,
        importance: int | None = None,
        subcategory: str | None = None,
        source: str | None = None,
        related_files: list[str] | None = None,
        related_memory_ids: list[str] | None = None,
    ) -> Memory:
        if not content or not content.strip():
            raise ValidationError("content is required")
        importance = self._validate_importance(
            self.config.default_importance if importance is None else importance
        )
        source = source or "self-discovered"
        if source not in MEMORY_SOURCES:
            raise ValidationError(f"Invalid source '{source}'. Valid: {sorted(MEMORY_SOURCES)}")
        category = (category or self.config.default_category).strip().lower()
        validate_category_name(category)

        related_files = list(dict.fromkeys(related_files or []))
        vector = self.embedder.embed(content)
        self._check_duplicate(vector)
        self.hierarchy.ensure(category)

        timestamp = now_iso()
        memory = Memory(
            id=str(uuid.uuid4()),
            content=content,
            category=category,
            project=project or "global",
            created_at=timestamp,
            updated_at=timestamp,
            accessed_at=timestamp,
            vector=vector,
            subcategory=subcategory,
            tags=normalize_tags(tags),
            importance=importance,
            source=source,
            related_files=related_files,
            file_checksums=self.detector.checksums(related_files) if related_files else {},
            related_memory_ids=list(dict.fromkeys(related_memory_ids or [])),
        )
        self.store.upsert(memory)
        return memory

    def _check_duplicate(self, vector: list[float]) -> None:
        if self.config.dedup_threshold is None:
            return
        results = self.store.search(vector, SearchFilters(), limit=1)
        if results and results[0][1] >= self.config.dedup_threshold:
            existing, similarity = results[0]
            raise Conflict(
                f"Duplicate detected ({similarity:.0%} similar). Existing ID: {existing.id}"
            )

    def reflect(
        self,
        memory_id: str,
        content: str | None = None,
        importance: int | None = None,
        tags: list[str] | None = None,
        add_tags: list[str] | None = None,
        subcategory: str | None = None,
        category: str | None = None,
        related_files: list[str] | None = None,
        related_memory_ids: list[str] | None = None,
    ) -> tuple[Memory, list[str]]:
        """Update fields of an existing memory; returns it and a change list."""
        existing = self.find(memory_id)
        updates: dict[str, Any] = {}
        changes: list[str] = []

        if content is not None:
            if not content.strip():
                raise ValidationError("content must be a non-empty string")
            updates["content"] = content
            changes.append("content")
        if importance is not None:
            updates["importance"] = self._validate_importance(importance)
            changes.append(f"importance -> {importance}")
        if category:
            category = category.strip().lower()
            self.hierarchy.ensure(category)
            updates["category"] = category
            changes.append(f"category -> {category}")
        if subcategory:
            updates["subcategory"] = subcategory
            changes.append(f"subcategory -> {subcategory}")
        if tags is not None:
            updates["tags"] = normalize_tags(tags)
            changes.append("tags replaced")
        if add_tags:
            updates["tags"] = normalize_tags(updates.get("tags", existing.tags) + list(add_tags))
            changes.append(f"tags added: {', '.join(normalize_tags(add_tags))}")
        if related_files is not None:
            files = list(dict.fromkeys(related_files))
            updates["related_files"] = files
            updates["file_checksums"] = self.detector.checksums(files)
            changes.append("related_files updated")
        if related_memory_ids is not None:
            ids = [i for i in dict.fromkeys(related_memory_ids) if i != existing.id]
            updates["related_memory_ids"] = ids
            changes.append("related_memory_ids updated")

        if not changes:
            raise ValidationError("No changes specified.")

        updates["updated_at"] = now_iso()
        if "content" in updates:
            if "file_checksums" not in updates and existing.related_files:
                refreshed = self._refresh_checksums_quietly(existing)
                if refreshed is not None:
                    updates["file_checksums"] = refreshed
            vector = self.embedder.embed(updates["content"])
            memory = replace(existing, **updates, vector=vector)
            self.store.upsert(memory)
        else:
            self.store.patch_payload([existing.id], updates)
            memory = replace(existing, **updates)
        return memory, changes

    def _refresh_checksums_quietly(self, memory: Memory) -> dict[str, str] | None:
        try:
            return self.detector.checksums(memory.related_files)
        except Exception as e:
            log(f"Checksum refresh failed for {memory.id[:8]}: {e}")
            return None

    def resync(self, memory_id: str) -> Memory:
        """Record the live checksums of a memory's files."""
        memory = self.find(memory_id)
        checksums = self.detector.checksums(memory.related_files)
        self.store.patch_payload([memory.id], {"file_checksums": checksums})
        return replace(memory, file_checksums=checksums)

    def forget(self, memory_id: str, permanent: bool = False) -> Memory:
        """Move a memory to the trash, or delete it outright."""
        memory = self.find(memory_id)
        if permanent:
            self.store.delete([memory.id])
            return memory
        if memory.is_trashed:
            raise Conflict(f"Memory [{memory.id[:8]}] is already in trash.")
        trashed_at = now_iso()
        self.store.patch_payload([memory.id], {"trashed_at": trashed_at})
        return replace(memory, trashed_at=trashed_at)

    def restore(self, memory_id: str) -> Memory:
        memory = self.find(memory_id)
        if not memory.is_trashed:
            raise Conflict(f"Memory [{memory.id[:8]}] is not in trash.")
        self.store.patch_payload([memory.id], {"trashed_at": None})
        return replace(memory, trashed_at=None)

    def list_trash(self) -> list[Memory]:
        trashed = self.store.scroll_all(SearchFilters(only_trashed=True))
        return sorted(trashed, key=lambda m: m.trashed_at or "", reverse=True)

    def purge_trash(self, older_than_days: float | None = None) -> int:
        """Permanently delete trashed memories (optionally only old ones)."""
        trashed = self.list_trash()
        if older_than_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
            trashed = [m for m in trashed if parse_iso(m.trashed_at) < cutoff]
        self.store.delete([m.id for m in trashed])
        return len(trashed)

    # -- reads --------------------------------------------------------------

    def recent(self, category: str | None = None, project: str | None = None, limit: int = 10) -> list[Memory]:
        if not 1 <= limit <= self.config.max_limit:
            raise ValidationError(f"limit must be 1-{self.config.max_limit}, got {limit}")
        if category is not None and not self.hierarchy.exists(category):
            raise ValidationError(f'Unknown category "{category}".')
        memories = self.store.scroll_all(SearchFilters(category=category, project=project))
        memories.sort(key=lambda m: parse_iso(m.created_at), reverse=True)
        return memories[:limit]

    def check_stale(self, project: str | None = None) -> StaleReport:
        memories = self.store.scroll_all(SearchFilters(project=project))
        return self.detector.check_stale(memories)

    def stats(self) -> MemoryStats:
        active = self.store.scroll_all(SearchFilters())
        stats = MemoryStats(
            total=len(active),
            trashed=self.store.count(SearchFilters(only_trashed=True)),
            by_category=dict(Counter(m.category for m in active)),
            by_project=dict(Counter(m.project for m in active)),
        )
        if active:
            created = sorted(m.created_at for m in active)
            stats.oldest, stats.newest = created[0], created[-1]
        return stats
