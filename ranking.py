"""Ranking engine: vector recall followed by a deterministic rerank.

score = similarity x decay(age) x project boost x access boost

Candidates below the similarity floor are dropped before reranking. The
access-count bump on returned memories is dispatched as a detached task and
never affects the response.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from config import Config
from errors import ValidationError
from models import Memory, SearchFilters, normalize_tags
from utils import age_days, log, now_iso, parse_iso

if TYPE_CHECKING:
    from categories import CategoryHierarchy
    from embeddings import EmbeddingProvider
    from vector_store import VectorStore


@dataclass
class ScoredMemory:
    memory: Memory
    score: float
    similarity: float


def decay(age: float, importance: int, half_life_days: float = 90.0, immune_importance: int = 8) -> float:
    """Exponential half-life decay; important memories never fade."""
    if importance >= immune_importance:
        return 1.0
    return 0.5 ** (max(age, 0.0) / half_life_days)


def access_boost(access_count: int, epsilon: float = 0.02, cap: float = 1.1) -> float:
    """Small, saturating bonus for frequently recalled memories."""
    return min(1.0 + epsilon * math.log1p(max(access_count, 0)), cap)


class RankingEngine:
    """Turns a query into an ordered, filtered result set."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        config: Config,
        hierarchy: CategoryHierarchy | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config
        self.hierarchy = hierarchy
        self._background: set[asyncio.Task] = set()

    def score(
        self, memory: Memory, similarity: float, current_project: str | None, now: datetime | None = None
    ) -> float:
        cfg = self.config
        factor = decay(
            age_days(memory.created_at, now),
            memory.importance,
            cfg.half_life_days,
            cfg.decay_immune_importance,
        )
        if current_project is not None and memory.project == current_project:
            factor *= cfg.project_boost
        factor *= access_boost(memory.access_count, cfg.access_boost_epsilon, cfg.access_boost_cap)
        return similarity * factor

    def rank(
        self,
        candidates: list[tuple[Memory, float]],
        limit: int,
        current_project: str | None,
        now: datetime | None = None,
    ) -> list[ScoredMemory]:
        """Apply the similarity floor, rerank and truncate. Pure function of its input."""
        now = now or datetime.now(timezone.utc)
        scored = [
            ScoredMemory(memory, self.score(memory, similarity, current_project, now), similarity)
            for memory, similarity in candidates
            if similarity >= self.config.min_similarity
        ]
        scored.sort(key=lambda s: (s.score, parse_iso(s.memory.created_at)), reverse=True)
        return scored[:limit]

    def validate(self, query: str, filters: SearchFilters, limit: int) -> SearchFilters:
        if not query or not query.strip():
            raise ValidationError("query is required")
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        if limit > self.config.max_limit:
            raise ValidationError(f"limit cannot exceed {self.config.max_limit}, got {limit}")
        if filters.min_importance is not None and not 1 <= filters.min_importance <= 10:
            raise ValidationError(f"min_importance must be 1-10, got {filters.min_importance}")
        if (
            filters.category is not None
            and self.hierarchy is not None
            and not self.hierarchy.exists(filters.category)
        ):
            raise ValidationError(
                f'Unknown category "{filters.category}". Valid categories: {", ".join(self.hierarchy.names())}'
            )
        # Active memories only, tags compared lowercase.
        return SearchFilters(
            category=filters.category,
            project=filters.project,
            tags=tuple(normalize_tags(list(filters.tags))),
            min_importance=filters.min_importance,
        )

    async def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
        current_project: str | None = None,
    ) -> list[ScoredMemory]:
        limit = self.config.default_limit if limit is None else limit
        filters = self.validate(query, filters or SearchFilters(), limit)

        vector = await asyncio.to_thread(self.embedder.embed, query)
        candidates = await asyncio.to_thread(
            self.store.search, vector, filters, limit * self.config.over_fetch
        )
        results = self.rank(candidates, limit, current_project)
        self._record_access(results)
        return results

    # -- fire-and-forget access tracking --------------------------------------

    def _record_access(self, results: list[ScoredMemory]) -> None:
        if not results:
            return
        updates = [(r.memory.id, r.memory.access_count + 1) for r in results]
        try:
            task = asyncio.get_running_loop().create_task(asyncio.to_thread(self._bump_access, updates))
        except RuntimeError as e:
            log(f"Access tracking not dispatched: {e}")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _bump_access(self, updates: list[tuple[str, int]]) -> None:
        accessed_at = now_iso()
        for memory_id, access_count in updates:
            try:
                self.store.patch_payload(
                    [memory_id], {"access_count": access_count, "accessed_at": accessed_at}
                )
            except Exception as e:
                log(f"Access tracking failed for {memory_id[:8]}: {e}")

    async def drain(self) -> None:
        """Wait for pending access updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
