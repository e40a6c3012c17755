"""Shared fixtures: an in-memory vector store, a scripted embedder, wired services."""

from __future__ import annotations

import copy
import math
import uuid
from dataclasses import replace

import pytest

import server as server_module
from categories import CategoryHierarchy
from config import Config
from embeddings import HashEmbeddings
from errors import EmbeddingFailure, VectorStoreUnavailable
from graph import GraphEngine
from memory_service import MemoryService
from models import Memory, SearchFilters
from ranking import RankingEngine
from staleness import StalenessDetector

TEST_DIM = 4


class InMemoryStore:
    """Dict-backed stand-in for ``VectorStore`` with the same contract."""

    def __init__(self, config: Config):
        self.config = config
        self.rows: dict[str, Memory] = {}
        self.search_calls: list[int] = []
        self.patch_calls = 0
        # Number of patch_payload calls allowed before the store "goes down".
        self.fail_patches_after: int | None = None

    def upsert(self, memory: Memory) -> None:
        self.rows[memory.id] = copy.deepcopy(memory)

    def get(self, memory_id: str) -> Memory | None:
        memory = self.rows.get(memory_id)
        return copy.deepcopy(memory) if memory is not None else None

    def find_by_prefix(self, prefix: str, limit: int = 100) -> list[Memory]:
        return [copy.deepcopy(m) for m in self.rows.values() if m.id.startswith(prefix)][:limit]

    def search(self, vector, filters=None, limit=10):
        self.search_calls.append(limit)
        filters = filters or SearchFilters()
        scored = []
        for memory in self.rows.values():
            if memory.vector is None or not filters.matches(memory):
                continue
            scored.append((copy.deepcopy(memory), _cosine(vector, memory.vector)))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def scroll(self, filters=None, page_size=None, with_vectors=False):
        filters = filters or SearchFilters()
        page_size = page_size or self.config.scroll_page_size
        matching = [copy.deepcopy(m) for m in self.rows.values() if filters.matches(m)]
        if not with_vectors:
            for m in matching:
                m.vector = None
        for start in range(0, len(matching), page_size):
            yield matching[start : start + page_size]

    def scroll_all(self, filters=None, with_vectors=False):
        return [m for page in self.scroll(filters, with_vectors=with_vectors) for m in page]

    def patch_payload(self, ids, fields):
        if not ids or not fields:
            return 0
        if self.fail_patches_after is not None and self.patch_calls >= self.fail_patches_after:
            raise VectorStoreUnavailable("store offline")
        self.patch_calls += 1
        for memory_id in ids:
            memory = self.rows.get(memory_id)
            if memory is not None:
                for key, value in fields.items():
                    setattr(memory, key, copy.deepcopy(value))
        return len(ids)

    def delete(self, ids) -> None:
        for memory_id in ids:
            self.rows.pop(memory_id, None)

    def count(self, filters=None) -> int:
        filters = filters or SearchFilters()
        return sum(1 for m in self.rows.values() if filters.matches(m))


def _cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class ScriptedEmbedder:
    """Returns scripted vectors for known texts, hash vectors for the rest."""

    def __init__(self, config: Config, vectors: dict[str, list[float]] | None = None):
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []
        self.fail = False
        self._fallback = HashEmbeddings(config)

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingFailure("embedding service unreachable")
        if text in self.vectors:
            return list(self.vectors[text])
        return self._fallback.embed(text)


@pytest.fixture
def config(tmp_path):
    return replace(
        Config(),
        db_path=tmp_path / "lancedb",
        data_dir=tmp_path / "data",
        project_root=tmp_path,
        embedding_dim=TEST_DIM,
        embedding_provider="hash",
        # Hash vectors in 4 dimensions collide too easily for duplicate checks.
        dedup_threshold=None,
    )


@pytest.fixture
def store(config):
    return InMemoryStore(config)


@pytest.fixture
def embedder(config):
    return ScriptedEmbedder(config)


@pytest.fixture
def hierarchy(config, store):
    return CategoryHierarchy(config.data_dir / "categories.json", store)


@pytest.fixture
def detector(config):
    return StalenessDetector(config.project_root)


@pytest.fixture
def memory_service(store, embedder, hierarchy, config, detector):
    return MemoryService(store, embedder, hierarchy, config, detector)


@pytest.fixture
def ranking(store, embedder, config, hierarchy):
    return RankingEngine(store, embedder, config, hierarchy)


@pytest.fixture
def graph_engine(config, store, hierarchy):
    return GraphEngine(config, store, hierarchy)


@pytest.fixture
def make_memory(store):
    """Factory that stores a memory directly, bypassing the write path."""

    def _make(content="note", vector=None, **fields) -> Memory:
        created = fields.pop("created_at", "2026-01-01T00:00:00+00:00")
        memory = Memory(
            id=fields.pop("id", str(uuid.uuid4())),
            content=content,
            category=fields.pop("category", "insight"),
            project=fields.pop("project", "global"),
            created_at=created,
            updated_at=fields.pop("updated_at", created),
            accessed_at=fields.pop("accessed_at", created),
            vector=vector if vector is not None else [1.0, 0.0, 0.0, 0.0],
            **fields,
        )
        store.upsert(memory)
        return memory

    return _make


@pytest.fixture
def services(config, store, embedder):
    """Install test services into the server module for the duration of a test."""
    built = server_module.build_services(config, store=store, embedder=embedder)
    previous = server_module._services
    server_module._services = built
    yield built
    server_module._services = previous
