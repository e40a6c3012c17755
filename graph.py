"""Relationship graph over the active memory population.

Five edge sources score each pair independently; a pair's final strength is
the maximum over the sources that fired and its types are their union.
Edges at or below ``Config.min_edge_strength`` are dropped.

| source     | condition                           | strength              |
|------------|-------------------------------------|-----------------------|
| similarity | cosine > threshold (0.65)           | (sim - t) / (1 - t)   |
| files      | k shared related files              | 0.3 + 0.15k           |
| tags       | k shared tags                       | 0.25 + 0.1k           |
| family     | same family root                    | 0.2                   |
| manual     | id listed in related_memory_ids     | 0.9                   |
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import numpy as np

from config import EDGE_SOURCES, Config
from models import Memory, SearchFilters

if TYPE_CHECKING:
    from categories import CategoryHierarchy
    from vector_store import VectorStore

FILES_BASE, FILES_STEP = 0.3, 0.15
TAGS_BASE, TAGS_STEP = 0.25, 0.1
FAMILY_STRENGTH = 0.2
MANUAL_STRENGTH = 0.9
TAG_EDGE_POLICIES = ("always", "unless-family")


@dataclass
class Edge:
    a: str
    b: str
    strength: float
    types: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.a,
            "target": self.b,
            "strength": round(self.strength, 6),
            "types": sorted(self.types),
        }


@dataclass
class Graph:
    nodes: list[Memory]
    edges: list[Edge]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [m.to_dict() for m in self.nodes],
            "links": [e.to_dict() for e in self.edges],
            "total": len(self.nodes),
        }


class EdgeSet:
    """Edges keyed by unordered pair, merged by max strength and type union."""

    def __init__(self):
        self._edges: dict[tuple[str, str], Edge] = {}

    def add(self, id_a: str, id_b: str, strength: float, kind: str) -> None:
        if id_a == id_b:
            return
        key = (id_a, id_b) if id_a < id_b else (id_b, id_a)
        edge = self._edges.get(key)
        if edge is None:
            self._edges[key] = Edge(key[0], key[1], strength, {kind})
        else:
            edge.strength = max(edge.strength, strength)
            edge.types.add(kind)

    def get(self, id_a: str, id_b: str) -> Edge | None:
        key = (id_a, id_b) if id_a < id_b else (id_b, id_a)
        return self._edges.get(key)

    def finalize(self, min_strength: float) -> list[Edge]:
        edges = []
        for key in sorted(self._edges):
            edge = self._edges[key]
            if edge.strength > min_strength:
                edge.strength = min(edge.strength, 1.0)
                edges.append(edge)
        return edges


def similarity_strength(sim: float, threshold: float) -> float | None:
    """Rescale similarity above the threshold to (0, 1]; None at or below it."""
    if sim <= threshold:
        return None
    return (sim - threshold) / (1 - threshold)


def cosine_matrix(vectors: list[list[float] | None]) -> np.ndarray:
    """Pairwise cosine similarity; rows without a usable vector score 0."""
    dim = max((len(v) for v in vectors if v is not None), default=0)
    matrix = np.zeros((len(vectors), dim))
    for i, v in enumerate(vectors):
        if v is not None and len(v) == dim:
            matrix[i] = v
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = 1.0
    unit = matrix / norms[:, None]
    return unit @ unit.T


class GraphEngine:
    """Computes a deduplicated, typed, weighted edge set for visualization."""

    def __init__(self, config: Config, store: VectorStore | None = None, hierarchy: CategoryHierarchy | None = None):
        if config.tag_edge_policy not in TAG_EDGE_POLICIES:
            raise ValueError(f"Unknown tag_edge_policy '{config.tag_edge_policy}'")
        unknown = set(config.graph_edge_sources) - EDGE_SOURCES
        if unknown:
            raise ValueError(f"Unknown graph edge sources: {sorted(unknown)}")
        self.config = config
        self.store = store
        self.hierarchy = hierarchy

    def build_graph(self, memories: list[Memory], category_index: dict[str, str]) -> Graph:
        """Build the graph for one consistent snapshot of active memories.

        ``category_index`` maps category name to family root; categories that
        are missing from it are their own root.
        """
        active = [m for m in memories if not m.is_trashed]
        sources = self.config.graph_edge_sources
        threshold = self.config.similarity_edge_threshold
        edges = EdgeSet()

        sims = cosine_matrix([m.vector for m in active]) if "similarity" in sources else None
        families = [category_index.get(m.category, m.category) for m in active]
        file_sets = [set(m.related_files) for m in active]
        tag_sets = [set(m.tags) for m in active]

        for i, a in enumerate(active):
            for j in range(i + 1, len(active)):
                b = active[j]
                if sims is not None and a.vector is not None and b.vector is not None:
                    strength = similarity_strength(float(sims[i, j]), threshold)
                    if strength is not None:
                        edges.add(a.id, b.id, strength, "similarity")

                if "files" in sources:
                    shared_files = len(file_sets[i] & file_sets[j])
                    if shared_files:
                        edges.add(a.id, b.id, FILES_BASE + FILES_STEP * shared_files, "files")

                same_family = families[i] == families[j]
                if "family" in sources and same_family:
                    edges.add(a.id, b.id, FAMILY_STRENGTH, "family")

                if "tags" in sources and not (
                    same_family and "family" in sources and self.config.tag_edge_policy == "unless-family"
                ):
                    shared_tags = len(tag_sets[i] & tag_sets[j])
                    if shared_tags:
                        edges.add(a.id, b.id, TAGS_BASE + TAGS_STEP * shared_tags, "tags")

        if "manual" in sources:
            active_ids = {m.id for m in active}
            for m in active:
                for linked in m.related_memory_ids:
                    if linked in active_ids:
                        edges.add(m.id, linked, MANUAL_STRENGTH, "manual")

        nodes = [replace(m, vector=None) for m in active]
        return Graph(nodes=nodes, edges=edges.finalize(self.config.min_edge_strength))

    def load_snapshot(self) -> tuple[list[Memory], dict[str, str]]:
        """Read the whole active set (with vectors) and the family index."""
        if self.store is None:
            raise RuntimeError("GraphEngine.load_snapshot requires a store")
        memories = self.store.scroll_all(SearchFilters(), with_vectors=True)
        index = self.hierarchy.family_index() if self.hierarchy is not None else {}
        return memories, index

    async def snapshot(self, timeout: float | None = None) -> Graph:
        """Load a snapshot and build its graph, bounded by a caller timeout."""

        def _run() -> Graph:
            memories, index = self.load_snapshot()
            return self.build_graph(memories, index)

        return await asyncio.wait_for(asyncio.to_thread(_run), timeout=timeout)
