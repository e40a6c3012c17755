"""Configuration for memory-graph.

Engines take a ``Config`` in their constructor; ``CONFIG`` is the default
instance built from the environment and is only read by the transports.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

EDGE_SOURCES = frozenset({"similarity", "files", "tags", "family", "manual"})


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = Path(
        os.environ.get("MEMORY_GRAPH_DB_PATH", Path.home() / ".memory-graph" / "lancedb-memory")
    )
    data_dir: Path = Path(
        os.environ.get("MEMORY_GRAPH_DATA_DIR", Path.home() / ".memory-graph" / "data")
    )
    project_root: Path = Path(os.environ.get("MEMORY_GRAPH_PROJECT_ROOT", Path.cwd()))
    table_name: str = "memories"
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1024"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google | hash
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    embedding_timeout: float = 30.0
    embedding_cache_size: int = 128

    # Ranking
    default_limit: int = 5
    max_limit: int = 50
    over_fetch: int = 3
    min_similarity: float = 0.3
    half_life_days: float = 90.0
    decay_immune_importance: int = 8
    project_boost: float = 1.2
    access_boost_epsilon: float = 0.02
    access_boost_cap: float = 1.1

    # Relationship graph
    similarity_edge_threshold: float = 0.65
    min_edge_strength: float = 0.1
    graph_edge_sources: frozenset[str] = field(default=EDGE_SOURCES)
    tag_edge_policy: str = "always"  # always | unless-family

    # Writes
    dedup_threshold: float | None = 0.95
    default_importance: int = 5
    default_category: str = "insight"
    trash_retention_days: int = 30
    purge_interval_hours: int = 24
    scroll_page_size: int = 100


CONFIG = Config()
