#!/usr/bin/env python3
"""
Memory Graph MCP Server

Persistent semantic memory with deterministic reranking and a relationship graph:
- FastMCP for the stdio tool surface
- LanceDB for vector storage with payload filters
- Ollama/qwen3-embedding for local embeddings (1024-dim), Google Gemini fallback
- A JSON category hierarchy whose guide is injected into tool descriptions
"""

from __future__ import annotations

import asyncio
import functools
import json
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import FastMCP

from categories import CategoryEvent, CategoryHierarchy
from config import CONFIG, Config
from embeddings import EmbeddingProvider, get_embedding_provider
from errors import MemoryGraphError
from graph import GraphEngine
from memory_service import MemoryService
from models import Memory, SearchFilters
from ranking import RankingEngine
from staleness import StalenessDetector
from utils import get_project_id, log, shorten
from vector_store import VectorStore

CATEGORIES_FILE = "categories.json"
GRAPH_TIMEOUT_SECONDS = 60.0

# =============================================================================
# Services (Lazy Singleton)
# =============================================================================


@dataclass
class Services:
    """Everything a transport needs, wired to one store and one hierarchy."""

    config: Config
    store: VectorStore
    embedder: EmbeddingProvider
    hierarchy: CategoryHierarchy
    ranking: RankingEngine
    graph: GraphEngine
    memories: MemoryService


def build_services(
    config: Config,
    store: VectorStore | None = None,
    embedder: EmbeddingProvider | None = None,
) -> Services:
    store = store if store is not None else VectorStore(config)
    embedder = embedder if embedder is not None else get_embedding_provider(config)
    hierarchy = CategoryHierarchy(config.data_dir / CATEGORIES_FILE, store)
    return Services(
        config=config,
        store=store,
        embedder=embedder,
        hierarchy=hierarchy,
        ranking=RankingEngine(store, embedder, config, hierarchy),
        graph=GraphEngine(config, store, hierarchy),
        memories=MemoryService(store, embedder, hierarchy, config, StalenessDetector(config.project_root)),
    )


_lock = threading.RLock()
_services: Services | None = None
_purge_task: asyncio.Task | None = None


def get_services() -> Services:
    """Get or create the shared services (thread-safe)."""
    global _services
    if _services is None:
        with _lock:
            if _services is None:  # Double-check after acquiring lock
                services = build_services(CONFIG)
                services.hierarchy.subscribe(_on_category_change)
                _services = services
    return _services


def tool_errors(fn: Callable[..., Awaitable[str]]) -> Callable[..., Awaitable[str]]:
    """Turn taxonomy errors into the ``Error: ...`` strings MCP callers read."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> str:
        try:
            return await fn(*args, **kwargs)
        except MemoryGraphError as e:
            return f"Error: {e}"

    return wrapper


def _format_memory(memory: Memory, index: int | None = None) -> list[str]:
    head = f"[{index}] " if index is not None else ""
    sub = f"/{memory.subcategory}" if memory.subcategory else ""
    lines = [
        f"{head}{memory.category}{sub} (ID: {memory.id[:8]}..., importance {memory.importance})",
        f"    {memory.content}",
    ]
    if memory.tags:
        lines.append(f"    Tags: {', '.join(memory.tags)}")
    if memory.related_files:
        lines.append(f"    Files: {', '.join(memory.related_files)}")
    lines.append(f"    Project: {shorten(memory.project, 40)} | {memory.created_at[:19]}")
    return lines


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "memory-graph",
    instructions="Persistent semantic memory with deterministic reranking, categories and a relationship graph",
)

CATEGORY_TOOLS = ("memory_save", "memory_update")
_base_descriptions: dict[str, str] = {}


def _refresh_tool_descriptions() -> None:
    """Inject the current category guide into the tools that take a category."""
    guide = get_services().hierarchy.describe()
    for name in CATEGORY_TOOLS:
        tool = mcp._tool_manager.get_tool(name)
        if tool is None:
            continue
        base = _base_descriptions.setdefault(name, tool.description)
        tool.description = f"{base}\n\n{guide}"


def _on_category_change(event: CategoryEvent) -> None:
    _refresh_tool_descriptions()


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
@tool_errors
async def memory_save(
    content: str,
    category: str = "insight",
    tags: list[str] | None = None,
    importance: int = 5,
    subcategory: str | None = None,
    source: str = "self-discovered",
    related_files: list[str] | None = None,
    related_memory_ids: list[str] | None = None,
) -> str:
    """Save a memory with semantic embedding. Use after learning something valuable.

    Args:
        content: Memory content. Format: '[insight]. Context: [where]. Rationale: [why]'
        category: Category name; unknown valid names are created on the fly
        tags: Optional tags for filtering
        importance: 1-10; 8 and above never decay
        subcategory: Optional free-form subcategory
        source: user-told, self-discovered, migration or auto-saved
        related_files: Files this memory describes; tracked for staleness
        related_memory_ids: IDs of memories to link in the graph
    """
    memory = await asyncio.to_thread(
        get_services().memories.remember,
        content,
        category=category,
        project=get_project_id(),
        tags=tags,
        importance=importance,
        subcategory=subcategory,
        source=source,
        related_files=related_files,
        related_memory_ids=related_memory_ids,
    )
    parts = [f"Saved (ID: {memory.id[:8]}..., {memory.category})", f"Tags: {memory.tags}"]
    if memory.file_checksums:
        parts.append(f"Tracking {len(memory.file_checksums)} file(s) for staleness")
    return "\n".join(parts)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_recall(
    query: str,
    category: str | None = None,
    tags: list[str] | None = None,
    min_importance: int | None = None,
    limit: int = 5,
) -> str:
    """Semantic search across ALL projects, reranked by recency, importance and project.

    Args:
        query: Search query - semantic concepts work best
        category: Optional category filter
        tags: Optional tags; every tag must be present
        min_importance: Optional importance floor (1-10)
        limit: Max results (default 5, max 50)
    """
    return await _recall(query, category, tags, min_importance, limit, project_scope=False)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_recall_project(
    query: str,
    category: str | None = None,
    tags: list[str] | None = None,
    min_importance: int | None = None,
    limit: int = 5,
) -> str:
    """Semantic search in the CURRENT project only.

    Args:
        query: Search query - semantic concepts work best
        category: Optional category filter
        tags: Optional tags; every tag must be present
        min_importance: Optional importance floor (1-10)
        limit: Max results (default 5, max 50)
    """
    return await _recall(query, category, tags, min_importance, limit, project_scope=True)


async def _recall(
    query: str,
    category: str | None,
    tags: list[str] | None,
    min_importance: int | None,
    limit: int,
    project_scope: bool,
) -> str:
    project = get_project_id()
    filters = SearchFilters(
        category=category,
        project=project if project_scope else None,
        tags=tuple(tags or ()),
        min_importance=min_importance,
    )
    results = await get_services().ranking.search(query, filters, limit, current_project=project)

    scope = "current project" if project_scope else "all projects"
    if not results:
        return f"No memories found for '{query}' in {scope}"

    lines = [f"Found {len(results)} memories ({scope}):\n"]
    for i, result in enumerate(results, 1):
        lines.extend(_format_memory(result.memory, i))
        lines.append(f"    Similarity: {result.similarity:.0%} | Score: {result.score:.3f}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_update(
    memory_id: str,
    content: str | None = None,
    importance: int | None = None,
    category: str | None = None,
    subcategory: str | None = None,
    tags: list[str] | None = None,
    add_tags: list[str] | None = None,
    related_files: list[str] | None = None,
    related_memory_ids: list[str] | None = None,
) -> str:
    """Update an existing memory.

    Args:
        memory_id: The ID of the memory to update (full or partial UUID)
        content: New content (re-embeds if changed)
        importance: New importance (1-10)
        category: New category
        subcategory: New subcategory
        tags: New tags (replaces existing)
        add_tags: Tags to add to the existing ones
        related_files: New related files (checksums are recomputed)
        related_memory_ids: New manual links
    """
    memory, changes = await asyncio.to_thread(
        get_services().memories.reflect,
        memory_id,
        content=content,
        importance=importance,
        tags=tags,
        add_tags=add_tags,
        subcategory=subcategory,
        category=category,
        related_files=related_files,
        related_memory_ids=related_memory_ids,
    )
    return f"Updated memory {memory.id[:8]}...: {'; '.join(changes)}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_delete(memory_id: str, permanent: bool = False) -> str:
    """Move a memory to the trash (or delete it permanently).

    Args:
        memory_id: The ID of the memory to delete (full or partial UUID)
        permanent: Skip the trash and delete immediately
    """
    memory = await asyncio.to_thread(get_services().memories.forget, memory_id, permanent)
    if permanent:
        return f"Deleted memory {memory.id[:8]}... permanently"
    return f"Moved memory {memory.id[:8]}... to trash. Use memory_restore to undo."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_restore(memory_id: str) -> str:
    """Restore a memory from the trash.

    Args:
        memory_id: The ID of the trashed memory (full or partial UUID)
    """
    memory = await asyncio.to_thread(get_services().memories.restore, memory_id)
    return f"Restored memory {memory.id[:8]}..."


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_trash() -> str:
    """List memories currently in the trash."""
    trashed = await asyncio.to_thread(get_services().memories.list_trash)
    if not trashed:
        return "Trash is empty."
    lines = [f"{len(trashed)} memories in trash:\n"]
    for memory in trashed:
        lines.append(f"- {memory.id[:8]}... ({memory.category}) trashed {memory.trashed_at[:19]}")
        lines.append(f"    {shorten(memory.content, 120)}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_purge_trash(older_than_days: float | None = None) -> str:
    """Permanently delete trashed memories.

    Args:
        older_than_days: Only purge memories trashed longer ago than this
    """
    purged = await asyncio.to_thread(get_services().memories.purge_trash, older_than_days)
    return f"Purged {purged} memories from trash"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_sync(memory_id: str | None = None, all_projects: bool = False) -> str:
    """Check memories whose related files changed, or re-sync one memory's checksums.

    Args:
        memory_id: Re-record the live checksums of this memory's files
        all_projects: Check every project instead of the current one
    """
    memories = get_services().memories
    if memory_id:
        memory = await asyncio.to_thread(memories.resync, memory_id)
        return f"Synced {len(memory.file_checksums)} file checksum(s) for {memory.id[:8]}..."

    project = None if all_projects else get_project_id()
    report = await asyncio.to_thread(memories.check_stale, project)
    if not report.stale:
        return f"All {report.total_with_files} memories with related files are up to date."
    lines = [f"{report.total_stale} of {report.total_with_files} memories may be stale:\n"]
    for item in report.stale:
        lines.append(f"- {item.memory.id[:8]}... (importance {item.memory.importance}) {shorten(item.memory.content, 100)}")
        lines.append(f"    Changed: {', '.join(item.stale_files)}")
    lines.append("\nReview each memory, then memory_update it or memory_sync it by ID.")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_graph() -> str:
    """Relationship graph of all active memories as JSON (nodes, links, total)."""
    graph = await get_services().graph.snapshot(timeout=GRAPH_TIMEOUT_SECONDS)
    return json.dumps(graph.to_dict())


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def memory_stats() -> str:
    """Get memory system statistics - total, by category, by project."""
    services = get_services()
    stats = await asyncio.to_thread(services.memories.stats)
    if stats.total == 0 and stats.trashed == 0:
        return "No memories stored yet."

    by_project = dict(sorted(stats.by_project.items(), key=lambda x: x[1], reverse=True)[:5])
    lines = [
        "=== Memory Statistics ===",
        f"Total: {stats.total} memories ({stats.trashed} in trash)",
        f"Oldest: {(stats.oldest or '-')[:19]} | Newest: {(stats.newest or '-')[:19]}",
        "",
        "By Category:",
    ]
    for cat, count in sorted(stats.by_category.items()):
        lines.append(f"  {cat}: {count}")
    lines.append("\nBy Project (top 5):")
    for proj, count in by_project.items():
        lines.append(f"  {shorten(proj, 40)}: {count}")

    lines.append(f"\nPeriodic trash purge: {'active' if _purge_task and not _purge_task.done() else 'inactive'}")
    cache_info = getattr(services.embedder, "cache_info", None)
    if cache_info is not None:
        info = cache_info()
        lines.append(f"Embedding cache: {info.hits} hits, {info.misses} misses (maxsize={info.maxsize})")
    return "\n".join(lines)


# =============================================================================
# Category Tools
# =============================================================================


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def category_list() -> str:
    """List categories as a tree, with descriptions."""
    hierarchy = get_services().hierarchy
    lines = []
    for top, children in hierarchy.tree().items():
        cat = hierarchy.require(top)
        lines.append(f"{top} ({hierarchy.assign_color(top)}) - {cat.description}")
        for child in children:
            lines.append(f"  {child} - {hierarchy.require(child).description}")
    return "\n".join(lines) if lines else "No categories defined."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
@tool_errors
async def category_create(
    name: str,
    description: str,
    parent: str | None = None,
    color: str | None = None,
    is_parent: bool = False,
) -> str:
    """Create a category.

    Args:
        name: Lowercase name (letters, digits, hyphens; 2-30 chars)
        description: What belongs in this category
        parent: Optional parent category
        color: Optional #rrggbb color
        is_parent: Mark as a grouping category
    """
    cat = await asyncio.to_thread(get_services().hierarchy.create, name, description, parent, color, is_parent)
    return f"Created category '{cat.name}'" + (f" under '{cat.parent}'" if cat.parent else "")


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
@tool_errors
async def category_update(
    name: str,
    new_name: str | None = None,
    description: str | None = None,
    parent: str | None = None,
    color: str | None = None,
    is_parent: bool | None = None,
) -> str:
    """Edit or rename a category. Renames move every memory to the new name.

    Args:
        name: Current category name
        new_name: New name (renames the category and its memories)
        description: New description
        parent: New parent, or "" to make top-level
        color: New #rrggbb color, or "" to clear
        is_parent: Mark or unmark as a grouping category
    """
    kwargs: dict[str, Any] = {}
    if parent is not None:
        kwargs["parent"] = parent
    if color is not None:
        kwargs["color"] = color
    result = await asyncio.to_thread(
        get_services().hierarchy.update,
        name,
        new_name=new_name,
        description=description,
        is_parent=is_parent,
        **kwargs,
    )
    lines = [f"Updated category '{result.category.name}'"]
    if new_name and new_name != name:
        lines.append(f"Moved {result.memories_updated} memories from '{name}'")
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
    }
)
@tool_errors
async def category_delete(
    name: str,
    reassign_children_to: str | None = None,
    reassign_memories_to: str | None = None,
    delete_memories: bool = False,
) -> str:
    """Delete a category.

    Args:
        name: Category to delete
        reassign_children_to: New parent for child categories, or "" for top-level
        reassign_memories_to: Category that receives this category's memories
        delete_memories: Move this category's memories to the trash instead
    """
    result = await asyncio.to_thread(
        get_services().hierarchy.delete,
        name,
        reassign_children_to=reassign_children_to,
        reassign_memories_to=reassign_memories_to,
        delete_memories=delete_memories,
    )
    lines = [f"Deleted category '{result.name}'"]
    if result.children_reassigned:
        lines.append(f"Reassigned children: {', '.join(result.children_reassigned)}")
    if result.memories_reassigned:
        lines.append(f"Moved {result.memories_reassigned} memories to '{reassign_memories_to}'")
    if result.memories_trashed:
        lines.append(f"Moved {result.memories_trashed} memories to trash")
    return "\n".join(lines)


# =============================================================================
# Trash Purge
# =============================================================================


async def _purge_trash_periodically():
    """Periodically purge memories that sat in the trash past retention."""
    services = get_services()
    while True:
        await asyncio.sleep(services.config.purge_interval_hours * 3600)
        try:
            purged = await asyncio.to_thread(
                services.memories.purge_trash, services.config.trash_retention_days
            )
            log(f"Purged {purged} trashed memories")
        except MemoryGraphError as e:
            log(f"Trash purge error: {e}")


# =============================================================================
# Server Entry Point
# =============================================================================


async def init_services() -> Services:
    """Open the table, build indexes when large enough, load categories."""
    services = get_services()
    try:
        await asyncio.to_thread(services.store.ensure_indexes)
    except MemoryGraphError as e:
        log(f"Vector index warning: {e}")
    _refresh_tool_descriptions()
    log("Server ready")
    return services


async def run_server():
    """Run the MCP server with initialization and background tasks."""
    services = await init_services()
    global _purge_task
    _purge_task = asyncio.create_task(_purge_trash_periodically())
    try:
        await mcp.run_stdio_async()
    finally:
        await services.ranking.drain()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
