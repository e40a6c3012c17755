#!/usr/bin/env python3
"""JSON API for the memory graph front end: graph, search, staleness, trash, categories."""

from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Coroutine
from typing import Any

from flask import Flask, jsonify, request

from errors import (
    CircularDependency,
    Conflict,
    EmbeddingFailure,
    MemoryGraphError,
    NotFound,
    ValidationError,
    VectorStoreUnavailable,
)
from models import SearchFilters
from server import GRAPH_TIMEOUT_SECONDS, get_services
from utils import get_project_id, log

app = Flask(__name__)
ITEMS_PER_PAGE = 10

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (CircularDependency, 400),
    (NotFound, 404),
    (Conflict, 409),
    (EmbeddingFailure, 503),
    (VectorStoreUnavailable, 503),
)

_loop: asyncio.AbstractEventLoop | None = None
_loop_lock = threading.Lock()


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run ``coro`` on the viewer's long-lived event loop and wait for its result.

    Tasks the coroutine detaches (access tracking) keep running on that loop
    after the request has returned.
    """
    global _loop
    if _loop is None:
        with _loop_lock:
            if _loop is None:  # Double-check after acquiring lock
                loop = asyncio.new_event_loop()
                threading.Thread(target=loop.run_forever, name="memory-viewer-loop", daemon=True).start()
                _loop = loop
    return asyncio.run_coroutine_threadsafe(coro, _loop).result()


@app.errorhandler(MemoryGraphError)
def handle_error(error: MemoryGraphError):
    status = next((code for kind, code in STATUS_BY_ERROR if isinstance(error, kind)), 500)
    if status >= 500:
        log(f"API error on {request.path}: {error}")
    return jsonify({"error": str(error), "kind": type(error).__name__}), status


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from e


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


# -- memories ----------------------------------------------------------------


@app.get("/api/graph")
def graph():
    """Full relationship graph of active memories."""
    snapshot = run_async(get_services().graph.snapshot(timeout=GRAPH_TIMEOUT_SECONDS))
    return jsonify(snapshot.to_dict())


@app.get("/api/memories")
def list_memories():
    """Newest active memories, paginated."""
    services = get_services()
    memories = services.memories.recent(
        category=request.args.get("category") or None,
        project=request.args.get("project") or None,
        limit=services.config.max_limit,
    )
    total_pages = max(1, -(-len(memories) // ITEMS_PER_PAGE))
    page = min(max(_int_arg("page", 1), 1), total_pages)
    start = (page - 1) * ITEMS_PER_PAGE
    return jsonify(
        {
            "memories": [m.to_dict() for m in memories[start : start + ITEMS_PER_PAGE]],
            "page": page,
            "total_pages": total_pages,
            "pages": get_page_links(page, total_pages),
        }
    )


@app.get("/api/memories/<memory_id>")
def get_memory(memory_id: str):
    return jsonify(get_services().memories.find(memory_id).to_dict())


@app.delete("/api/memories/<memory_id>")
def delete_memory(memory_id: str):
    permanent = request.args.get("permanent", "").lower() in ("1", "true", "yes")
    memory = get_services().memories.forget(memory_id, permanent=permanent)
    return jsonify({"id": memory.id, "permanent": permanent})


@app.get("/api/search")
def search():
    """Ranked semantic search; ``tags`` is comma-separated and all must match."""
    services = get_services()
    tags = tuple(t for t in request.args.get("tags", "").split(",") if t.strip())
    filters = SearchFilters(
        category=request.args.get("category") or None,
        project=request.args.get("project") or None,
        tags=tags,
        min_importance=_int_arg("min_importance"),
    )

    query = request.args.get("q", "")
    limit = _int_arg("limit", services.config.default_limit)
    current_project = get_project_id()

    results = run_async(services.ranking.search(query, filters, limit, current_project=current_project))
    return jsonify(
        {
            "results": [
                {**r.memory.to_dict(), "score": r.score, "similarity": r.similarity}
                for r in results
            ]
        }
    )


@app.get("/api/sync/check")
def sync_check():
    project = request.args.get("project") or None
    return jsonify(get_services().memories.check_stale(project).to_dict())


@app.post("/api/sync/<memory_id>")
def sync_memory(memory_id: str):
    memory = get_services().memories.resync(memory_id)
    return jsonify({"id": memory.id, "file_checksums": memory.file_checksums})


@app.get("/api/stats")
def stats():
    s = get_services().memories.stats()
    return jsonify(
        {
            "total": s.total,
            "trashed": s.trashed,
            "by_category": s.by_category,
            "by_project": s.by_project,
            "oldest": s.oldest,
            "newest": s.newest,
        }
    )


# -- trash -------------------------------------------------------------------


@app.get("/api/trash")
def trash():
    return jsonify({"memories": [m.to_dict() for m in get_services().memories.list_trash()]})


@app.post("/api/trash/<memory_id>/restore")
def restore(memory_id: str):
    memory = get_services().memories.restore(memory_id)
    return jsonify(memory.to_dict())


@app.delete("/api/trash")
def purge_trash():
    raw = request.args.get("older_than_days")
    try:
        older_than = float(raw) if raw else None
    except ValueError as e:
        raise ValidationError(f"older_than_days must be a number, got {raw!r}") from e
    return jsonify({"purged": get_services().memories.purge_trash(older_than)})


# -- categories --------------------------------------------------------------


@app.get("/api/categories")
def categories():
    hierarchy = get_services().hierarchy
    return jsonify(
        {
            "categories": [
                {**c.to_dict(), "color": hierarchy.assign_color(c.name)} for c in hierarchy.categories()
            ],
            "tree": hierarchy.tree(),
        }
    )


@app.post("/api/categories")
def create_category():
    body = _body()
    cat = get_services().hierarchy.create(
        body.get("name", ""),
        body.get("description", ""),
        parent=body.get("parent"),
        color=body.get("color"),
        is_parent=bool(body.get("is_parent", False)),
    )
    return jsonify(cat.to_dict()), 201


@app.patch("/api/categories/<name>")
def update_category(name: str):
    body = _body()
    kwargs = {k: body[k] for k in ("parent", "color") if k in body}
    result = get_services().hierarchy.update(
        name,
        new_name=body.get("new_name"),
        description=body.get("description"),
        is_parent=body.get("is_parent"),
        **kwargs,
    )
    return jsonify(
        {
            "category": result.category.to_dict(),
            "memories_updated": result.memories_updated,
            "warnings": [str(w) for w in result.warnings],
        }
    )


@app.delete("/api/categories/<name>")
def delete_category(name: str):
    body = _body()
    result = get_services().hierarchy.delete(
        name,
        reassign_children_to=body.get("reassign_children_to"),
        reassign_memories_to=body.get("reassign_memories_to"),
        delete_memories=bool(body.get("delete_memories", False)),
    )
    return jsonify(
        {
            "name": result.name,
            "children_reassigned": result.children_reassigned,
            "memories_reassigned": result.memories_reassigned,
            "memories_trashed": result.memories_trashed,
        }
    )


if __name__ == "__main__":
    port = int(os.environ.get("MEMORY_VIEWER_PORT", "5000"))
    print(f"Memory viewer API at http://localhost:{port}/api/graph")
    app.run(host="127.0.0.1", port=port, debug=False)
