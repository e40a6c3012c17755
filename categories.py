"""Category hierarchy: definitions, parent/child links, renames and deletes.

Categories live in a JSON document (``{"version": 1, "categories": [...]}``)
in the data directory. Every mutation validates first, then writes the whole
document once, then notifies subscribers with a ``CategoryEvent``.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from errors import (
    CircularDependency,
    Conflict,
    NotFound,
    PartialFailure,
    ValidationError,
    VectorStoreUnavailable,
)
from models import COLOR_PATTERN, Category, SearchFilters, validate_category_name
from utils import log, now_iso

if TYPE_CHECKING:
    from vector_store import VectorStore

FILE_VERSION = 1

DEFAULT_CATEGORIES = {
    "pattern": "Reusable code and architecture patterns",
    "config": "Configuration, environment and setup details",
    "debug": "Bugs, root causes and fixes",
    "perf": "Performance findings and optimizations",
    "pref": "User and team preferences",
    "insight": "General learnings and decisions",
    "api": "API behavior, quirks and contracts",
    "agent": "Agent workflow and tooling notes",
}

COLOR_PALETTE = (
    "#3b82f6", "#0ea5e9", "#06b6d4", "#0891b2", "#1e40af", "#38bdf8",
    "#8b5cf6", "#a855f7", "#6366f1", "#c084fc", "#7c3aed", "#d946ef",
    "#ec4899", "#f43f5e", "#db2777", "#f472b6", "#be185d", "#fb7185",
    "#ef4444", "#f97316", "#dc2626", "#fb923c", "#b91c1c", "#fdba74",
    "#eab308", "#f59e0b", "#fbbf24", "#fcd34d", "#d97706", "#fde047",
    "#22c55e", "#10b981", "#84cc16", "#4ade80", "#059669", "#14b8a6",
)  # fmt: skip

_UNSET = object()


@dataclass(frozen=True)
class CategoryEvent:
    kind: str  # created | updated | renamed | deleted
    name: str
    new_name: str | None = None


CategoryListener = Callable[[CategoryEvent], None]


@dataclass
class RenameResult:
    category: Category
    memories_updated: int = 0
    warnings: list[PartialFailure] = field(default_factory=list)


@dataclass
class DeleteResult:
    name: str
    children_reassigned: list[str] = field(default_factory=list)
    memories_reassigned: int = 0
    memories_trashed: int = 0


class CategoryHierarchy:
    """Owns category definitions and their parent/child relationships."""

    def __init__(
        self,
        path: Path,
        store: VectorStore | None = None,
        seed_defaults: bool = True,
    ):
        self.path = path
        self.store = store
        self.seed_defaults = seed_defaults
        self._lock = threading.RLock()
        self._categories: list[Category] | None = None
        self._listeners: list[CategoryListener] = []

    # -- persistence --------------------------------------------------------

    def _load(self) -> list[Category]:
        if self._categories is None:
            with self._lock:
                if self._categories is None:
                    self._categories = self._read_file()
        return self._categories

    def _read_file(self) -> list[Category]:
        if not self.path.exists():
            if not self.seed_defaults:
                return []
            seeded = [
                Category(name=name, description=desc, created_at=now_iso())
                for name, desc in DEFAULT_CATEGORIES.items()
            ]
            self._write_file(seeded)
            return seeded
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log(f"Could not read categories from {self.path}: {e}")
            return []
        if data.get("version") != FILE_VERSION or not isinstance(data.get("categories"), list):
            log(f"Unsupported categories file format in {self.path}")
            return []
        return [Category.from_dict(c) for c in data["categories"]]

    def _write_file(self, categories: list[Category]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": FILE_VERSION, "categories": [c.to_dict() for c in categories]}
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def _commit(self, categories: list[Category]) -> None:
        self._write_file(categories)
        self._categories = categories

    def reload(self) -> None:
        with self._lock:
            self._categories = None

    # -- observers ----------------------------------------------------------

    def subscribe(self, listener: CategoryListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: CategoryEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log(f"Category listener failed on {event.kind} '{event.name}': {e}")

    # -- queries ------------------------------------------------------------

    def categories(self) -> list[Category]:
        return [replace(c) for c in self._load()]

    def names(self) -> list[str]:
        return [c.name for c in self._load()]

    def get(self, name: str) -> Category | None:
        for cat in self._load():
            if cat.name == name:
                return replace(cat)
        return None

    def exists(self, name: str) -> bool:
        return any(c.name == name for c in self._load())

    def require(self, name: str) -> Category:
        cat = self.get(name)
        if cat is None:
            raise NotFound(f'Category "{name}" does not exist. Available: {", ".join(self.names())}')
        return cat

    def parent_of(self, name: str) -> str:
        """Family root of a category: its parent if set, else itself."""
        cat = self.get(name)
        return cat.parent if cat is not None and cat.parent else name

    def family_index(self) -> dict[str, str]:
        """Map every known category to its family root."""
        return {c.name: c.parent or c.name for c in self._load()}

    def children(self, name: str) -> list[Category]:
        return [replace(c) for c in self._load() if c.parent == name]

    def tree(self) -> dict[str, list[str]]:
        """Top-level categories mapped to the names of their children."""
        cats = self._load()
        return {
            top.name: [c.name for c in cats if c.parent == top.name]
            for top in cats
            if not top.parent
        }

    def would_create_cycle(self, name: str, proposed_parent: str | None) -> bool:
        """True if making ``proposed_parent`` the parent of ``name`` closes a loop."""
        parents = {c.name: c.parent for c in self._load()}
        current = proposed_parent
        seen: set[str] = set()
        while current:
            if current == name:
                return True
            if current in seen:
                return True
            seen.add(current)
            current = parents.get(current)
        return False

    def assign_color(self, name: str) -> str:
        cat = self.get(name)
        if cat is not None and cat.color:
            return cat.color
        return COLOR_PALETTE[sum(ord(ch) for ch in name) % len(COLOR_PALETTE)]

    def describe(self) -> str:
        """Category guide for LLM callers choosing where a memory belongs."""
        cats = self._load()
        lines: list[str] = []
        for parent in (c for c in cats if c.is_parent):
            lines.append(f"[{parent.name}] (parent) - {parent.description}")
            for child in (c for c in cats if c.parent == parent.name):
                lines.append(f"  {child.name}={child.description}")
        for cat in cats:
            if not cat.is_parent and not cat.parent:
                lines.append(f"{cat.name}={cat.description}")
        for cat in cats:
            if cat.parent and not any(p.name == cat.parent and p.is_parent for p in cats):
                lines.append(f"{cat.name} (under {cat.parent})={cat.description}")
        return (
            "Read each category description as a guideline for what belongs there. "
            "Match your memory to the most specific category. "
            "Parent categories group related children.\n" + ", ".join(lines)
        )

    # -- mutations ----------------------------------------------------------

    def create(
        self,
        name: str,
        description: str,
        parent: str | None = None,
        color: str | None = None,
        is_parent: bool = False,
    ) -> Category:
        validate_category_name(name)
        if not description or not description.strip():
            raise ValidationError("Description cannot be empty.")
        if color and not COLOR_PATTERN.match(color):
            raise ValidationError("Invalid color format. Use hex format: #rrggbb (e.g., #3b82f6)")
        with self._lock:
            cats = self._load()
            if any(c.name == name for c in cats):
                raise Conflict(f'Category "{name}" already exists.')
            if parent and not any(c.name == parent for c in cats):
                raise ValidationError(f'Parent category "{parent}" does not exist.')
            category = Category(
                name=name,
                description=description.strip(),
                created_at=now_iso(),
                parent=parent or None,
                color=color or None,
                is_parent=is_parent,
            )
            self._commit(cats + [category])
        self._emit(CategoryEvent("created", name))
        return replace(category)

    def ensure(self, name: str) -> Category:
        """Return the category, creating a stub for an unknown but valid name."""
        existing = self.get(name)
        if existing is not None:
            return existing
        try:
            return self.create(name, description=name)
        except Conflict:
            return self.require(name)

    def update(
        self,
        name: str,
        new_name: str | None = None,
        description: str | None = None,
        parent: str | None | object = _UNSET,
        color: str | None | object = _UNSET,
        is_parent: bool | None = None,
    ) -> RenameResult:
        """Edit fields and optionally rename.

        ``parent``/``color`` of ``""`` or ``None`` clear the field; leaving them
        unset keeps the current value. All checks run before any write.
        """
        with self._lock:
            cats = self._load()
            if not any(c.name == name for c in cats):
                raise NotFound(f'Category "{name}" does not exist. Available: {", ".join(self.names())}')
            renaming = bool(new_name) and new_name != name
            if renaming:
                validate_category_name(new_name)
                if any(c.name == new_name for c in cats):
                    raise Conflict(f'Category "{new_name}" already exists.')
            if description is not None and not description.strip():
                raise ValidationError("Description cannot be empty.")
            if color is not _UNSET and color and not COLOR_PATTERN.match(color):
                raise ValidationError(
                    "Invalid color format. Use hex format: #rrggbb (e.g., #3b82f6) or empty string to remove."
                )
            if parent is not _UNSET and parent:
                if parent == name or parent == new_name:
                    raise CircularDependency(
                        f'Cannot set category "{name}" as its own parent.'
                    )
                if not any(c.name == parent for c in cats):
                    raise ValidationError(f'Parent category "{parent}" does not exist.')
                if self.would_create_cycle(name, parent):
                    raise CircularDependency(
                        f'Cannot set parent to "{parent}": would create circular dependency.'
                    )

            updated = [replace(c) for c in cats]
            target = next(c for c in updated if c.name == name)
            if renaming:
                for c in updated:
                    if c.parent == name:
                        c.parent = new_name
                target.name = new_name
            if description is not None:
                target.description = description.strip()
            if parent is not _UNSET:
                target.parent = parent or None
            if color is not _UNSET:
                target.color = color or None
            if is_parent is not None:
                target.is_parent = is_parent
            self._commit(updated)

        result = RenameResult(category=replace(target))
        if renaming:
            self._cascade_rename(name, new_name, result)
            self._emit(CategoryEvent("renamed", name, new_name))
        else:
            self._emit(CategoryEvent("updated", name))
        return result

    def rename(self, old_name: str, new_name: str) -> RenameResult:
        """Rename a category, its children's parent links, and its memories."""
        if not new_name or new_name == old_name:
            raise ValidationError("New name must differ from the current name.")
        return self.update(old_name, new_name=new_name)

    def _cascade_rename(self, old_name: str, new_name: str, result: RenameResult) -> None:
        """Move memories to the new name. Failures become warnings on ``result``."""
        if self.store is None:
            return
        moved = 0
        ids: list[str] = []
        try:
            ids = [m.id for m in self.store.scroll_all(SearchFilters(category=old_name, include_trashed=True))]
            batch_size = self.store.config.scroll_page_size
            for start in range(0, len(ids), batch_size):
                batch = ids[start : start + batch_size]
                self.store.patch_payload(batch, {"category": new_name, "updated_at": now_iso()})
                moved += len(batch)
            result.memories_updated = moved
        except VectorStoreUnavailable as e:
            result.memories_updated = moved
            warning = PartialFailure(
                f'Renamed "{old_name}" to "{new_name}" but only {moved} memories were moved: {e}',
                completed=moved,
                failed=len(ids) - moved,
            )
            log(str(warning))
            result.warnings.append(warning)

    def delete(
        self,
        name: str,
        reassign_children_to: str | None = None,
        reassign_memories_to: str | None = None,
        delete_memories: bool = False,
    ) -> DeleteResult:
        """Delete a category once its children and memories have somewhere to go.

        ``reassign_children_to=""`` makes the children top-level.
        ``delete_memories`` moves referencing memories to the trash.
        """
        with self._lock:
            cats = self._load()
            if not any(c.name == name for c in cats):
                raise NotFound(f'Category "{name}" does not exist. Available: {", ".join(self.names())}')
            children = [c.name for c in cats if c.parent == name]
            if children and reassign_children_to is None:
                raise Conflict(
                    f'Cannot delete parent category "{name}": it has {len(children)} child '
                    f'categor{"y" if len(children) == 1 else "ies"} ({", ".join(children)}). '
                    'Provide reassign_children_to, or "" to make them top-level.'
                )
            if reassign_children_to:
                if reassign_children_to == name or not any(c.name == reassign_children_to for c in cats):
                    raise ValidationError(
                        f'Invalid reassign_children_to: category "{reassign_children_to}" does not exist.'
                    )
                if self.would_create_cycle(name, reassign_children_to):
                    raise CircularDependency(
                        f'Cannot reassign children of "{name}" to its own descendant "{reassign_children_to}".'
                    )
            if reassign_memories_to is not None:
                if reassign_memories_to == name:
                    raise ValidationError("Cannot reassign to the same category being deleted.")
                if not any(c.name == reassign_memories_to for c in cats):
                    raise ValidationError(f'Reassign target "{reassign_memories_to}" is not a valid category.')

            result = DeleteResult(name=name)
            if self.store is not None:
                referencing = self.store.count(SearchFilters(category=name))
                if referencing and reassign_memories_to is None and not delete_memories:
                    raise Conflict(
                        f"{referencing} memories use this category. Provide reassign_memories_to "
                        "to move them or delete_memories to remove them."
                    )
                if reassign_memories_to is not None:
                    result.memories_reassigned = self._patch_category_members(
                        name, {"category": reassign_memories_to, "updated_at": now_iso()}, include_trashed=True
                    )
                elif delete_memories and referencing:
                    result.memories_trashed = self._patch_category_members(
                        name, {"trashed_at": now_iso()}, include_trashed=False
                    )

            updated = []
            for cat in cats:
                if cat.name == name:
                    continue
                cat = replace(cat)
                if cat.parent == name:
                    cat.parent = reassign_children_to or None
                    result.children_reassigned.append(cat.name)
                updated.append(cat)
            self._commit(updated)

        self._emit(CategoryEvent("deleted", name))
        return result

    def _patch_category_members(self, name: str, fields: dict, include_trashed: bool) -> int:
        filters = SearchFilters(category=name, include_trashed=include_trashed)
        ids = [m.id for m in self.store.scroll_all(filters)]
        return self.store.patch_payload(ids, fields)
