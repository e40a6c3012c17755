"""Shared data models for memory-graph."""

import json
import re
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector

from errors import ValidationError

MEMORY_SOURCES = frozenset({"user-told", "self-discovered", "migration", "auto-saved"})
CATEGORY_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
CATEGORY_NAME_MIN = 2
CATEGORY_NAME_MAX = 30
COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")

# Payload fields stored as JSON strings in the LanceDB row.
JSON_LIST_FIELDS = ("tags", "related_files", "related_memory_ids")
JSON_MAP_FIELDS = ("file_checksums",)


@lru_cache(maxsize=8)
def memory_schema(embedding_dim: int) -> type[LanceModel]:
    """Memory table schema for LanceDB.

    IMPORTANT: Any changes to this schema require migration of existing data.
    The vector dimension is bound per store from ``Config.embedding_dim``.
    """

    class MemoryRow(LanceModel):
        id: str  # UUID string
        content: str
        vector: Vector(embedding_dim)  # type: ignore[valid-type]
        category: str
        subcategory: str | None = None
        project: str
        tags: str = "[]"  # JSON array as string
        importance: int = 5
        source: str = "self-discovered"
        related_files: str = "[]"
        file_checksums: str = "{}"
        related_memory_ids: str = "[]"
        created_at: str
        updated_at: str
        accessed_at: str
        access_count: int = 0
        trashed_at: str | None = None

    return MemoryRow


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Lowercase, strip and de-duplicate tags, keeping first-seen order."""
    if not tags:
        return []
    cleaned = (str(t).strip().lower() for t in tags)
    return list(dict.fromkeys(t for t in cleaned if t))


@dataclass
class Memory:
    """A stored recollection, decoded from its row."""

    id: str
    content: str
    category: str
    project: str
    created_at: str
    updated_at: str
    accessed_at: str
    vector: list[float] | None = None
    subcategory: str | None = None
    tags: list[str] = field(default_factory=list)
    importance: int = 5
    source: str = "self-discovered"
    related_files: list[str] = field(default_factory=list)
    file_checksums: dict[str, str] = field(default_factory=dict)
    related_memory_ids: list[str] = field(default_factory=list)
    access_count: int = 0
    trashed_at: str | None = None

    @property
    def is_trashed(self) -> bool:
        return self.trashed_at is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Memory":
        vector = row.get("vector")
        return cls(
            id=row["id"],
            content=row["content"],
            category=row["category"],
            project=row.get("project") or "global",
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            accessed_at=row.get("accessed_at") or row["created_at"],
            vector=[float(v) for v in vector] if vector is not None else None,
            subcategory=row.get("subcategory"),
            tags=_load_json(row.get("tags"), []),
            importance=int(row.get("importance") or 5),
            source=row.get("source") or "self-discovered",
            related_files=_load_json(row.get("related_files"), []),
            file_checksums=_load_json(row.get("file_checksums"), {}),
            related_memory_ids=_load_json(row.get("related_memory_ids"), []),
            access_count=int(row.get("access_count") or 0),
            trashed_at=row.get("trashed_at"),
        )

    def to_row(self) -> dict[str, Any]:
        """Encode to a LanceDB row (JSON strings for list/map fields)."""
        row = asdict(self)
        for name in JSON_LIST_FIELDS + JSON_MAP_FIELDS:
            row[name] = json.dumps(row[name])
        return row

    def to_dict(self, include_vector: bool = False) -> dict[str, Any]:
        data = asdict(self)
        if not include_vector:
            data.pop("vector")
        return data


def encode_payload_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Encode a partial payload the same way ``Memory.to_row`` does."""
    encoded = dict(fields)
    for name in JSON_LIST_FIELDS + JSON_MAP_FIELDS:
        if name in encoded:
            encoded[name] = json.dumps(encoded[name])
    return encoded


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SearchFilters:
    """Payload filters for store queries."""

    category: str | None = None
    project: str | None = None
    tags: tuple[str, ...] = ()
    min_importance: int | None = None
    include_trashed: bool = False
    only_trashed: bool = False

    def matches(self, memory: Memory) -> bool:
        if self.only_trashed and not memory.is_trashed:
            return False
        if not self.include_trashed and not self.only_trashed and memory.is_trashed:
            return False
        if self.category is not None and memory.category != self.category:
            return False
        if self.project is not None and memory.project != self.project:
            return False
        if self.tags and not set(self.tags).issubset(memory.tags):
            return False
        if self.min_importance is not None and memory.importance < self.min_importance:
            return False
        return True


@dataclass
class Category:
    """A named, hierarchical routing bucket for memories."""

    name: str
    description: str
    created_at: str
    parent: str | None = None
    color: str | None = None
    is_parent: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Category":
        return cls(
            name=data["name"],
            description=data.get("description") or data["name"],
            created_at=data.get("created_at") or "",
            parent=data.get("parent") or None,
            color=data.get("color") or None,
            is_parent=bool(data.get("is_parent", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
        }
        if self.parent:
            data["parent"] = self.parent
        if self.color:
            data["color"] = self.color
        if self.is_parent:
            data["is_parent"] = True
        return data


def validate_category_name(name: str) -> None:
    """Raise ValidationError unless ``name`` is a well-formed category name."""
    if len(name) < CATEGORY_NAME_MIN or len(name) > CATEGORY_NAME_MAX:
        raise ValidationError(
            f"Category name must be {CATEGORY_NAME_MIN}-{CATEGORY_NAME_MAX} characters. "
            f"Got {len(name)}."
        )
    if not CATEGORY_NAME_PATTERN.match(name):
        raise ValidationError(
            "Category name must match ^[a-z][a-z0-9-]*$ "
            "(lowercase, starts with letter, only letters/digits/hyphens)."
        )
