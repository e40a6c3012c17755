"""LanceDB vector store: vectors + payload, filtered cosine search, scans."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from typing import Any

import lancedb
import pyarrow as pa

from config import Config
from errors import ValidationError, VectorStoreUnavailable
from models import Memory, SearchFilters, encode_payload_fields, memory_schema
from utils import escape_sql_value, log, sql_literal

ID_BATCH_SIZE = 500
MIN_ROWS_FOR_VECTOR_INDEX = 256


def build_where(filters: SearchFilters | None) -> str | None:
    """Translate filters to a LanceDB SQL predicate."""
    filters = filters or SearchFilters()
    clauses = []
    if filters.only_trashed:
        clauses.append("trashed_at IS NOT NULL")
    elif not filters.include_trashed:
        clauses.append("trashed_at IS NULL")
    if filters.category is not None:
        clauses.append(f"category = '{escape_sql_value(filters.category)}'")
    if filters.project is not None:
        clauses.append(f"project = '{escape_sql_value(filters.project)}'")
    for tag in filters.tags:
        # Tags are a JSON array string; match the quoted element.
        clauses.append(f"tags LIKE '%{escape_sql_value(json.dumps(tag))}%'")
    if filters.min_importance is not None:
        clauses.append(f"importance >= {int(filters.min_importance)}")
    return " AND ".join(clauses) if clauses else None


def _id_list(ids: list[str]) -> str:
    return ", ".join(f"'{escape_sql_value(i)}'" for i in ids)


class VectorStore:
    """Memory persistence on a single LanceDB table."""

    def __init__(self, config: Config):
        self.config = config
        self.schema = memory_schema(config.embedding_dim)
        self._lock = threading.RLock()  # RLock allows reentrant calls (get_table -> get_db)
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    # -- connection ---------------------------------------------------------

    def get_db(self) -> lancedb.DBConnection:
        """Get or create LanceDB connection (thread-safe)."""
        if self._db is None:
            with self._lock:
                if self._db is None:  # Double-check after acquiring lock
                    try:
                        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
                        self._db = lancedb.connect(str(self.config.db_path))
                    except Exception as e:
                        raise VectorStoreUnavailable(f"Cannot open database: {e}") from e
        return self._db

    def get_table(self) -> lancedb.table.Table:
        """Get or create the memories table (thread-safe)."""
        if self._table is None:
            with self._lock:
                if self._table is None:  # Double-check after acquiring lock
                    db = self.get_db()
                    try:
                        self._table = db.open_table(self.config.table_name)
                    except Exception:
                        try:
                            self._table = db.create_table(self.config.table_name, schema=self.schema)
                        except Exception as e:
                            raise VectorStoreUnavailable(f"Cannot open table: {e}") from e
        return self._table

    def reset(self) -> None:
        """Drop cached handles so the next call reconnects."""
        with self._lock:
            self._db = None
            self._table = None

    def ensure_indexes(self) -> None:
        """Create an IVF-PQ index once the table is large enough to train one."""
        table = self.get_table()
        try:
            indices = table.list_indices()
            if any("ivf" in str(idx).lower() for idx in indices):
                log("Vector index already exists")
                return
            row_count = table.count_rows()
            if row_count < MIN_ROWS_FOR_VECTOR_INDEX:
                return
            dim = self.config.embedding_dim
            table.create_index(
                metric="cosine",
                num_partitions=max(4, int(row_count**0.5)),
                num_sub_vectors=dim // 16 if dim % 16 == 0 else 1,
                index_type="IVF_PQ",
                replace=True,
            )
            log("IVF-PQ index created")
        except Exception as e:
            log(f"Vector index warning: {e}")

    # -- writes -------------------------------------------------------------

    def upsert(self, memory: Memory) -> None:
        if memory.vector is None or len(memory.vector) != self.config.embedding_dim:
            got = 0 if memory.vector is None else len(memory.vector)
            raise ValidationError(
                f"Vector length {got} does not match store dimension {self.config.embedding_dim}"
            )
        table = self.get_table()
        try:
            data = pa.Table.from_pylist([memory.to_row()], schema=table.schema)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
        except Exception as e:
            raise VectorStoreUnavailable(f"Upsert failed: {e}") from e

    def patch_payload(self, ids: list[str], fields: dict[str, Any]) -> int:
        """Set ``fields`` on every listed memory. Returns the number of ids patched."""
        if not ids or not fields:
            return 0
        if "vector" in fields or "id" in fields:
            raise ValidationError("patch_payload cannot change id or vector")
        values_sql = {k: sql_literal(v) for k, v in encode_payload_fields(fields).items()}
        table = self.get_table()
        patched = 0
        for start in range(0, len(ids), ID_BATCH_SIZE):
            batch = ids[start : start + ID_BATCH_SIZE]
            try:
                table.update(where=f"id IN ({_id_list(batch)})", values_sql=values_sql)
            except Exception as e:
                raise VectorStoreUnavailable(
                    f"Payload patch failed after {patched} of {len(ids)} memories: {e}"
                ) from e
            patched += len(batch)
        return patched

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        table = self.get_table()
        try:
            for start in range(0, len(ids), ID_BATCH_SIZE):
                table.delete(f"id IN ({_id_list(ids[start : start + ID_BATCH_SIZE])})")
        except Exception as e:
            raise VectorStoreUnavailable(f"Delete failed: {e}") from e

    # -- reads --------------------------------------------------------------

    def get(self, memory_id: str) -> Memory | None:
        """Fetch one memory by full id, trashed or not."""
        rows = self._scan(f"id = '{escape_sql_value(memory_id)}'", limit=1)
        return Memory.from_row(rows[0]) if rows else None

    def find_by_prefix(self, prefix: str, limit: int = 100) -> list[Memory]:
        rows = self._scan(f"id LIKE '{escape_sql_value(prefix)}%'", limit=limit)
        return [Memory.from_row(r) for r in rows]

    def search(
        self, vector: list[float], filters: SearchFilters | None = None, limit: int = 10
    ) -> list[tuple[Memory, float]]:
        """Nearest neighbors by cosine similarity, best first."""
        filters = filters or SearchFilters()
        table = self.get_table()
        try:
            query = table.search(vector).distance_type("cosine")
            where = build_where(filters)
            if where:
                query = query.where(where)
            rows = query.limit(limit).to_list()
        except Exception as e:
            raise VectorStoreUnavailable(f"Vector search failed: {e}") from e
        results = []
        for row in rows:
            memory = Memory.from_row(row)
            if filters.matches(memory):
                results.append((memory, 1.0 - float(row["_distance"])))
        return results

    def scroll(
        self,
        filters: SearchFilters | None = None,
        page_size: int | None = None,
        with_vectors: bool = False,
    ) -> Iterator[list[Memory]]:
        """Yield pages of memories matching ``filters``."""
        filters = filters or SearchFilters()
        page_size = page_size or self.config.scroll_page_size
        where = build_where(filters)
        offset = 0
        while True:
            rows = self._scan(where, limit=page_size, offset=offset)
            if not rows:
                return
            page = []
            for row in rows:
                memory = Memory.from_row(row)
                if not with_vectors:
                    memory.vector = None
                if filters.matches(memory):
                    page.append(memory)
            yield page
            if len(rows) < page_size:
                return
            offset += page_size

    def scroll_all(self, filters: SearchFilters | None = None, with_vectors: bool = False) -> list[Memory]:
        return [m for page in self.scroll(filters, with_vectors=with_vectors) for m in page]

    def count(self, filters: SearchFilters | None = None) -> int:
        table = self.get_table()
        try:
            return table.count_rows(build_where(filters))
        except Exception as e:
            raise VectorStoreUnavailable(f"Count failed: {e}") from e

    def _scan(self, where: str | None, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        table = self.get_table()
        try:
            query = table.search()
            if where:
                query = query.where(where)
            if offset:
                query = query.offset(offset)
            return query.limit(limit).to_list()
        except Exception as e:
            raise VectorStoreUnavailable(f"Scan failed: {e}") from e
