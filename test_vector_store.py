"""LanceDB-backed vector store tests against a temporary database."""

import pytest

from errors import ValidationError
from models import Memory, SearchFilters
from vector_store import VectorStore, build_where

TS = "2026-01-01T00:00:00+00:00"


@pytest.fixture
def lance_store(config):
    return VectorStore(config)


def row(memory_id, vector=(1.0, 0.0, 0.0, 0.0), **fields):
    return Memory(
        id=memory_id,
        content=fields.pop("content", f"memory {memory_id}"),
        category=fields.pop("category", "insight"),
        project=fields.pop("project", "global"),
        created_at=TS,
        updated_at=TS,
        accessed_at=TS,
        vector=list(vector),
        **fields,
    )


class TestBuildWhere:
    def test_defaults_to_active(self):
        assert build_where(SearchFilters()) == "trashed_at IS NULL"

    def test_all_filters(self):
        where = build_where(
            SearchFilters(category="debug", project="o'neil", tags=("py",), min_importance=7, only_trashed=True)
        )
        assert where == (
            "trashed_at IS NOT NULL AND category = 'debug' AND project = 'o''neil' "
            "AND tags LIKE '%\"py\"%' AND importance >= 7"
        )

    def test_include_trashed_has_no_clause(self):
        assert build_where(SearchFilters(include_trashed=True)) is None


class TestVectorStore:
    def test_upsert_and_get_round_trip(self, lance_store):
        memory = row(
            "m1",
            tags=["a", "b"],
            related_files=["x.py"],
            file_checksums={"x.py": "abc"},
            related_memory_ids=["m2"],
            importance=8,
        )
        lance_store.upsert(memory)
        stored = lance_store.get("m1")
        assert stored.tags == ["a", "b"]
        assert stored.file_checksums == {"x.py": "abc"}
        assert stored.related_memory_ids == ["m2"]
        assert stored.importance == 8
        assert stored.trashed_at is None

    def test_upsert_replaces_existing(self, lance_store):
        lance_store.upsert(row("m1", content="v1"))
        lance_store.upsert(row("m1", content="v2"))
        assert lance_store.count() == 1
        assert lance_store.get("m1").content == "v2"

    def test_rejects_wrong_dimension(self, lance_store):
        with pytest.raises(ValidationError):
            lance_store.upsert(row("m1", vector=(1.0, 0.0)))

    def test_search_orders_by_cosine_similarity(self, lance_store):
        lance_store.upsert(row("near", vector=(1.0, 0.1, 0.0, 0.0)))
        lance_store.upsert(row("far", vector=(0.0, 1.0, 0.0, 0.0)))
        results = lance_store.search([1.0, 0.0, 0.0, 0.0], SearchFilters(), limit=2)
        assert [m.id for m, _ in results] == ["near", "far"]
        assert results[0][1] == pytest.approx(0.995, abs=1e-3)
        assert results[1][1] == pytest.approx(0.0, abs=1e-6)

    def test_search_applies_filters(self, lance_store):
        lance_store.upsert(row("keep", tags=["py", "db"], category="debug"))
        lance_store.upsert(row("wrong-tags", tags=["py"], category="debug"))
        lance_store.upsert(row("trashed", tags=["py", "db"], category="debug", trashed_at=TS))
        results = lance_store.search([1.0, 0.0, 0.0, 0.0], SearchFilters(category="debug", tags=("py", "db")))
        assert [m.id for m, _ in results] == ["keep"]

    def test_patch_payload(self, lance_store):
        lance_store.upsert(row("m1"))
        lance_store.upsert(row("m2"))
        assert lance_store.patch_payload(["m1", "m2"], {"category": "perf", "tags": ["x"]}) == 2
        lance_store.patch_payload(["m1"], {"trashed_at": TS})
        lance_store.patch_payload(["m1"], {"trashed_at": None})
        stored = lance_store.get("m1")
        assert stored.category == "perf"
        assert stored.tags == ["x"]
        assert stored.trashed_at is None
        assert stored.vector == pytest.approx([1.0, 0.0, 0.0, 0.0])

    def test_patch_payload_rejects_vector(self, lance_store):
        with pytest.raises(ValidationError):
            lance_store.patch_payload(["m1"], {"vector": [0.0] * 4})

    def test_scroll_pages(self, lance_store):
        for i in range(5):
            lance_store.upsert(row(f"m{i}"))
        pages = list(lance_store.scroll(SearchFilters(), page_size=2))
        assert [len(p) for p in pages] == [2, 2, 1]
        assert {m.id for p in pages for m in p} == {f"m{i}" for i in range(5)}
        assert all(m.vector is None for p in pages for m in p)

    def test_scroll_with_vectors(self, lance_store):
        lance_store.upsert(row("m1"))
        [memory] = lance_store.scroll_all(with_vectors=True)
        assert memory.vector == pytest.approx([1.0, 0.0, 0.0, 0.0])

    def test_find_by_prefix_count_and_delete(self, lance_store):
        lance_store.upsert(row("abc-1"))
        lance_store.upsert(row("abc-2"))
        lance_store.upsert(row("xyz-1", trashed_at=TS))
        assert {m.id for m in lance_store.find_by_prefix("abc")} == {"abc-1", "abc-2"}
        assert lance_store.count() == 2
        assert lance_store.count(SearchFilters(only_trashed=True)) == 1
        lance_store.delete(["abc-1", "xyz-1"])
        assert lance_store.count(SearchFilters(include_trashed=True)) == 1
        assert lance_store.get("abc-1") is None

    def test_reopens_existing_table(self, lance_store, config):
        lance_store.upsert(row("m1"))
        reopened = VectorStore(config)
        assert reopened.get("m1").content == "memory m1"
