"""Flask JSON API tests using the Flask test client."""

import threading

import pytest

from memory_viewer import app, get_page_links

TS = "2026-01-01T00:00:00+00:00"


@pytest.fixture
def client(services):
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


class TestPagination:
    def test_short_ranges_are_complete(self):
        assert get_page_links(1, 3) == [1, 2, 3]

    def test_gaps_become_ellipsis(self):
        assert get_page_links(6, 12) == [1, 2, 3, "...", 5, 6, 7, "...", 10, 11, 12]


class TestMemories:
    def test_list_newest_first(self, client, make_memory):
        make_memory(content="old", created_at="2026-01-01T00:00:00+00:00")
        make_memory(content="new", created_at="2026-02-01T00:00:00+00:00")
        data = client.get("/api/memories").get_json()
        assert [m["content"] for m in data["memories"]] == ["new", "old"]
        assert data["page"] == 1 and data["total_pages"] == 1
        assert "vector" not in data["memories"][0]

    def test_get_by_prefix_and_missing(self, client, make_memory):
        memory = make_memory()
        assert client.get(f"/api/memories/{memory.id[:8]}").get_json()["id"] == memory.id
        missing = client.get("/api/memories/ffffffff")
        assert missing.status_code == 404
        assert missing.get_json()["kind"] == "NotFound"

    def test_delete_and_restore(self, client, services, make_memory):
        memory = make_memory()
        assert client.delete(f"/api/memories/{memory.id}").status_code == 200
        assert [m["id"] for m in client.get("/api/trash").get_json()["memories"]] == [memory.id]
        assert client.delete(f"/api/memories/{memory.id}").status_code == 409
        assert client.post(f"/api/trash/{memory.id}/restore").status_code == 200
        assert client.get("/api/trash").get_json()["memories"] == []

    def test_purge_trash(self, client, make_memory):
        make_memory(trashed_at=TS)
        assert client.delete("/api/trash?older_than_days=1").get_json() == {"purged": 1}
        assert client.delete("/api/trash?older_than_days=soon").status_code == 400

    def test_graph(self, client, make_memory):
        make_memory(content="a", tags=["t"])
        make_memory(content="b", tags=["t"])
        data = client.get("/api/graph").get_json()
        assert data["total"] == 2
        assert len(data["links"]) == 1

    def test_stats(self, client, make_memory):
        make_memory(category="debug")
        data = client.get("/api/stats").get_json()
        assert data["total"] == 1
        assert data["by_category"] == {"debug": 1}


class TestSearch:
    def test_ranked_results(self, client, embedder, make_memory):
        embedder.vectors["query"] = [1.0, 0.0, 0.0, 0.0]
        make_memory(content="match", tags=["db", "py"])
        make_memory(content="partial", tags=["db"])
        data = client.get("/api/search?q=query&tags=db,py").get_json()
        assert [r["content"] for r in data["results"]] == ["match"]
        assert data["results"][0]["similarity"] == pytest.approx(1.0)

    def test_response_does_not_wait_for_access_tracking(self, client, store, embedder, make_memory, monkeypatch):
        embedder.vectors["query"] = [1.0, 0.0, 0.0, 0.0]
        memory = make_memory(content="match")
        release = threading.Event()
        bumped = threading.Event()
        patch_payload = store.patch_payload

        def slow_patch(ids, fields):
            release.wait(5)
            count = patch_payload(ids, fields)
            bumped.set()
            return count

        monkeypatch.setattr(store, "patch_payload", slow_patch)
        response = client.get("/api/search?q=query")

        assert response.status_code == 200
        assert [r["id"] for r in response.get_json()["results"]] == [memory.id]
        assert not bumped.is_set()

        release.set()
        assert bumped.wait(5)
        assert store.get(memory.id).access_count == 1

    def test_validation_errors_are_400(self, client):
        assert client.get("/api/search?q=").status_code == 400
        assert client.get("/api/search?q=x&limit=many").status_code == 400
        assert client.get("/api/search?q=x&limit=500").status_code == 400

    def test_embedding_outage_is_503(self, client, embedder):
        embedder.fail = True
        response = client.get("/api/search?q=anything")
        assert response.status_code == 503
        assert response.get_json()["kind"] == "EmbeddingFailure"


class TestSync:
    def test_check_and_resync(self, client, services, tmp_path):
        source = tmp_path / "main.py"
        source.write_text("x = 1\n")
        memory = services.memories.remember("x", related_files=["main.py"])
        source.write_text("x = 2\n")

        report = client.get("/api/sync/check").get_json()
        assert report["total_stale"] == 1
        assert report["stale"][0]["stale_files"] == ["main.py"]

        assert client.post(f"/api/sync/{memory.id}").status_code == 200
        assert client.get("/api/sync/check").get_json()["total_stale"] == 0


class TestCategories:
    def test_list_includes_colors_and_tree(self, client):
        data = client.get("/api/categories").get_json()
        names = {c["name"] for c in data["categories"]}
        assert "debug" in names
        assert all(c["color"].startswith("#") for c in data["categories"])
        assert "debug" in data["tree"]

    def test_create_update_delete(self, client, services):
        created = client.post("/api/categories", json={"name": "web", "description": "Web work"})
        assert created.status_code == 201
        assert client.post("/api/categories", json={"name": "web", "description": "x"}).status_code == 409

        renamed = client.patch("/api/categories/web", json={"new_name": "www", "color": "#112233"})
        assert renamed.get_json()["category"] == {
            "name": "www",
            "description": "Web work",
            "created_at": renamed.get_json()["category"]["created_at"],
            "color": "#112233",
        }

        assert client.delete("/api/categories/www").status_code == 200
        assert not services.hierarchy.exists("www")

    def test_cycle_is_400(self, client):
        client.post("/api/categories", json={"name": "web", "description": "Web work"})
        client.post("/api/categories", json={"name": "frontend", "description": "UI", "parent": "web"})
        response = client.patch("/api/categories/web", json={"parent": "frontend"})
        assert response.status_code == 400
        assert response.get_json()["kind"] == "CircularDependency"

    def test_delete_unknown_is_404(self, client):
        assert client.delete("/api/categories/nope").status_code == 404

    def test_body_must_be_object(self, client):
        assert client.post("/api/categories", json=["web"]).status_code == 400
