"""Tests for embedding providers, the fallback chain and the cache."""

import math
from dataclasses import replace

import pytest
import requests

import embeddings
from embeddings import (
    CachedEmbeddings,
    FallbackEmbeddings,
    HashEmbeddings,
    OllamaEmbeddings,
    get_embedding_provider,
)
from errors import EmbeddingFailure


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class Failing:
    def embed(self, text):
        raise EmbeddingFailure("down")


def test_hash_embeddings_are_deterministic_unit_vectors(config):
    provider = HashEmbeddings(replace(config, embedding_dim=64))
    vector = provider.embed("hello")
    assert len(vector) == 64
    assert vector == provider.embed("hello")
    assert vector != provider.embed("hello!")
    assert math.isclose(sum(v * v for v in vector), 1.0)


class TestOllama:
    def test_pads_and_normalizes(self, config, monkeypatch):
        calls = []

        def fake_post(url, json, timeout):
            calls.append((url, json))
            return FakeResponse({"embedding": [3.0, 4.0]})

        monkeypatch.setattr(embeddings.requests, "post", fake_post)
        vector = OllamaEmbeddings(config).embed("text")
        assert vector == pytest.approx([0.6, 0.8, 0.0, 0.0])
        assert calls[0][0].endswith("/api/embeddings")
        assert calls[0][1]["prompt"] == "text"

    def test_truncates_long_vectors(self, config, monkeypatch):
        monkeypatch.setattr(
            embeddings.requests, "post", lambda *a, **kw: FakeResponse({"embedding": [1.0, 0, 0, 0, 9, 9]})
        )
        assert OllamaEmbeddings(config).embed("text") == pytest.approx([1.0, 0.0, 0.0, 0.0])

    def test_http_error_becomes_embedding_failure(self, config, monkeypatch):
        monkeypatch.setattr(embeddings.requests, "post", lambda *a, **kw: FakeResponse({}, 500))
        with pytest.raises(EmbeddingFailure, match="Ollama"):
            OllamaEmbeddings(config).embed("text")

    def test_connection_error_becomes_embedding_failure(self, config, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(embeddings.requests, "post", refuse)
        with pytest.raises(EmbeddingFailure):
            OllamaEmbeddings(config).embed("text")

    def test_empty_embedding(self, config, monkeypatch):
        monkeypatch.setattr(embeddings.requests, "post", lambda *a, **kw: FakeResponse({"embedding": []}))
        with pytest.raises(EmbeddingFailure, match="empty"):
            OllamaEmbeddings(config).embed("text")


class TestFallback:
    def test_uses_first_working_provider(self, config, capsys):
        chain = FallbackEmbeddings([Failing(), HashEmbeddings(config)])
        assert chain.embed("x") == HashEmbeddings(config).embed("x")
        assert "Failing failed" in capsys.readouterr().err

    def test_all_failing(self):
        with pytest.raises(EmbeddingFailure, match="down; down"):
            FallbackEmbeddings([Failing(), Failing()]).embed("x")

    def test_requires_a_provider(self):
        with pytest.raises(ValueError):
            FallbackEmbeddings([])


class TestCache:
    def test_caches_per_text(self, config):
        calls = []

        class Counting:
            def embed(self, text):
                calls.append(text)
                return [1.0, 0.0, 0.0, 0.0]

        cached = CachedEmbeddings(Counting(), maxsize=4)
        cached.embed("a")
        cached.embed("a")
        cached.embed("b")
        assert calls == ["a", "b"]
        assert cached.cache_info().hits == 1

    def test_failures_are_not_cached(self):
        provider = CachedEmbeddings(Failing())
        for _ in range(2):
            with pytest.raises(EmbeddingFailure):
                provider.embed("x")
        assert provider.cache_info().currsize == 0


class TestFactory:
    def test_hash_provider(self, config):
        provider = get_embedding_provider(config)
        assert isinstance(provider, CachedEmbeddings)
        assert isinstance(provider.provider, HashEmbeddings)

    def test_ollama_falls_back_to_google(self, config):
        provider = get_embedding_provider(replace(config, embedding_provider="ollama"))
        assert isinstance(provider.provider, FallbackEmbeddings)
        assert [type(p).__name__ for p in provider.provider.providers] == ["OllamaEmbeddings", "GoogleEmbeddings"]

    def test_unknown_provider(self, config):
        with pytest.raises(ValueError):
            get_embedding_provider(replace(config, embedding_provider="magic"))
