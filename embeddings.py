"""Embedding providers: Ollama (local), Google GenAI, and a deterministic hash.

Every provider returns L2-normalized vectors of ``Config.embedding_dim``
values and raises ``EmbeddingFailure`` instead of returning partial data.
"""

from __future__ import annotations

import hashlib
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
import requests

from config import Config
from errors import EmbeddingFailure
from utils import log

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> list[float]: ...


def _fit_and_normalize(values, dim: int) -> list[float]:
    """Truncate or zero-pad to ``dim`` and scale to unit length."""
    embedding = np.asarray(values, dtype=float)
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


class OllamaEmbeddings:
    """Local embeddings through the Ollama HTTP API."""

    def __init__(self, config: Config):
        self.config = config

    def embed(self, text: str) -> list[float]:
        try:
            response = requests.post(
                f"{self.config.ollama_base_url}/api/embeddings",
                json={"model": self.config.embedding_model, "prompt": text},
                timeout=self.config.embedding_timeout,
            )
            response.raise_for_status()
            values = response.json().get("embedding", [])
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingFailure(f"Ollama embedding error: {e}") from e
        if not values:
            raise EmbeddingFailure("Ollama returned an empty embedding")
        return _fit_and_normalize(values, self.config.embedding_dim)


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise EmbeddingFailure(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


class GoogleEmbeddings:
    """Embeddings through the Google GenAI API (lazy client)."""

    def __init__(self, config: Config, task_type: str = "SEMANTIC_SIMILARITY"):
        self.config = config
        self.task_type = task_type
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> GenAIClient:
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._client = genai.Client(api_key=_get_api_key())
        return self._client

    def embed(self, text: str) -> list[float]:
        from google.genai import errors as genai_errors
        from google.genai import types

        client = self._get_client()
        try:
            response = client.models.embed_content(
                model=self.config.embedding_model,
                contents=text,
                config=types.EmbedContentConfig(
                    task_type=self.task_type,
                    output_dimensionality=self.config.embedding_dim,
                ),
            )
        except (genai_errors.APIError, requests.RequestException) as e:
            raise EmbeddingFailure(f"Google embedding error: {e}") from e
        if not response.embeddings:
            raise EmbeddingFailure("Google returned no embeddings")
        return _fit_and_normalize(response.embeddings[0].values, self.config.embedding_dim)


class HashEmbeddings:
    """Deterministic hash-based embedding.

    Not real semantic meaning: identical texts map to identical vectors and
    nothing else. Intended for offline runs and tests.
    """

    def __init__(self, config: Config):
        self.config = config

    def embed(self, text: str) -> list[float]:
        dim = self.config.embedding_dim
        values: list[float] = []
        counter = 0
        while len(values) < dim:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
            values.extend((b - 128) / 128.0 for b in digest)
            counter += 1
        return _fit_and_normalize(values[:dim], dim)


class FallbackEmbeddings:
    """Try providers in order; fail only when every provider fails."""

    def __init__(self, providers: list[EmbeddingProvider]):
        if not providers:
            raise ValueError("at least one embedding provider is required")
        self.providers = providers

    def embed(self, text: str) -> list[float]:
        errors: list[str] = []
        for provider in self.providers:
            try:
                return provider.embed(text)
            except EmbeddingFailure as e:
                errors.append(str(e))
                log(f"{type(provider).__name__} failed, trying next provider: {e}")
        raise EmbeddingFailure("; ".join(errors))


class CachedEmbeddings:
    """LRU cache in front of a provider to avoid redundant API calls."""

    def __init__(self, provider: EmbeddingProvider, maxsize: int = 128):
        self.provider = provider
        self._cached = lru_cache(maxsize=maxsize)(self._embed_tuple)

    def _embed_tuple(self, text: str) -> tuple[float, ...]:
        return tuple(self.provider.embed(text))

    def embed(self, text: str) -> list[float]:
        return list(self._cached(text))

    def cache_info(self):
        return self._cached.cache_info()


def get_embedding_provider(config: Config) -> EmbeddingProvider:
    """Build the provider chain named by ``config.embedding_provider``."""
    name = config.embedding_provider.lower()
    if name == "hash":
        chain: list[EmbeddingProvider] = [HashEmbeddings(config)]
    elif name == "google":
        chain = [GoogleEmbeddings(config)]
    elif name == "ollama":
        chain = [OllamaEmbeddings(config), GoogleEmbeddings(config)]
    else:
        raise ValueError(f"Unknown embedding provider '{config.embedding_provider}'")
    provider = chain[0] if len(chain) == 1 else FallbackEmbeddings(chain)
    return CachedEmbeddings(provider, maxsize=config.embedding_cache_size)
