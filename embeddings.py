"""
Clients for embedding-model services.

Every model turns text into a fixed-length float vector; the length of that
vector is what locks a collection's dimension. Vectors are L2-normalised.
"""

from __future__ import annotations

import hashlib
import threading
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
import requests

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient


@runtime_checkable
class EmbeddingModel(Protocol):
    """Anything that embeds one text into one vector."""

    def embed(self, text: str) -> list[float]: ...


def normalize(values: list[float] | np.ndarray) -> list[float]:
    """Scale a vector to unit length; the zero vector is returned unchanged."""
    embedding = np.asarray(values, dtype=np.float64)
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


class OllamaEmbedding:
    """Embeddings from a local Ollama server."""

    def __init__(
        self,
        model: str = "qwen3-embedding:0.6b",
        base_url: str = "http://localhost:11434",
        timeout: float = 30,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        embedding = response.json().get("embedding") or []
        if not embedding:
            raise ValueError(f"Ollama returned no embedding for model {self.model}")
        return normalize(embedding)


class GoogleEmbedding:
    """Embeddings from the Google GenAI API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-embedding-001",
        task_type: str = "SEMANTIC_SIMILARITY",
        output_dimensionality: int | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.task_type = task_type
        self.output_dimensionality = output_dimensionality
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._client = genai.Client(api_key=self.api_key)
        return self._client

    def embed(self, text: str) -> list[float]:
        from google.genai import types

        response = self._get_client().models.embed_content(
            model=self.model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type=self.task_type,
                output_dimensionality=self.output_dimensionality,
            ),
        )
        return normalize(response.embeddings[0].values)


class HashEmbedding:
    """Deterministic hash-based embedding.

    Not real semantic meaning, but stable across runs and needs no service.
    Identical texts map to identical vectors.
    """

    def __init__(self, dimension: int = 64):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        values: list[float] = []
        counter = 0
        while len(values) < self.dimension:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
            values.extend((b - 128) / 128.0 for b in digest)
            counter += 1
        return normalize(values[: self.dimension])


class CachedEmbedding:
    """LRU cache in front of another model to avoid redundant service calls."""

    def __init__(self, model: EmbeddingModel, maxsize: int = 128):
        self.model = model
        self._cached = lru_cache(maxsize=maxsize)(self._compute)

    def _compute(self, text: str) -> tuple[float, ...]:
        return tuple(self.model.embed(text))

    def embed(self, text: str) -> list[float]:
        return list(self._cached(text))

    def cache_info(self):
        return self._cached.cache_info()
