"""Embedding abstractions, the OpenAI client wrapper, and an offline baseline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

import httpx
import openai
import structlog

from tool_rag.errors import EmbeddingServiceError

logger = structlog.get_logger(__name__)


class Embedder(ABC):
    """Embedder interface used by ingest and retrieval components.

    Implementations return vectors of a fixed `dimension` and raise
    `EmbeddingServiceError` on any service failure. They never cache and never
    retry; callers own both policies.
    """

    dimension: int

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents, preserving input order."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class OpenAIEmbedder(Embedder):
    """Wraps one injected `langchain_openai.OpenAIEmbeddings` client."""

    def __init__(self, client: Any, *, model: str, dimension: int) -> None:
        self._client = client
        self.model = model
        self.dimension = dimension

    @classmethod
    def from_api_key(cls, api_key: str, *, model: str, dimension: int) -> "OpenAIEmbedder":
        from langchain_openai import OpenAIEmbeddings

        client = OpenAIEmbeddings(model=model, api_key=api_key, dimensions=dimension)
        return cls(client, model=model, dimension=dimension)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self._client.embed_documents(texts)
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            logger.warning("embedding.failed", model=self.model, count=len(texts), error=str(exc))
            raise EmbeddingServiceError(f"Embedding request failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise EmbeddingServiceError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return [self._checked(vector) for vector in vectors]

    def embed_query(self, text: str) -> list[float]:
        try:
            vector = self._client.embed_query(text)
        except (openai.OpenAIError, httpx.HTTPError) as exc:
            logger.warning("embedding.failed", model=self.model, count=1, error=str(exc))
            raise EmbeddingServiceError(f"Embedding request failed: {exc}") from exc
        return self._checked(vector)

    def _checked(self, vector: list[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise EmbeddingServiceError(
                f"Expected {self.dimension}-dimensional embedding from {self.model}, got {len(vector)}"
            )
        return [float(value) for value in vector]


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used by tests and by key-less local runs. Identical texts always map to the
    same unit vector, so a chunk queried with its own text scores 1.0.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]
