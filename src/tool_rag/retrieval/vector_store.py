"""Vector store contract with in-memory and FAISS implementations."""

from __future__ import annotations

import pickle
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from math import sqrt
from pathlib import Path
from typing import Protocol

import structlog
from langchain_community.vectorstores import FAISS
from langchain_community.vectorstores.utils import DistanceStrategy
from langchain_core.documents import Document as LangChainDocument
from langchain_core.embeddings import Embeddings

from tool_rag.errors import InvalidInput, VectorStoreError
from tool_rag.ingest.embedder import Embedder
from tool_rag.types import Chunk

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class ScoredRow:
    """A stored chunk and its similarity to the query vector."""

    chunk: Chunk
    similarity: float


class VectorStore(Protocol):
    """Persists chunk embeddings and answers flat top-K cosine queries."""

    def upsert(self, document_id: str, chunks: Sequence[Chunk]) -> None:
        """Atomically replace every row of `document_id` with `chunks`."""

    def query(self, embedding: Sequence[float], top_k: int) -> list[ScoredRow]:
        """Return up to `top_k` rows by ascending cosine distance."""

    def count(self, document_id: str | None = None) -> int:
        """Count stored rows, optionally for one document."""

    def delete(self, document_id: str) -> int:
        """Remove all rows of a document and return how many were removed."""


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping.

    Rows live in per-document lists; an upsert builds the replacement list
    first and swaps it in under a lock, so readers see either the old or the
    new chunk set and never an empty gap.
    """

    def __init__(self, dimension: int | None = None) -> None:
        self._dimension = dimension
        self._rows: dict[str, list[tuple[int, Chunk]]] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def upsert(self, document_id: str, chunks: Sequence[Chunk]) -> None:
        dimension = _validate_chunks(document_id, chunks, self._dimension)
        with self._lock:
            if dimension is not None and self._dimension is None:
                self._dimension = dimension
            rows: list[tuple[int, Chunk]] = []
            for chunk in chunks:
                rows.append((self._sequence, chunk))
                self._sequence += 1
            if rows:
                self._rows[document_id] = rows
            else:
                self._rows.pop(document_id, None)

    def query(self, embedding: Sequence[float], top_k: int) -> list[ScoredRow]:
        _validate_query(embedding, top_k, self._dimension)
        with self._lock:
            snapshot = [row for rows in self._rows.values() for row in rows]
        ranked = sorted(
            ((cosine_distance(embedding, chunk.embedding), seq, chunk) for seq, chunk in snapshot),
            key=lambda item: (item[0], item[1]),
        )
        return [
            ScoredRow(chunk=chunk, similarity=similarity_from_distance(distance))
            for distance, _, chunk in ranked[:top_k]
        ]

    def count(self, document_id: str | None = None) -> int:
        with self._lock:
            if document_id is not None:
                return len(self._rows.get(document_id, []))
            return sum(len(rows) for rows in self._rows.values())

    def delete(self, document_id: str) -> int:
        with self._lock:
            return len(self._rows.pop(document_id, []))


class _EmbeddingAdapter(Embeddings):
    """Exposes an `Embedder` through the LangChain `Embeddings` interface."""

    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return self._embedder.embed_documents(texts)

    def embed_query(self, text: str) -> list[float]:
        return self._embedder.embed_query(text)


class FaissVectorStore:
    """FAISS store via the LangChain community integration, saved to a folder.

    Vectors are unit-normalised into an inner-product index, so the FAISS score
    is the cosine similarity. Every row carries an insertion sequence number in
    its metadata; ties on score are ordered by it.

    An upsert adds the new rows before deleting the document's old ones and
    removes the new rows again if that delete fails. Readers take the same lock,
    so they see either the old or the new chunk set. Returned chunks carry no
    embedding.
    """

    index_name = "index"

    def __init__(
        self, path: str | Path, embedder: Embedder, dimension: int | None = None
    ) -> None:
        self._path = Path(path)
        self._embeddings = _EmbeddingAdapter(embedder)
        self._dimension = dimension
        self._store: FAISS | None = None
        self._row_ids: dict[str, list[str]] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        if (self._path / f"{self.index_name}.faiss").is_file():
            self._load()

    def upsert(self, document_id: str, chunks: Sequence[Chunk]) -> None:
        dimension = _validate_chunks(document_id, chunks, self._dimension)
        with self._lock:
            old_ids = self._row_ids.get(document_id, [])
            new_ids: list[str] = []
            text_embeddings: list[tuple[str, list[float]]] = []
            metadatas: list[dict[str, object]] = []
            for chunk in chunks:
                new_ids.append(f"{chunk.chunk_id}#{self._sequence}")
                text_embeddings.append((chunk.text, _unit(chunk.embedding)))
                metadatas.append(
                    {
                        "chunk_id": chunk.chunk_id,
                        "document_id": chunk.document_id,
                        "sequence_index": chunk.sequence_index,
                        "word_count": chunk.word_count,
                        "seq": self._sequence,
                    }
                )
                self._sequence += 1

            try:
                if new_ids:
                    self._add(text_embeddings, metadatas, new_ids)
                if old_ids:
                    try:
                        self._store.delete(old_ids)
                    except (RuntimeError, ValueError):
                        if new_ids:
                            self._store.delete(new_ids)
                        raise
            except (RuntimeError, ValueError) as exc:
                logger.error("vector_store.upsert_failed", document_id=document_id, error=str(exc))
                raise VectorStoreError(f"Upsert failed for {document_id}: {exc}") from exc

            if new_ids:
                self._row_ids[document_id] = new_ids
            else:
                self._row_ids.pop(document_id, None)
            if dimension is not None and self._dimension is None:
                self._dimension = dimension
            self._persist()

    def query(self, embedding: Sequence[float], top_k: int) -> list[ScoredRow]:
        _validate_query(embedding, top_k, self._dimension)
        vector = _unit(embedding)
        with self._lock:
            if self._store is None or self._store.index.ntotal == 0:
                return []
            total = self._store.index.ntotal
            fetch = min(top_k + 1, total)
            while True:
                hits = self._store.similarity_search_with_score_by_vector(vector, k=fetch)
                # widen the search until the rows tied with the last kept score are all in
                if fetch >= total or len(hits) < fetch or hits[-1][1] < hits[top_k - 1][1]:
                    break
                fetch = min(total, fetch * 2)

        ranked = sorted(hits, key=lambda hit: (-float(hit[1]), hit[0].metadata["seq"]))
        return [
            ScoredRow(
                chunk=_to_chunk(document),
                similarity=similarity_from_distance(1.0 - float(score)),
            )
            for document, score in ranked[:top_k]
        ]

    def count(self, document_id: str | None = None) -> int:
        with self._lock:
            if document_id is not None:
                return len(self._row_ids.get(document_id, []))
            return sum(len(row_ids) for row_ids in self._row_ids.values())

    def delete(self, document_id: str) -> int:
        with self._lock:
            row_ids = self._row_ids.get(document_id)
            if not row_ids or self._store is None:
                return 0
            try:
                self._store.delete(row_ids)
            except (RuntimeError, ValueError) as exc:
                raise VectorStoreError(f"Delete failed for {document_id}: {exc}") from exc
            del self._row_ids[document_id]
            self._persist()
            return len(row_ids)

    def _add(
        self,
        text_embeddings: list[tuple[str, list[float]]],
        metadatas: list[dict[str, object]],
        ids: list[str],
    ) -> None:
        if self._store is None:
            self._store = FAISS.from_embeddings(
                text_embeddings,
                self._embeddings,
                metadatas=metadatas,
                ids=ids,
                distance_strategy=DistanceStrategy.MAX_INNER_PRODUCT,
            )
            return
        self._store.add_embeddings(text_embeddings, metadatas=metadatas, ids=ids)

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._path.mkdir(parents=True, exist_ok=True)
            self._store.save_local(str(self._path), index_name=self.index_name)
        except (OSError, RuntimeError) as exc:
            raise VectorStoreError(f"Cannot save vector store to {self._path}: {exc}") from exc

    def _load(self) -> None:
        try:
            store = FAISS.load_local(
                str(self._path),
                self._embeddings,
                index_name=self.index_name,
                allow_dangerous_deserialization=True,
                distance_strategy=DistanceStrategy.MAX_INNER_PRODUCT,
            )
        except (OSError, RuntimeError, ValueError, pickle.UnpicklingError) as exc:
            raise VectorStoreError(f"Cannot open vector store at {self._path}: {exc}") from exc

        if self._dimension is not None and store.index.d != self._dimension:
            raise VectorStoreError(
                f"Vector store at {self._path} has dimension {store.index.d}, "
                f"expected {self._dimension}"
            )
        self._store = store
        self._dimension = store.index.d
        for row_id in store.index_to_docstore_id.values():
            metadata = store.docstore.search(row_id).metadata
            self._row_ids.setdefault(metadata["document_id"], []).append(row_id)
            self._sequence = max(self._sequence, int(metadata["seq"]) + 1)


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cos(a, b); a zero vector is treated as orthogonal to everything."""

    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - numerator / (norm_a * norm_b)


def similarity_from_distance(distance: float) -> float:
    return min(1.0, max(0.0, 1.0 - distance))


def _validate_chunks(
    document_id: str, chunks: Sequence[Chunk], dimension: int | None
) -> int | None:
    seen = dimension
    for chunk in chunks:
        if chunk.document_id != document_id:
            raise InvalidInput(
                f"Chunk {chunk.chunk_id} belongs to {chunk.document_id}, not {document_id}"
            )
        if not chunk.embedding:
            raise InvalidInput(f"Chunk {chunk.chunk_id} has no embedding")
        if seen is None:
            seen = len(chunk.embedding)
        elif len(chunk.embedding) != seen:
            raise InvalidInput(
                f"Chunk {chunk.chunk_id} has dimension {len(chunk.embedding)}, store expects {seen}"
            )
    return seen


def _validate_query(embedding: Sequence[float], top_k: int, dimension: int | None) -> None:
    if top_k <= 0:
        raise InvalidInput("top_k must be positive")
    if dimension is not None and len(embedding) != dimension:
        raise InvalidInput(
            f"Query embedding has dimension {len(embedding)}, store expects {dimension}"
        )


def _unit(vector: Sequence[float]) -> list[float]:
    norm = sqrt(sum(value * value for value in vector))
    if norm == 0:
        return [0.0 for _ in vector]
    return [value / norm for value in vector]


def _to_chunk(document: LangChainDocument) -> Chunk:
    metadata = document.metadata
    return Chunk(
        chunk_id=str(metadata["chunk_id"]),
        document_id=str(metadata["document_id"]),
        sequence_index=int(metadata["sequence_index"]),
        text=document.page_content,
        word_count=int(metadata["word_count"]),
    )
