"""Document status and resumable ingestion checkpoints."""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from tool_rag.errors import VectorStoreError
from tool_rag.types import Document, DocumentStatus, ExtractionMethod, ExtractionResult


@dataclass(slots=True)
class IngestCheckpoint:
    """Work already paid for by an interrupted ingestion run.

    `source_digest` identifies the raw bytes; the cached `extraction` is reused
    by a later run over the same bytes. `fingerprint` identifies the chunked
    text, and `embeddings` only apply to a run with the same fingerprint.
    """

    document_id: str
    fingerprint: str
    last_completed_index: int
    embeddings: list[list[float]] = field(default_factory=list)
    source_digest: str = ""
    extraction: ExtractionResult | None = None


class DocumentStore(Protocol):
    def get(self, document_id: str) -> Document | None: ...

    def save(self, document: Document) -> None: ...

    def list(self) -> list[Document]: ...

    def get_checkpoint(self, document_id: str) -> IngestCheckpoint | None: ...

    def save_checkpoint(self, checkpoint: IngestCheckpoint) -> None: ...

    def clear_checkpoint(self, document_id: str) -> None: ...


class InMemoryDocumentStore:
    """Process-local document store; returns copies so callers cannot alias state."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._checkpoints: dict[str, IngestCheckpoint] = {}
        self._lock = threading.Lock()

    def get(self, document_id: str) -> Document | None:
        with self._lock:
            document = self._documents.get(document_id)
            return replace(document) if document else None

    def save(self, document: Document) -> None:
        with self._lock:
            self._documents[document.document_id] = replace(document)

    def list(self) -> list[Document]:
        with self._lock:
            return [replace(document) for document in self._documents.values()]

    def get_checkpoint(self, document_id: str) -> IngestCheckpoint | None:
        with self._lock:
            return self._checkpoints.get(document_id)

    def save_checkpoint(self, checkpoint: IngestCheckpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.document_id] = checkpoint

    def clear_checkpoint(self, document_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(document_id, None)


class SqliteDocumentStore:
    """Document rows and checkpoints kept beside the FAISS index."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        try:
            with sqlite3.connect(self._path) as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        document_id TEXT PRIMARY KEY,
                        source_uri TEXT NOT NULL,
                        raw_byte_size INTEGER NOT NULL,
                        page_count INTEGER,
                        extraction_method TEXT,
                        status TEXT NOT NULL,
                        error TEXT,
                        last_completed_index INTEGER NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ingest_checkpoints (
                        document_id TEXT PRIMARY KEY,
                        fingerprint TEXT NOT NULL,
                        last_completed_index INTEGER NOT NULL,
                        embeddings TEXT NOT NULL,
                        source_digest TEXT NOT NULL,
                        extracted_text TEXT,
                        extraction_method TEXT,
                        page_count INTEGER,
                        part_count INTEGER
                    )
                    """
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Cannot open document store at {self._path}: {exc}") from exc

    def get(self, document_id: str) -> Document | None:
        row = self._fetchone(
            "SELECT document_id, source_uri, raw_byte_size, page_count, extraction_method,"
            " status, error, last_completed_index FROM documents WHERE document_id = ?",
            (document_id,),
        )
        return _row_to_document(row) if row else None

    def save(self, document: Document) -> None:
        self._execute(
            "INSERT INTO documents VALUES(?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(document_id) DO UPDATE SET source_uri=excluded.source_uri,"
            " raw_byte_size=excluded.raw_byte_size, page_count=excluded.page_count,"
            " extraction_method=excluded.extraction_method, status=excluded.status,"
            " error=excluded.error, last_completed_index=excluded.last_completed_index",
            (
                document.document_id,
                document.source_uri,
                document.raw_byte_size,
                document.page_count,
                document.extraction_method.value if document.extraction_method else None,
                document.status.value,
                document.error,
                document.last_completed_index,
            ),
        )

    def list(self) -> list[Document]:
        try:
            with sqlite3.connect(self._path) as conn:
                rows = conn.execute(
                    "SELECT document_id, source_uri, raw_byte_size, page_count, extraction_method,"
                    " status, error, last_completed_index FROM documents ORDER BY document_id"
                ).fetchall()
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Document listing failed: {exc}") from exc
        return [_row_to_document(row) for row in rows]

    def get_checkpoint(self, document_id: str) -> IngestCheckpoint | None:
        row = self._fetchone(
            "SELECT document_id, fingerprint, last_completed_index, embeddings, source_digest,"
            " extracted_text, extraction_method, page_count, part_count"
            " FROM ingest_checkpoints WHERE document_id = ?",
            (document_id,),
        )
        if row is None:
            return None
        return IngestCheckpoint(
            document_id=row[0],
            fingerprint=row[1],
            last_completed_index=row[2],
            embeddings=json.loads(row[3]),
            source_digest=row[4],
            extraction=_row_to_extraction(row[5:]),
        )

    def save_checkpoint(self, checkpoint: IngestCheckpoint) -> None:
        extraction = checkpoint.extraction
        self._execute(
            "INSERT INTO ingest_checkpoints VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(document_id) DO UPDATE SET fingerprint=excluded.fingerprint,"
            " last_completed_index=excluded.last_completed_index, embeddings=excluded.embeddings,"
            " source_digest=excluded.source_digest, extracted_text=excluded.extracted_text,"
            " extraction_method=excluded.extraction_method, page_count=excluded.page_count,"
            " part_count=excluded.part_count",
            (
                checkpoint.document_id,
                checkpoint.fingerprint,
                checkpoint.last_completed_index,
                json.dumps(checkpoint.embeddings),
                checkpoint.source_digest,
                extraction.text if extraction else None,
                extraction.method.value if extraction else None,
                extraction.page_count if extraction else None,
                extraction.part_count if extraction else None,
            ),
        )

    def clear_checkpoint(self, document_id: str) -> None:
        self._execute("DELETE FROM ingest_checkpoints WHERE document_id = ?", (document_id,))

    def _fetchone(self, sql: str, params: tuple[object, ...]) -> tuple[object, ...] | None:
        try:
            with sqlite3.connect(self._path) as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Document store read failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple[object, ...]) -> None:
        try:
            with sqlite3.connect(self._path) as conn:
                conn.execute(sql, params)
                conn.commit()
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Document store write failed: {exc}") from exc


def _row_to_document(row: tuple[object, ...]) -> Document:
    document_id, source_uri, size, pages, method, status, error, last_index = row
    return Document(
        document_id=str(document_id),
        source_uri=str(source_uri),
        raw_byte_size=int(size),  # type: ignore[arg-type]
        page_count=int(pages) if pages is not None else None,  # type: ignore[arg-type]
        extraction_method=ExtractionMethod(method) if method else None,
        status=DocumentStatus(status),
        error=str(error) if error is not None else None,
        last_completed_index=int(last_index),  # type: ignore[arg-type]
    )


def _row_to_extraction(row: tuple[object, ...]) -> ExtractionResult | None:
    text, method, pages, parts = row
    if text is None or method is None:
        return None
    return ExtractionResult(
        text=str(text),
        method=ExtractionMethod(method),
        page_count=int(pages) if pages is not None else None,  # type: ignore[arg-type]
        part_count=int(parts) if parts is not None else 1,  # type: ignore[arg-type]
    )
