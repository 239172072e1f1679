"""End-to-end ingest pipeline: extract -> chunk -> embed -> replace in store."""

from __future__ import annotations

import mimetypes
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace
from hashlib import sha256
from itertools import islice
from pathlib import Path

import structlog

from tool_rag.config import IngestionConfig
from tool_rag.errors import IngestionError, InvalidInput, ToolRagError
from tool_rag.ingest.chunker import WordWindowChunker
from tool_rag.ingest.documents import DocumentStore, IngestCheckpoint
from tool_rag.ingest.embedder import Embedder
from tool_rag.ingest.extractor import Extractor
from tool_rag.obs.logging_config import bind_request_context, clear_request_context
from tool_rag.retrieval.vector_store import VectorStore
from tool_rag.types import Chunk, Document, DocumentStatus, ExtractionResult, IngestionReport

logger = structlog.get_logger(__name__)

_SUFFIX_MIME_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".log": "text/plain",
    ".json": "application/json",
    ".csv": "text/csv",
}


class IngestPipeline:
    """Coordinates extractor/chunker/embedder/vector store stages for one document.

    Each run drives the document through `uploaded -> (splitting) -> extracted
    -> chunked -> embedded`. Chunks are embedded in `sequence_index` order and
    only written to the vector store once every chunk has a vector, as a single
    replace of the document's previous chunk set.

    The wall-clock budget is checked before every embedding batch after the
    first one of a run. When it is nearly spent, the extracted text and the
    vectors computed so far are stored as a checkpoint and a `partial` report
    is returned; calling `ingest` again with the same bytes skips extraction
    and resumes after the last completed chunk. An in-flight batch is never
    interrupted.

    Callers must serialise runs for the same document id.
    """

    def __init__(
        self,
        extractor: Extractor,
        chunker: WordWindowChunker,
        embedder: Embedder,
        vector_store: VectorStore,
        documents: DocumentStore,
        config: IngestionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._extractor = extractor
        self._chunker = chunker
        self._embedder = embedder
        self._vector_store = vector_store
        self._documents = documents
        self.config = config or IngestionConfig()
        self._clock = clock

    def ingest(
        self,
        document_id: str,
        data: bytes,
        mime_type: str,
        *,
        source_uri: str | None = None,
    ) -> IngestionReport:
        """Ingest one document, replacing any chunks it already has."""

        if not document_id.strip():
            raise InvalidInput("document_id must not be blank")
        started = self._clock()
        document = Document(
            document_id=document_id,
            source_uri=source_uri or document_id,
            raw_byte_size=len(data),
        )
        self._documents.save(document)
        bind_request_context(document_id=document_id)
        source_digest = _source_digest(data, mime_type)
        checkpoint = self._load_checkpoint(document_id, source_digest)
        extraction: ExtractionResult | None = None
        embeddings: list[list[float]] = []
        fingerprint = ""

        try:
            if checkpoint is not None and checkpoint.extraction is not None:
                extraction = checkpoint.extraction
                logger.info("ingest.extraction_reused", method=extraction.method.value)
            else:
                extraction = self._extractor.extract(
                    data,
                    mime_type,
                    on_split=lambda parts: self._advance(document, DocumentStatus.SPLITTING),
                )
            document.page_count = extraction.page_count
            document.extraction_method = extraction.method
            self._advance(document, DocumentStatus.EXTRACTED)

            chunks = self._chunker.chunks(document_id, extraction.text)
            total = len(chunks)
            fingerprint = self._fingerprint(extraction.text)
            self._advance(document, DocumentStatus.CHUNKED)

            embeddings = _resumable_embeddings(checkpoint, fingerprint, total)
            if embeddings:
                logger.info("ingest.resumed", from_index=len(embeddings), total=total)
            document.last_completed_index = len(embeddings) - 1

            pending = islice(iter(chunks), len(embeddings), None)
            for batch_number, batch in enumerate(_batched(pending, self.config.embed_batch_size)):
                # the first batch of a run is never skipped
                if batch_number and self._budget_exhausted(started):
                    return self._checkpoint(
                        document, source_digest, extraction, fingerprint, embeddings, total
                    )
                embeddings.extend(self._embedder.embed_documents([chunk.text for chunk in batch]))
                document.last_completed_index = len(embeddings) - 1

            embedded = [
                replace(chunk, embedding=tuple(vector))
                for chunk, vector in zip(chunks, embeddings, strict=True)
            ]
            self._vector_store.upsert(document_id, embedded)
            self._documents.clear_checkpoint(document_id)
            self._advance(document, DocumentStatus.EMBEDDED)
        except ToolRagError as exc:
            self._fail(document, source_digest, extraction, fingerprint, embeddings, exc)
            raise
        except Exception as exc:
            error = IngestionError(f"{exc.__class__.__name__} during ingestion: {exc}")
            self._fail(document, source_digest, extraction, fingerprint, embeddings, error)
            raise error from exc
        finally:
            clear_request_context()

        logger.info(
            "ingest.completed",
            document_id=document_id,
            chunks=len(embedded),
            method=document.extraction_method.value if document.extraction_method else None,
            elapsed_s=round(self._clock() - started, 3),
        )
        return IngestionReport(
            document=document,
            outcome="completed",
            chunks_written=len(embedded),
            last_completed_index=document.last_completed_index,
        )

    def ingest_path(
        self,
        path: str | Path,
        *,
        document_id: str | None = None,
        mime_type: str | None = None,
    ) -> IngestionReport:
        """Ingest a single source file, guessing its MIME type from the suffix."""

        file_path = Path(path)
        if not file_path.is_file():
            raise InvalidInput(f"No such file: {file_path}")
        return self.ingest(
            document_id or file_path.stem,
            file_path.read_bytes(),
            mime_type or guess_mime_type(file_path),
            source_uri=str(file_path),
        )

    def _advance(self, document: Document, status: DocumentStatus) -> None:
        document.advance(status)
        self._documents.save(document)
        logger.debug("ingest.status", document_id=document.document_id, status=status.value)

    def _budget_exhausted(self, started: float) -> bool:
        limit = self.config.budget_seconds - self.config.budget_margin_seconds
        return (self._clock() - started) >= limit

    def _load_checkpoint(self, document_id: str, source_digest: str) -> IngestCheckpoint | None:
        checkpoint = self._documents.get_checkpoint(document_id)
        if checkpoint is not None and checkpoint.source_digest != source_digest:
            self._documents.clear_checkpoint(document_id)
            return None
        return checkpoint

    def _save_checkpoint(
        self,
        document: Document,
        source_digest: str,
        extraction: ExtractionResult,
        fingerprint: str,
        embeddings: list[list[float]],
    ) -> None:
        kept = embeddings if fingerprint else []
        self._documents.save_checkpoint(
            IngestCheckpoint(
                document_id=document.document_id,
                fingerprint=fingerprint,
                last_completed_index=len(kept) - 1,
                embeddings=kept,
                source_digest=source_digest,
                extraction=extraction,
            )
        )

    def _checkpoint(
        self,
        document: Document,
        source_digest: str,
        extraction: ExtractionResult,
        fingerprint: str,
        embeddings: list[list[float]],
        total: int,
    ) -> IngestionReport:
        self._save_checkpoint(document, source_digest, extraction, fingerprint, embeddings)
        self._documents.save(document)
        logger.warning(
            "ingest.budget_exhausted",
            document_id=document.document_id,
            completed=len(embeddings),
            total=total,
        )
        return IngestionReport(
            document=document,
            outcome="partial",
            chunks_written=0,
            last_completed_index=len(embeddings) - 1,
        )

    def _fail(
        self,
        document: Document,
        source_digest: str,
        extraction: ExtractionResult | None,
        fingerprint: str,
        embeddings: list[list[float]],
        exc: ToolRagError,
    ) -> None:
        if extraction is not None:
            self._save_checkpoint(document, source_digest, extraction, fingerprint, embeddings)
        document.error = exc.message
        document.advance(DocumentStatus.FAILED)
        self._documents.save(document)
        logger.error(
            "ingest.failed",
            document_id=document.document_id,
            error_code=exc.error_code,
            error=exc.message,
            last_completed_index=document.last_completed_index,
        )

    def _fingerprint(self, text: str) -> str:
        config = self._chunker.config
        digest = sha256(f"{config.max_words}:{config.overlap_words}:".encode("utf-8"))
        digest.update(text.encode("utf-8"))
        return digest.hexdigest()


def guess_mime_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _SUFFIX_MIME_TYPES:
        return _SUFFIX_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed is None:
        raise InvalidInput(f"Cannot determine MIME type for {path.name}")
    return guessed


def _batched(items: Iterable[Chunk], size: int) -> Iterator[list[Chunk]]:
    iterator = iter(items)
    while batch := list(islice(iterator, size)):
        yield batch


def _source_digest(data: bytes, mime_type: str) -> str:
    digest = sha256(mime_type.encode("utf-8"))
    digest.update(b"\0")
    digest.update(data)
    return digest.hexdigest()


def _resumable_embeddings(
    checkpoint: IngestCheckpoint | None, fingerprint: str, total: int
) -> list[list[float]]:
    if checkpoint is None or checkpoint.fingerprint != fingerprint:
        return []
    if len(checkpoint.embeddings) > total:
        return []
    return list(checkpoint.embeddings)
