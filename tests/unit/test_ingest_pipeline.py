import pytest

from tool_rag.config import ChunkingConfig, IngestionConfig
from tool_rag.errors import (
    EmbeddingServiceError,
    ExtractionServiceError,
    IngestionError,
    InvalidInput,
)
from tool_rag.ingest.chunker import WordWindowChunker
from tool_rag.ingest.documents import InMemoryDocumentStore, SqliteDocumentStore
from tool_rag.ingest.embedder import HashingEmbedder
from tool_rag.ingest.extractor import Extractor, ParserRegistry
from tool_rag.ingest.pipeline import IngestPipeline, guess_mime_type
from tool_rag.retrieval.vector_store import InMemoryVectorStore
from tool_rag.types import DocumentStatus, ExtractionMethod


class UnavailableService:
    def extract(self, data: bytes, mime_type: str) -> str:
        raise ExtractionServiceError("not configured")


class CountingEmbedder(HashingEmbedder):
    def __init__(self, fail_after: int | None = None) -> None:
        super().__init__(dimension=64)
        self.embedded: list[str] = []
        self.fail_after = fail_after

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if self.fail_after is not None and len(self.embedded) >= self.fail_after:
            raise EmbeddingServiceError("quota exceeded")
        self.embedded.extend(texts)
        return super().embed_documents(texts)


class SteppingClock:
    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowExtractionService:
    """Returns fixed text and moves the clock forward on every call."""

    def __init__(self, clock: ManualClock, text: bytes, seconds: float) -> None:
        self.clock = clock
        self.text = text.decode("utf-8")
        self.seconds = seconds
        self.calls = 0

    def extract(self, data: bytes, mime_type: str) -> str:
        self.calls += 1
        self.clock.now += self.seconds
        return self.text


class BrokenEmbedder(HashingEmbedder):
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("connection pool closed")


def _text(words: int, prefix: str = "w") -> bytes:
    return " ".join(f"{prefix}{i}" for i in range(words)).encode("utf-8")


def _pipeline(embedder=None, *, documents=None, vector_store=None, clock=None, **config):
    return IngestPipeline(
        Extractor(ParserRegistry.default(UnavailableService())),
        WordWindowChunker(ChunkingConfig(max_words=5)),
        embedder or CountingEmbedder(),
        vector_store or InMemoryVectorStore(),
        documents or InMemoryDocumentStore(),
        IngestionConfig(**config),
        clock=clock or SteppingClock(step=0.0),
    )


def _rows(pipeline: IngestPipeline, document_id: str):
    rows = pipeline._vector_store.query([1.0] + [0.0] * 63, top_k=1000)
    return sorted(
        (row.chunk for row in rows if row.chunk.document_id == document_id),
        key=lambda chunk: chunk.sequence_index,
    )


def test_ingest_writes_every_chunk_in_order() -> None:
    documents = InMemoryDocumentStore()
    pipeline = _pipeline(documents=documents)

    report = pipeline.ingest("doc", _text(60), "text/plain", source_uri="handbook.txt")

    assert report.outcome == "completed"
    assert report.chunks_written == 12
    assert report.last_completed_index == 11
    assert [chunk.sequence_index for chunk in _rows(pipeline, "doc")] == list(range(12))
    stored = documents.get("doc")
    assert stored.status is DocumentStatus.EMBEDDED
    assert stored.extraction_method is ExtractionMethod.LOCAL
    assert stored.source_uri == "handbook.txt"


def test_reingest_replaces_previous_chunks() -> None:
    pipeline = _pipeline()
    pipeline.ingest("doc", _text(60, prefix="old"), "text/plain")

    pipeline.ingest("doc", _text(10, prefix="new"), "text/plain")

    chunks = _rows(pipeline, "doc")
    assert len(chunks) == 2
    assert all(chunk.text.startswith("new") for chunk in chunks)


def test_budget_exhaustion_checkpoints_then_resumes() -> None:
    documents = InMemoryDocumentStore()
    vector_store = InMemoryVectorStore()
    first_embedder = CountingEmbedder()
    first = _pipeline(
        first_embedder,
        documents=documents,
        vector_store=vector_store,
        clock=SteppingClock(step=1.0),
        budget_seconds=1.5,
        budget_margin_seconds=0,
        embed_batch_size=4,
    )

    partial = first.ingest("doc", _text(60), "text/plain")

    assert partial.outcome == "partial"
    assert partial.last_completed_index == 7
    assert len(first_embedder.embedded) == 8
    assert vector_store.count("doc") == 0
    assert documents.get("doc").status is DocumentStatus.CHUNKED
    assert documents.get_checkpoint("doc").last_completed_index == 7

    second_embedder = CountingEmbedder()
    second = _pipeline(
        second_embedder, documents=documents, vector_store=vector_store, embed_batch_size=4
    )
    completed = second.ingest("doc", _text(60), "text/plain")

    assert completed.outcome == "completed"
    assert len(second_embedder.embedded) == 4
    assert vector_store.count("doc") == 12
    assert documents.get_checkpoint("doc") is None


def test_changed_content_discards_checkpoint() -> None:
    documents = InMemoryDocumentStore()
    first = _pipeline(
        documents=documents,
        clock=SteppingClock(step=1.0),
        budget_seconds=1.5,
        budget_margin_seconds=0,
        embed_batch_size=4,
    )
    assert first.ingest("doc", _text(60), "text/plain").outcome == "partial"

    embedder = CountingEmbedder()
    report = _pipeline(embedder, documents=documents).ingest(
        "doc", _text(60, prefix="v"), "text/plain"
    )

    assert report.outcome == "completed"
    assert len(embedder.embedded) == 12


def test_embedding_failure_marks_document_failed(tmp_path) -> None:
    documents = SqliteDocumentStore(tmp_path / "docs.db")
    pipeline = _pipeline(CountingEmbedder(fail_after=4), documents=documents, embed_batch_size=4)

    with pytest.raises(EmbeddingServiceError):
        pipeline.ingest("doc", _text(60), "text/plain")

    stored = documents.get("doc")
    assert stored.status is DocumentStatus.FAILED
    assert stored.error == "quota exceeded"
    assert stored.last_completed_index == 3
    assert documents.get_checkpoint("doc").last_completed_index == 3
    assert pipeline._vector_store.count("doc") == 0


def test_unsupported_type_fails_before_chunking() -> None:
    documents = InMemoryDocumentStore()

    with pytest.raises(InvalidInput):
        _pipeline(documents=documents).ingest("doc", b"data", "application/x-unknown")

    assert documents.get("doc").status is DocumentStatus.FAILED


def test_empty_document_completes_with_no_chunks() -> None:
    report = _pipeline().ingest("doc", b"   ", "text/plain")

    assert report.outcome == "completed"
    assert report.chunks_written == 0
    assert report.last_completed_index == -1


def test_ingest_path_reads_file_and_guesses_type(tmp_path) -> None:
    path = tmp_path / "policy.md"
    path.write_text("Employees must encrypt customer data at rest.", encoding="utf-8")

    report = _pipeline().ingest_path(path)

    assert report.document.document_id == "policy"
    assert report.document.source_uri == str(path)
    assert guess_mime_type(path) == "text/markdown"
    with pytest.raises(InvalidInput):
        _pipeline().ingest_path(tmp_path / "missing.txt")


def test_slow_extraction_still_makes_progress_and_is_not_repeated() -> None:
    clock = ManualClock()
    service = SlowExtractionService(clock, _text(60), seconds=10.0)
    documents = InMemoryDocumentStore()
    vector_store = InMemoryVectorStore()

    def pipeline(embedder: CountingEmbedder) -> IngestPipeline:
        return IngestPipeline(
            Extractor(ParserRegistry.default(service)),
            WordWindowChunker(ChunkingConfig(max_words=5)),
            embedder,
            vector_store,
            documents,
            IngestionConfig(budget_seconds=10, budget_margin_seconds=1, embed_batch_size=4),
            clock=clock,
        )

    first = pipeline(CountingEmbedder()).ingest("scan", b"\x89PNG\r\n", "image/png")

    assert first.outcome == "partial"
    assert first.last_completed_index == 3
    assert documents.get_checkpoint("scan").extraction.text == service.text

    second_embedder = CountingEmbedder()
    second = pipeline(second_embedder).ingest("scan", b"\x89PNG\r\n", "image/png")

    assert second.outcome == "completed"
    assert second.chunks_written == 12
    assert len(second_embedder.embedded) == 8
    assert service.calls == 1
    assert documents.get("scan").extraction_method is ExtractionMethod.SERVICE


def test_checkpointed_extraction_survives_sqlite_reopen(tmp_path) -> None:
    path = tmp_path / "docs.db"
    first = _pipeline(
        documents=SqliteDocumentStore(path),
        clock=SteppingClock(step=1.0),
        budget_seconds=1.5,
        budget_margin_seconds=0,
        embed_batch_size=4,
    )
    assert first.ingest("doc", _text(60), "text/plain").outcome == "partial"

    checkpoint = SqliteDocumentStore(path).get_checkpoint("doc")

    assert checkpoint.extraction.text == _text(60).decode("utf-8")
    assert checkpoint.extraction.method is ExtractionMethod.LOCAL
    assert len(checkpoint.embeddings) == 8


def test_unexpected_error_marks_document_failed() -> None:
    documents = InMemoryDocumentStore()
    pipeline = _pipeline(BrokenEmbedder(dimension=64), documents=documents)

    with pytest.raises(IngestionError) as excinfo:
        pipeline.ingest("doc", _text(10), "text/plain")

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    stored = documents.get("doc")
    assert stored.status is DocumentStatus.FAILED
    assert "connection pool closed" in stored.error


def test_unreadable_office_file_marks_document_failed() -> None:
    documents = InMemoryDocumentStore()
    docx = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    with pytest.raises(InvalidInput):
        _pipeline(documents=documents).ingest("doc", b"PK\x03\x04 truncated", docx)

    assert documents.get("doc").status is DocumentStatus.FAILED
