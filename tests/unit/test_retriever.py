import pytest

from tool_rag.errors import EmbeddingServiceError, InvalidInput
from tool_rag.ingest.documents import InMemoryDocumentStore
from tool_rag.ingest.embedder import HashingEmbedder
from tool_rag.config import RetrievalConfig
from tool_rag.retrieval.retriever import RetrievalService, contextual_query, format_context
from tool_rag.retrieval.vector_store import InMemoryVectorStore
from tool_rag.types import Chunk, Document


class BrokenEmbedder(HashingEmbedder):
    def embed_query(self, text: str) -> list[float]:
        raise EmbeddingServiceError("embedding endpoint down")


class RecordingEmbedder(HashingEmbedder):
    def __init__(self) -> None:
        super().__init__()
        self.queries: list[str] = []

    def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        return super().embed_query(text)


def _indexed_store(embedder: HashingEmbedder) -> InMemoryVectorStore:
    store = InMemoryVectorStore()
    texts = ["encrypt customer data at rest", "rotate credentials every quarter"]
    store.upsert(
        "policy",
        [
            Chunk(
                chunk_id=f"policy-chunk-{index:04d}",
                document_id="policy",
                sequence_index=index,
                text=text,
                word_count=len(text.split()),
                embedding=tuple(embedder.embed_query(text)),
            )
            for index, text in enumerate(texts)
        ],
    )
    return store


def test_empty_store_returns_no_results() -> None:
    service = RetrievalService(InMemoryVectorStore(), HashingEmbedder())

    assert service.retrieve("anything at all") == []


def test_results_carry_source_label_and_formatted_context() -> None:
    embedder = HashingEmbedder()
    documents = InMemoryDocumentStore()
    documents.save(Document(document_id="policy", source_uri="policy.pdf", raw_byte_size=10))
    service = RetrievalService(_indexed_store(embedder), embedder, documents=documents)

    results = service.retrieve("encrypt customer data at rest", top_k=1)

    assert len(results) == 1
    assert results[0].source == "policy.pdf"
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].context == (
        "[Source: policy.pdf (Similarity: 1.0000)]\nencrypt customer data at rest"
    )


def test_source_falls_back_to_document_id() -> None:
    embedder = HashingEmbedder()
    service = RetrievalService(_indexed_store(embedder), embedder)

    results = service.retrieve("rotate credentials")

    assert [result.source for result in results] == ["policy", "policy"]
    assert format_context(results).count("[Source: policy") == 2
    assert "\n\n[Source:" in format_context(results)


def test_embedding_failure_propagates() -> None:
    service = RetrievalService(InMemoryVectorStore(), BrokenEmbedder())

    with pytest.raises(EmbeddingServiceError):
        service.retrieve("question")


def test_blank_query_and_bad_top_k_rejected() -> None:
    service = RetrievalService(InMemoryVectorStore(), HashingEmbedder())

    with pytest.raises(InvalidInput):
        service.retrieve("   ")
    with pytest.raises(InvalidInput):
        service.retrieve("question", top_k=0)


def test_contextual_query_appends_recent_turns_after_query() -> None:
    turns = ["first question", "  ", "second\nquestion", "third question", "fourth question"]

    assert contextual_query("what now?", None) == "what now?"
    assert contextual_query("what now?", "travel   policy") == "what now? travel policy"
    assert contextual_query("what now?", turns, max_turns=2) == (
        "what now? third question fourth question"
    )
    assert contextual_query("what now?", ["", " "]) == "what now?"
    assert contextual_query("what now?", turns, max_turns=0) == "what now?"


def test_retrieve_embeds_query_with_conversation_context() -> None:
    embedder = RecordingEmbedder()
    service = RetrievalService(
        _indexed_store(HashingEmbedder()), embedder, RetrievalConfig(context_turns=1)
    )

    service.retrieve("how often?", context=["encryption rules", "credential rotation"])
    service.retrieve("how often?")

    assert embedder.queries == ["how often? credential rotation", "how often?"]
