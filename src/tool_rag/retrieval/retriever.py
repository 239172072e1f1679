"""Read path: embed a query, search the vector store, format cited context."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from tool_rag.config import RetrievalConfig
from tool_rag.errors import InvalidInput
from tool_rag.ingest.documents import DocumentStore
from tool_rag.ingest.embedder import Embedder
from tool_rag.retrieval.vector_store import VectorStore
from tool_rag.types import RetrievalResult

logger = structlog.get_logger(__name__)

CONTEXT_TEMPLATE = "[Source: {source} (Similarity: {score:.4f})]\n{content}"


class RetrievalService:
    """Flat top-K cosine retrieval with source attribution.

    Embedding failures propagate unchanged: answering without grounding on a
    broken embedding path is never attempted.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        *,
        documents: DocumentStore | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.documents = documents

    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        *,
        context: str | Sequence[str] | None = None,
    ) -> list[RetrievalResult]:
        """Return the top-K chunks for `query`, nearest first.

        `context` is either a free-text hint or the earlier turns of the
        conversation; when given, the most recent `context_turns` of it are
        appended to the query before embedding.
        """
        if not query.strip():
            raise InvalidInput("query must not be blank")
        k = top_k if top_k is not None else self.config.top_k

        search_text = contextual_query(query, context, self.config.context_turns)
        embedding = self.embedder.embed_query(search_text)
        rows = self.vector_store.query(embedding, k)

        results = []
        for row in rows:
            source = self._source_label(row.chunk.document_id)
            results.append(
                RetrievalResult(
                    chunk=row.chunk,
                    source=source,
                    similarity=row.similarity,
                    context=CONTEXT_TEMPLATE.format(
                        source=source, score=row.similarity, content=row.chunk.text
                    ),
                )
            )
        logger.info(
            "retrieval.completed", top_k=k, hits=len(results), contextual=search_text != query
        )
        return results

    def _source_label(self, document_id: str) -> str:
        if self.documents is None:
            return document_id
        document = self.documents.get(document_id)
        return document.source_uri if document else document_id


def format_context(results: list[RetrievalResult]) -> str:
    """Join context blocks with a blank line for injection into a prompt."""
    return "\n\n".join(result.context for result in results)


def contextual_query(query: str, context: str | Sequence[str] | None, max_turns: int = 3) -> str:
    """Append recent conversation context to a query, query first."""
    if context is None or max_turns == 0:
        return query
    turns = [context] if isinstance(context, str) else list(context)
    recent = [" ".join(turn.split()) for turn in turns if turn.strip()][-max_turns:]
    if not recent:
        return query
    return f"{query} {' '.join(recent)}"
