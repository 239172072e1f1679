"""FastAPI entrypoint for tool routing, ingestion, retrieval, and conversations."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tool_rag.agent.fallback import RetrievalOnlyChatModel
from tool_rag.agent.loop import ToolCallingAgent
from tool_rag.agent.registry import ToolRegistry, build_registry
from tool_rag.agent.router import HttpToolRouter, ToolInvoker, ToolRouter
from tool_rag.agent.tools import InMemoryEntityDataSource, builtin_tool_specs
from tool_rag.config import Settings
from tool_rag.errors import (
    EmbeddingServiceError,
    ExtractionUnavailable,
    IngestionError,
    InvalidInput,
    ToolRagError,
    ToolRouterUnavailable,
    VectorStoreError,
)
from tool_rag.ingest.chunker import WordWindowChunker
from tool_rag.ingest.documents import DocumentStore, InMemoryDocumentStore, SqliteDocumentStore
from tool_rag.ingest.embedder import Embedder, HashingEmbedder, OpenAIEmbedder
from tool_rag.ingest.extractor import Extractor, HttpExtractionService, ParserRegistry
from tool_rag.ingest.pipeline import IngestPipeline
from tool_rag.obs.logging_config import configure_logging
from tool_rag.retrieval.retriever import RetrievalService
from tool_rag.retrieval.vector_store import FaissVectorStore, InMemoryVectorStore, VectorStore
from tool_rag.types import Document, ToolOk

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR: dict[type[ToolRagError], int] = {
    InvalidInput: 400,
    ExtractionUnavailable: 503,
    EmbeddingServiceError: 502,
    ToolRouterUnavailable: 502,
    VectorStoreError: 500,
    IngestionError: 500,
}


@dataclass(slots=True)
class Services:
    """Components shared by every request; built once per process."""

    documents: DocumentStore
    vector_store: VectorStore
    embedder: Embedder
    pipeline: IngestPipeline
    retriever: RetrievalService
    registry: ToolRegistry
    router: ToolRouter
    agent: ToolCallingAgent
    llm_configured: bool


def build_services(settings: Settings | None = None) -> Services:
    settings = settings or Settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    api_key = settings.openai_api_key.get_secret_value()
    embedder: Embedder = (
        OpenAIEmbedder.from_api_key(
            api_key, model=settings.embedding_model, dimension=settings.embedding_dimensions
        )
        if api_key
        else HashingEmbedder()
    )

    documents: DocumentStore
    vector_store: VectorStore
    if settings.vector_store_path:
        data_dir = Path(settings.vector_store_path)
        data_dir.mkdir(parents=True, exist_ok=True)
        documents = SqliteDocumentStore(data_dir / "documents.db")
        vector_store = FaissVectorStore(data_dir / "faiss", embedder, embedder.dimension)
    else:
        documents = InMemoryDocumentStore()
        vector_store = InMemoryVectorStore(embedder.dimension)

    extraction_service = HttpExtractionService(
        settings.extraction_service_url,
        settings.extraction_service_key.get_secret_value(),
        timeout=settings.extraction_timeout_seconds,
    )
    extractor = Extractor(ParserRegistry.default(extraction_service), settings.extraction())
    pipeline = IngestPipeline(
        extractor,
        WordWindowChunker(settings.chunking()),
        embedder,
        vector_store,
        documents,
        settings.ingestion(),
    )
    retriever = RetrievalService(
        vector_store, embedder, settings.retrieval(), documents=documents
    )

    registry = build_registry(builtin_tool_specs(retriever, InMemoryEntityDataSource()))
    router = ToolRouter(registry)
    agent_router: ToolInvoker = (
        HttpToolRouter(settings.tool_router_url) if settings.tool_router_url else router
    )

    llm: Any
    if api_key:
        from langchain_openai import ChatOpenAI

        llm = ChatOpenAI(model=settings.chat_model, temperature=0, api_key=api_key)
    else:
        llm = RetrievalOnlyChatModel()

    agent = ToolCallingAgent(
        llm=llm, tool_registry=registry, router=agent_router, config=settings.agent()
    )
    return Services(
        documents=documents,
        vector_store=vector_store,
        embedder=embedder,
        pipeline=pipeline,
        retriever=retriever,
        registry=registry,
        router=router,
        agent=agent,
        llm_configured=bool(api_key),
    )


class IngestRequest(BaseModel):
    path: str = Field(min_length=1)
    document_id: str | None = None
    mime_type: str | None = None


class QueryRequest(BaseModel):
    message: str = Field(min_length=1)


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=50)


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services()
    app = FastAPI(title="Tool RAG", version="0.1.0")

    @app.exception_handler(ToolRagError)
    async def _tool_rag_error(request: Request, exc: ToolRagError) -> JSONResponse:
        status = next(
            (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500
        )
        logger.warning("api.error", path=request.url.path, error_code=exc.error_code, status=status)
        return JSONResponse(
            status_code=status, content={"error": exc.message, "error_code": exc.error_code}
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": services.llm_configured,
            "tool_count": len(services.registry.names()),
            "chunk_count": services.vector_store.count(),
        }

    @app.get("/tools")
    def list_tools() -> dict[str, Any]:
        return {
            "available_tools": [
                {"name": spec.name, "description": spec.description}
                for spec in services.registry.specs()
            ]
        }

    @app.post("/tools/invoke")
    async def invoke_tool(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _invalid_body()
        if not isinstance(body, dict):
            return _invalid_body()
        for required in ("tool_name", "parameters"):
            if required not in body:
                return JSONResponse(status_code=400, content={"error": f"missing field: {required}"})
        tool_name, parameters = body["tool_name"], body["parameters"]
        if not isinstance(tool_name, str) or not isinstance(parameters, dict):
            return _invalid_body()

        result = await run_in_threadpool(services.router.invoke, tool_name, parameters)
        if isinstance(result, ToolOk):
            return JSONResponse(
                content={
                    "success": True,
                    "tool_name": tool_name,
                    "result": json.dumps(result.payload, ensure_ascii=False),
                }
            )
        if result.kind == "unknown_tool":
            return JSONResponse(
                status_code=400,
                content={"error": result.message, "available_tools": result.available_tools},
            )
        if result.kind == "validation":
            return JSONResponse(status_code=400, content={"error": result.message})
        return JSONResponse(
            status_code=500, content={"error": result.message, "tool_name": tool_name}
        )

    @app.post("/ingest")
    def ingest(request: IngestRequest) -> dict[str, Any]:
        report = services.pipeline.ingest_path(
            request.path, document_id=request.document_id, mime_type=request.mime_type
        )
        return {
            "outcome": report.outcome,
            "chunks_written": report.chunks_written,
            "last_completed_index": report.last_completed_index,
            "document": _document_payload(report.document),
        }

    @app.get("/documents/{document_id}")
    def document_detail(document_id: str) -> JSONResponse:
        document = services.documents.get(document_id)
        if document is None:
            return JSONResponse(
                status_code=404, content={"error": f"Document not found: {document_id}"}
            )
        return JSONResponse(content=_document_payload(document))

    @app.post("/query")
    def query(request: QueryRequest) -> dict[str, Any]:
        result = services.agent.converse(request.message)
        return {
            "answer": result.answer,
            "rounds": result.rounds,
            "latency_ms": result.latency_ms,
            "tool_traces": [asdict(trace) for trace in result.tool_traces],
        }

    @app.post("/sources/search")
    def source_search(request: SourceSearchRequest) -> dict[str, Any]:
        results = services.retriever.retrieve(request.query, top_k=request.top_k)
        return {
            "items": [
                {
                    "chunk_id": result.chunk.chunk_id,
                    "document_id": result.chunk.document_id,
                    "sequence_index": result.chunk.sequence_index,
                    "source": result.source,
                    "similarity": result.similarity,
                    "text": result.chunk.text,
                }
                for result in results
            ]
        }

    return app


def _invalid_body() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid request body"})


def _document_payload(document: Document) -> dict[str, Any]:
    return {
        "document_id": document.document_id,
        "source_uri": document.source_uri,
        "raw_byte_size": document.raw_byte_size,
        "page_count": document.page_count,
        "extraction_method": (
            document.extraction_method.value if document.extraction_method else None
        ),
        "status": document.status.value,
        "error": document.error,
        "last_completed_index": document.last_completed_index,
    }


app = create_app()
