"""Configuration models for ingestion, retrieval, and the agent loop."""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChunkingConfig(BaseModel):
    """Configures the fixed-size word window chunker.

    Bounds are checked by the chunker itself so that invalid values surface as
    `InvalidInput` rather than a pydantic error.
    """

    max_words: int = 500
    overlap_words: int = 0


class ExtractionConfig(BaseModel):
    """Configures PDF splitting and the fallback extractor."""

    max_pdf_pages: int = Field(default=15, ge=1)
    max_pdf_bytes: int = Field(default=4 * 1024 * 1024, ge=1)
    fallback_enabled: bool = True


class IngestionConfig(BaseModel):
    """Configures the ingestion wall-clock budget and embedding batches."""

    budget_seconds: float = Field(default=300.0, gt=0.0)
    budget_margin_seconds: float = Field(default=5.0, ge=0.0)
    embed_batch_size: int = Field(default=16, ge=1)


class RetrievalConfig(BaseModel):
    """Configures flat top-K retrieval."""

    top_k: int = Field(default=5, ge=1)
    # earlier conversation turns appended to a query before embedding
    context_turns: int = Field(default=3, ge=0)


class AgentConfig(BaseModel):
    """Configures the tool-calling conversation loop."""

    max_rounds: int = Field(default=5, ge=1)
    max_preview_chars: int = Field(default=320, ge=16)


class Settings(BaseSettings):
    """Environment surface. Every variable uses the `TOOL_RAG_` prefix."""

    model_config = SettingsConfigDict(
        env_prefix="TOOL_RAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    log_json: bool = False

    openai_api_key: SecretStr = SecretStr("")
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, ge=1)
    chat_model: str = "gpt-4o-mini"

    chunk_words: int = 500
    chunk_overlap: int = 0
    top_k: int = Field(default=5, ge=1)
    context_turns: int = Field(default=3, ge=0)

    max_pdf_pages: int = Field(default=15, ge=1)
    max_pdf_bytes: int = Field(default=4 * 1024 * 1024, ge=1)
    extraction_fallback_enabled: bool = True
    extraction_service_url: str = ""
    extraction_service_key: SecretStr = SecretStr("")
    extraction_timeout_seconds: float = Field(default=60.0, gt=0.0)

    ingest_budget_seconds: float = Field(default=300.0, gt=0.0)
    ingest_budget_margin_seconds: float = Field(default=5.0, ge=0.0)
    embed_batch_size: int = Field(default=16, ge=1)

    # directory holding the FAISS index and the document database
    vector_store_path: str = ""
    tool_router_url: str = ""
    max_tool_rounds: int = Field(default=5, ge=1)

    def chunking(self) -> ChunkingConfig:
        return ChunkingConfig(max_words=self.chunk_words, overlap_words=self.chunk_overlap)

    def extraction(self) -> ExtractionConfig:
        return ExtractionConfig(
            max_pdf_pages=self.max_pdf_pages,
            max_pdf_bytes=self.max_pdf_bytes,
            fallback_enabled=self.extraction_fallback_enabled,
        )

    def ingestion(self) -> IngestionConfig:
        return IngestionConfig(
            budget_seconds=self.ingest_budget_seconds,
            budget_margin_seconds=self.ingest_budget_margin_seconds,
            embed_batch_size=self.embed_batch_size,
        )

    def retrieval(self) -> RetrievalConfig:
        return RetrievalConfig(top_k=self.top_k, context_turns=self.context_turns)

    def agent(self) -> AgentConfig:
        return AgentConfig(max_rounds=self.max_tool_rounds)
