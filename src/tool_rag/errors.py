"""Typed failures raised across ingestion, retrieval, and tool execution."""

from __future__ import annotations


class ToolRagError(Exception):
    """Base error carrying a stable machine-readable code."""

    error_code = "TOOL_RAG_ERROR"

    def __init__(self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class InvalidInput(ToolRagError):
    """Caller error. Never retried automatically."""

    error_code = "INVALID_INPUT"


class ExtractionServiceError(ToolRagError):
    """Primary extraction service is unconfigured or failed to answer."""

    error_code = "EXTRACTION_SERVICE_ERROR"


class ExtractionUnavailable(ToolRagError):
    """No primary extraction and no applicable fallback for the document type."""

    error_code = "EXTRACTION_UNAVAILABLE"


class EmbeddingServiceError(ToolRagError):
    """Embedding service returned a non-success response or a malformed vector."""

    error_code = "EMBEDDING_SERVICE_ERROR"


class VectorStoreError(ToolRagError):
    """Persistence or query failure inside a vector store."""

    error_code = "VECTOR_STORE_ERROR"


class IngestionError(ToolRagError):
    """An unexpected failure while ingesting a document."""

    error_code = "INGESTION_FAILED"


class UnknownTool(ToolRagError):
    error_code = "UNKNOWN_TOOL"

    def __init__(self, name: str, available_tools: list[str]) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name
        self.available_tools = available_tools


class DuplicateTool(ToolRagError):
    error_code = "DUPLICATE_TOOL"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name}")
        self.name = name


class ToolValidationError(ToolRagError):
    error_code = "TOOL_VALIDATION_ERROR"


class ToolHandlerError(ToolRagError):
    """Wraps any failure raised inside a tool handler."""

    error_code = "TOOL_HANDLER_ERROR"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolRouterUnavailable(ToolRagError):
    """A remote tool router could not be reached or answered garbage."""

    error_code = "TOOL_ROUTER_UNAVAILABLE"
