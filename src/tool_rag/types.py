"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    SPLITTING = "splitting"
    EXTRACTED = "extracted"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    FAILED = "failed"


_STATUS_ORDER = {
    DocumentStatus.UPLOADED: 0,
    DocumentStatus.SPLITTING: 1,
    DocumentStatus.EXTRACTED: 2,
    DocumentStatus.CHUNKED: 3,
    DocumentStatus.EMBEDDED: 4,
}


class ExtractionMethod(str, Enum):
    SERVICE = "service"
    LOCAL = "local"
    FALLBACK = "fallback"


@dataclass(slots=True)
class Document:
    """An uploaded document and its ingestion state."""

    document_id: str
    source_uri: str
    raw_byte_size: int
    page_count: int | None = None
    extraction_method: ExtractionMethod | None = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    error: str | None = None
    last_completed_index: int = -1

    def advance(self, status: DocumentStatus) -> None:
        """Move forward in the ingestion state machine.

        Any state may move to `failed`; otherwise the status never regresses.
        """

        if status is DocumentStatus.FAILED:
            self.status = status
            return
        if self.status is DocumentStatus.FAILED:
            raise ValueError(f"Document {self.document_id} has failed; start a new run")
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise ValueError(
                f"Document {self.document_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status


@dataclass(frozen=True, slots=True)
class Chunk:
    """A bounded segment of a document's extracted text."""

    chunk_id: str
    document_id: str
    sequence_index: int
    text: str
    word_count: int
    embedding: tuple[float, ...] = ()


@dataclass(slots=True)
class ExtractionResult:
    text: str
    method: ExtractionMethod
    page_count: int | None = None
    part_count: int = 1


@dataclass(slots=True)
class RetrievalResult:
    """A retrieval hit with its source label and formatted context block."""

    chunk: Chunk
    source: str
    similarity: float
    context: str


@dataclass(slots=True)
class IngestionReport:
    document: Document
    outcome: Literal["completed", "partial", "failed"]
    chunks_written: int = 0
    last_completed_index: int = -1
    error: str | None = None


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class ToolInvocation:
    name: str
    parameters: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class ToolOk:
    tool_name: str
    payload: Any

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class ToolError:
    message: str
    kind: Literal["unknown_tool", "validation", "handler"]
    tool_name: str
    available_tools: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False


ToolResult = ToolOk | ToolError


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True


@dataclass(slots=True)
class ConversationTurn:
    """One appended entry of the conversation history."""

    role: Literal["user", "assistant", "tool"]
    content: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    is_error: bool = False


@dataclass(slots=True)
class ConversationResult:
    answer: str
    turns: list[ConversationTurn]
    tool_traces: list[ToolTrace]
    rounds: int
    latency_ms: float
