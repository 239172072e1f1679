"""Document-to-text extraction with MIME-keyed parsers, PDF splitting, and fallback."""

from __future__ import annotations

import io
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Protocol

import httpx
import structlog
from pypdf import PdfReader, PdfWriter

from tool_rag.config import ExtractionConfig
from tool_rag.errors import ExtractionServiceError, ExtractionUnavailable, InvalidInput
from tool_rag.types import ExtractionMethod, ExtractionResult

logger = structlog.get_logger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
HTML = "text/html"
IMAGE_TYPES = ("image/png", "image/jpeg", "image/tiff", "image/webp")
TEXT_TYPES = ("text/plain", "text/markdown", "text/csv", "application/json")

PAGE_BREAK_MARKER = "\n\n--- page break ---\n\n"


class ExtractionService(Protocol):
    """Remote, table-aware extraction service (PDFs and images)."""

    def extract(self, data: bytes, mime_type: str) -> str:
        """Return plain text, raising `ExtractionServiceError` on service failure."""


class HttpExtractionService:
    """httpx client for a document-layout extraction endpoint.

    The endpoint receives the raw bytes and answers either `{"text": ...}` or
    `{"pages": [{"text": ..., "tables": [[[cell, ...], ...], ...]}, ...]}`.
    Tables are rendered as pipe-delimited rows after the page text.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def extract(self, data: bytes, mime_type: str) -> str:
        if not self._base_url or not self._api_key:
            raise ExtractionServiceError("Extraction service credentials are not configured")
        try:
            response = self._client.post(
                f"{self._base_url}/extract",
                content=data,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": mime_type,
                },
            )
        except httpx.HTTPError as exc:
            raise ExtractionServiceError(f"Extraction service unreachable: {exc}") from exc

        if response.status_code in (400, 415, 422):
            raise InvalidInput(f"Extraction service rejected document: {response.text[:200]}")
        if response.status_code != 200:
            raise ExtractionServiceError(
                f"Extraction service returned {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ExtractionServiceError("Extraction service returned invalid JSON") from exc
        return _render_service_payload(payload)


class Parser(ABC):
    """Base parser interface used by the extractor."""

    mime_types: tuple[str, ...] = ()
    method: ExtractionMethod = ExtractionMethod.LOCAL

    @abstractmethod
    def parse(self, data: bytes, mime_type: str) -> str:
        """Parse document bytes into normalized text."""


class ServiceParser(Parser):
    """Delegates to the remote extraction service."""

    method = ExtractionMethod.SERVICE

    def __init__(self, service: ExtractionService, mime_types: tuple[str, ...]) -> None:
        self._service = service
        self.mime_types = mime_types

    def parse(self, data: bytes, mime_type: str) -> str:
        return self._service.extract(data, mime_type)


class PypdfParser(Parser):
    """Pure in-process PDF text extraction; loses table structure."""

    mime_types = (PDF,)
    method = ExtractionMethod.FALLBACK

    def parse(self, data: bytes, mime_type: str) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            return "\n".join(page.extract_text() or "" for page in reader.pages)
        except Exception as exc:
            raise InvalidInput(f"Unreadable PDF: {exc}") from exc


class TextParser(Parser):
    """Plain text, markdown, CSV, and JSON."""

    mime_types = TEXT_TYPES

    def parse(self, data: bytes, mime_type: str) -> str:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidInput(f"Document is not valid UTF-8: {exc}") from exc
        if mime_type != "application/json":
            return text
        try:
            payload: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidInput(f"Malformed JSON: {exc}") from exc
        if isinstance(payload, dict):
            return json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2)
        return json.dumps(payload, ensure_ascii=False, indent=2)


class HtmlParser(Parser):
    mime_types = (HTML,)

    def parse(self, data: bytes, mime_type: str) -> str:
        from bs4 import BeautifulSoup

        soup = BeautifulSoup(data, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        lines = [line.strip() for line in soup.get_text("\n").splitlines()]
        return "\n".join(line for line in lines if line)


class DocxParser(Parser):
    mime_types = (DOCX,)

    def parse(self, data: bytes, mime_type: str) -> str:
        from docx import Document as open_docx

        try:
            document = open_docx(io.BytesIO(data))
            parts = [paragraph.text for paragraph in document.paragraphs if paragraph.text.strip()]
            for table in document.tables:
                for row in table.rows:
                    parts.append(" | ".join(cell.text.strip() for cell in row.cells))
        except Exception as exc:
            raise InvalidInput(f"Unreadable DOCX: {exc}") from exc
        return "\n".join(parts)


class XlsxParser(Parser):
    mime_types = (XLSX,)

    def parse(self, data: bytes, mime_type: str) -> str:
        from openpyxl import load_workbook

        sheets: list[str] = []
        try:
            workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
            try:
                for sheet in workbook.worksheets:
                    rows = [
                        " | ".join("" if value is None else str(value) for value in row)
                        for row in sheet.iter_rows(values_only=True)
                        if any(value is not None for value in row)
                    ]
                    sheets.append(f"# {sheet.title}\n" + "\n".join(rows))
            finally:
                workbook.close()
        except Exception as exc:
            raise InvalidInput(f"Unreadable XLSX: {exc}") from exc
        return "\n\n".join(sheets)


class PptxParser(Parser):
    mime_types = (PPTX,)

    def parse(self, data: bytes, mime_type: str) -> str:
        from pptx import Presentation

        slides: list[str] = []
        try:
            presentation = Presentation(io.BytesIO(data))
            for number, slide in enumerate(presentation.slides, start=1):
                texts = [
                    shape.text_frame.text
                    for shape in slide.shapes
                    if shape.has_text_frame and shape.text_frame.text.strip()
                ]
                slides.append(f"Slide {number}\n" + "\n".join(texts))
        except Exception as exc:
            raise InvalidInput(f"Unreadable PPTX: {exc}") from exc
        return "\n\n".join(slides)


class ParserRegistry:
    """Maps MIME type to the primary parser implementation."""

    def __init__(self, parsers: list[Parser]) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers:
            self.register(parser)

    @classmethod
    def default(cls, service: ExtractionService) -> "ParserRegistry":
        return cls(
            [
                ServiceParser(service, (PDF, *IMAGE_TYPES)),
                DocxParser(),
                XlsxParser(),
                PptxParser(),
                HtmlParser(),
                TextParser(),
            ]
        )

    def register(self, parser: Parser) -> None:
        for mime_type in parser.mime_types:
            self._parsers[mime_type.lower()] = parser

    def get(self, mime_type: str) -> Parser:
        parser = self._parsers.get(_base_mime(mime_type))
        if parser is None:
            raise InvalidInput(f"No parser registered for MIME type: {mime_type}")
        return parser

    def supported(self) -> list[str]:
        return sorted(self._parsers)


class PdfSplitter:
    """Splits oversized PDFs into page-contiguous sub-documents.

    Parts are first sized by page count, then any part still over
    `max_pdf_bytes` is halved by page range until it fits. A single page over
    the byte limit cannot be split and is rejected.
    """

    def __init__(self, config: ExtractionConfig) -> None:
        self.config = config

    def page_count(self, data: bytes) -> int:
        try:
            return len(PdfReader(io.BytesIO(data)).pages)
        except Exception as exc:
            raise InvalidInput(f"Unreadable PDF: {exc}") from exc

    def needs_split(self, data: bytes, page_count: int) -> bool:
        return page_count > self.config.max_pdf_pages or len(data) > self.config.max_pdf_bytes

    def split(self, data: bytes, page_count: int) -> list[bytes]:
        parts = -(-page_count // self.config.max_pdf_pages)
        if len(data) > self.config.max_pdf_bytes:
            parts = max(parts, -(-len(data) // self.config.max_pdf_bytes))
        parts = max(1, min(parts, page_count))
        pages_per_part = -(-page_count // parts)

        try:
            reader = PdfReader(io.BytesIO(data))
            outputs: list[bytes] = []
            for start in range(0, page_count, pages_per_part):
                stop = min(start + pages_per_part, page_count)
                outputs.extend(self._fit(reader, start, stop))
        except InvalidInput:
            raise
        except Exception as exc:
            raise InvalidInput(f"Unreadable PDF: {exc}") from exc
        return outputs

    def _fit(self, reader: PdfReader, start: int, stop: int) -> list[bytes]:
        part = _write_pages(reader, start, stop)
        if len(part) <= self.config.max_pdf_bytes:
            return [part]
        if stop - start == 1:
            raise InvalidInput(
                f"PDF page {start + 1} is {len(part)} bytes, over the"
                f" {self.config.max_pdf_bytes} byte limit"
            )
        middle = (start + stop) // 2
        return self._fit(reader, start, middle) + self._fit(reader, middle, stop)


def _write_pages(reader: PdfReader, start: int, stop: int) -> bytes:
    writer = PdfWriter()
    for page in reader.pages[start:stop]:
        writer.add_page(page)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class Extractor:
    """Converts uploaded bytes into plain text and reports the method used.

    Primary extraction is chosen by MIME type. Only PDFs have a fallback, and
    only for service failures: malformed input raises `InvalidInput` straight
    away regardless of type.
    """

    def __init__(
        self,
        parser_registry: ParserRegistry,
        config: ExtractionConfig | None = None,
        *,
        fallback: Parser | None = None,
    ) -> None:
        self._parser_registry = parser_registry
        self.config = config or ExtractionConfig()
        self._fallback = fallback or PypdfParser()
        self._splitter = PdfSplitter(self.config)

    def extract(
        self,
        data: bytes,
        mime_type: str,
        *,
        on_split: Callable[[int], None] | None = None,
    ) -> ExtractionResult:
        mime = _base_mime(mime_type)
        parser = self._parser_registry.get(mime)
        if mime != PDF:
            return ExtractionResult(text=self._extract_one(parser, data, mime), method=parser.method)

        page_count = self._splitter.page_count(data)
        if not self._splitter.needs_split(data, page_count):
            text, method = self._extract_pdf(parser, data)
            return ExtractionResult(text=text, method=method, page_count=page_count)

        parts = self._splitter.split(data, page_count)
        logger.info("extract.pdf_split", pages=page_count, parts=len(parts), size=len(data))
        if on_split is not None:
            on_split(len(parts))

        texts: list[str] = []
        methods: set[ExtractionMethod] = set()
        for part in parts:
            text, method = self._extract_pdf(parser, part)
            texts.append(text)
            methods.add(method)
        return ExtractionResult(
            text=PAGE_BREAK_MARKER.join(texts),
            method=_combined_method(methods),
            page_count=page_count,
            part_count=len(parts),
        )

    def _extract_pdf(self, parser: Parser, data: bytes) -> tuple[str, ExtractionMethod]:
        try:
            return parser.parse(data, PDF), parser.method
        except ExtractionServiceError as exc:
            if not self.config.fallback_enabled:
                raise ExtractionUnavailable(
                    f"PDF extraction failed and fallback is disabled: {exc.message}"
                ) from exc
            logger.warning("extract.fallback", reason=exc.message)
            return self._fallback.parse(data, PDF), self._fallback.method

    @staticmethod
    def _extract_one(parser: Parser, data: bytes, mime: str) -> str:
        try:
            return parser.parse(data, mime)
        except ExtractionServiceError as exc:
            raise ExtractionUnavailable(
                f"No extraction available for {mime}: {exc.message}"
            ) from exc


def _base_mime(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


def _combined_method(methods: set[ExtractionMethod]) -> ExtractionMethod:
    if ExtractionMethod.FALLBACK in methods:
        return ExtractionMethod.FALLBACK
    if ExtractionMethod.SERVICE in methods:
        return ExtractionMethod.SERVICE
    return ExtractionMethod.LOCAL


def _render_service_payload(payload: Any) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("text"), str):
        return payload["text"]
    if not isinstance(payload, dict) or not isinstance(payload.get("pages"), list):
        raise ExtractionServiceError("Extraction service returned an unexpected payload")

    pages: list[str] = []
    for page in payload["pages"]:
        lines = [str(page.get("text", ""))]
        for table in page.get("tables", []):
            lines.extend(" | ".join(str(cell) for cell in row) for row in table)
        pages.append("\n".join(line for line in lines if line))
    return PAGE_BREAK_MARKER.join(pages)
