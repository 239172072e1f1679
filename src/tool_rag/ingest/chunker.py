"""Fixed-size sliding-window chunking over whitespace-delimited words."""

from __future__ import annotations

from collections.abc import Iterator

from tool_rag.config import ChunkingConfig
from tool_rag.errors import InvalidInput
from tool_rag.types import Chunk


class ChunkSequence:
    """Lazy, restartable sequence of chunks for one document.

    Each call to `iter()` starts a fresh pass over the same words, so the
    pipeline can enumerate chunks once to count them and again to embed them
    without holding every chunk in memory.
    """

    def __init__(
        self, document_id: str, words: list[str], max_words: int, overlap_words: int
    ) -> None:
        self.document_id = document_id
        self._words = words
        self._max_words = max_words
        self._stride = max_words - overlap_words

    def __iter__(self) -> Iterator[Chunk]:
        words = self._words
        index = 0
        start = 0
        while start < len(words):
            window = words[start : start + self._max_words]
            yield Chunk(
                chunk_id=f"{self.document_id}-chunk-{index:04d}",
                document_id=self.document_id,
                sequence_index=index,
                text=" ".join(window),
                word_count=len(window),
            )
            if start + self._max_words >= len(words):
                break
            start += self._stride
            index += 1

    def __len__(self) -> int:
        if not self._words:
            return 0
        remaining = max(0, len(self._words) - self._max_words)
        return 1 + -(-remaining // self._stride)


class WordWindowChunker:
    """Splits extracted text into windows of at most `max_words` words.

    The window advances by `max_words - overlap_words`. Text shorter than the
    window yields exactly one chunk; empty text yields none. The final window
    may be shorter than `max_words`, and no window is emitted once the previous
    one already reached the last word.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()
        if self.config.max_words <= 0:
            raise InvalidInput("max_words must be positive")
        if self.config.overlap_words < 0:
            raise InvalidInput("overlap_words must not be negative")
        if self.config.overlap_words >= self.config.max_words:
            raise InvalidInput("overlap_words must be less than max_words")

    def chunks(self, document_id: str, text: str) -> ChunkSequence:
        return ChunkSequence(
            document_id,
            text.split(),
            self.config.max_words,
            self.config.overlap_words,
        )
