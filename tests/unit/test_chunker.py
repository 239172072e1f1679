import pytest

from tool_rag.config import ChunkingConfig
from tool_rag.errors import InvalidInput
from tool_rag.ingest.chunker import WordWindowChunker


def _words(count: int) -> list[str]:
    return [f"w{i}" for i in range(count)]


def test_chunker_word_bounds_and_reconstruction() -> None:
    words = _words(23)
    chunker = WordWindowChunker(ChunkingConfig(max_words=5, overlap_words=2))

    chunks = list(chunker.chunks("doc-1", " ".join(words)))

    assert len(chunks) == 7
    assert all(chunk.word_count <= 5 for chunk in chunks)
    rebuilt = chunks[0].text.split()
    for chunk in chunks[1:]:
        rebuilt.extend(chunk.text.split()[2:])
    assert rebuilt == words


def test_chunker_without_overlap_partitions_words() -> None:
    words = _words(12)
    chunker = WordWindowChunker(ChunkingConfig(max_words=5))

    chunks = list(chunker.chunks("doc-1", " ".join(words)))

    assert [chunk.word_count for chunk in chunks] == [5, 5, 2]
    assert [word for chunk in chunks for word in chunk.text.split()] == words
    assert [chunk.sequence_index for chunk in chunks] == [0, 1, 2]
    assert chunks[1].chunk_id == "doc-1-chunk-0001"


def test_short_text_yields_exactly_one_chunk() -> None:
    chunks = list(WordWindowChunker().chunks("doc-1", "only a few words here"))

    assert len(chunks) == 1
    assert chunks[0].text == "only a few words here"
    assert chunks[0].word_count == 5


def test_empty_text_yields_no_chunks() -> None:
    assert list(WordWindowChunker().chunks("doc-1", "  \n\t ")) == []


def test_chunk_sequence_is_lazy_and_restartable() -> None:
    sequence = WordWindowChunker(ChunkingConfig(max_words=4, overlap_words=1)).chunks(
        "doc-1", " ".join(_words(10))
    )

    first_pass = list(sequence)
    second_pass = list(sequence)

    assert first_pass == second_pass
    assert len(sequence) == len(first_pass) == 3


@pytest.mark.parametrize(
    ("max_words", "overlap_words"),
    [(0, 0), (-3, 0), (5, 5), (5, 7), (5, -1)],
)
def test_invalid_window_rejected(max_words: int, overlap_words: int) -> None:
    with pytest.raises(InvalidInput):
        WordWindowChunker(ChunkingConfig(max_words=max_words, overlap_words=overlap_words))
