import pytest

from source_query.ingestion import TextChunker


def reconstruct(chunks):
    """Stitch overlapping chunks back together using their offsets."""
    text = ""
    for chunk in chunks:
        assert chunk.start <= len(text), "gap between chunks"
        text = text[: chunk.start] + chunk.text
    return text


def test_short_text_is_single_chunk():
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
    text = "Admissions open for 2025. Apply by June."
    assert chunker.split(text) == [text]


def test_text_of_exactly_chunk_size_is_single_chunk():
    chunker = TextChunker(chunk_size=100, chunk_overlap=20)
    text = "x" * 100
    assert chunker.split(text) == [text]


def test_empty_text_has_no_chunks():
    assert TextChunker(chunk_size=100, chunk_overlap=20).split("") == []


def test_chunks_respect_size():
    chunker = TextChunker(chunk_size=200, chunk_overlap=50)
    text = " ".join(f"word{i}" for i in range(500))
    chunks = chunker.split(text)
    assert len(chunks) > 1
    assert all(len(c) <= 200 for c in chunks)


@pytest.mark.parametrize(
    "text",
    [
        "A" * 2500,
        " ".join(f"token{i}" for i in range(800)),
        "First paragraph.\n\nSecond paragraph is here.\nA line. " * 60,
    ],
)
def test_chunks_cover_text_without_gaps(text):
    chunker = TextChunker(chunk_size=300, chunk_overlap=60)
    chunks = chunker.chunk(text)
    assert chunks[0].start == 0
    assert chunks[-1].end == len(text)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start <= prev.end
        assert nxt.start > prev.start
    assert reconstruct(chunks) == text


def test_consecutive_chunks_overlap():
    chunker = TextChunker(chunk_size=200, chunk_overlap=50)
    text = " ".join(f"w{i}" for i in range(300))
    chunks = chunker.chunk(text)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev.end - nxt.start > 0


def test_prefers_sentence_boundaries():
    chunker = TextChunker(chunk_size=120, chunk_overlap=0)
    text = "This sentence is about admissions. " * 10
    chunks = chunker.split(text)
    assert all(c.endswith(". ") for c in chunks[:-1])


def test_chunking_is_deterministic():
    chunker = TextChunker(chunk_size=250, chunk_overlap=40)
    text = "Campus facilities include a library and labs. " * 40
    assert chunker.split(text) == chunker.split(text)
    assert TextChunker(250, 40).split(text) == chunker.split(text)


def test_invalid_overlap_rejected():
    with pytest.raises(ValueError):
        TextChunker(chunk_size=100, chunk_overlap=100)
