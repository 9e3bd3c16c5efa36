"""Overlapping fixed-size text chunker."""

from dataclasses import dataclass

from source_query.config import get_settings


@dataclass
class TextChunk:
    """A window of the source text with its offsets."""

    index: int
    text: str
    start: int
    end: int


class TextChunker:
    """
    Split text into overlapping character windows.

    Strategy:
    1. Take a window of at most `chunk_size` characters
    2. Pull the cut back to the last paragraph, line, sentence or word
       boundary in the second half of the window
    3. Start the next window `chunk_overlap` characters before the cut,
       nudged forward to a word start

    Every chunk is an exact slice of the input, so no character is dropped
    and the same text always yields the same chunks.
    """

    SEPARATORS = ("\n\n", "\n", ". ", " ")

    def __init__(
        self,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ):
        settings = get_settings()
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

    def split(self, text: str) -> list[str]:
        """Split *text* into ordered chunk strings."""
        return [chunk.text for chunk in self.chunk(text)]

    def chunk(self, text: str) -> list[TextChunk]:
        """
        Split *text* into chunks with offsets.

        Args:
            text: Extracted body text

        Returns:
            List of TextChunk, in order
        """
        if not text:
            return []

        return [
            TextChunk(index=i, text=text[start:end], start=start, end=end)
            for i, (start, end) in enumerate(self._spans(text))
        ]

    def _spans(self, text: str) -> list[tuple[int, int]]:
        length = len(text)
        if length <= self.chunk_size:
            return [(0, length)]

        spans = []
        start = 0
        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                end = self._find_break(text, start, end)
            spans.append((start, end))
            if end >= length:
                break
            start = self._next_start(text, start, end)

        return spans

    def _find_break(self, text: str, start: int, end: int) -> int:
        """Find the last separator in the second half of the window."""
        floor = start + self.chunk_size // 2
        for sep in self.SEPARATORS:
            idx = text.rfind(sep, floor, end)
            if idx != -1:
                return idx + len(sep)
        return end

    def _next_start(self, text: str, start: int, end: int) -> int:
        """Start of the next window, overlapping the previous one."""
        if self.chunk_overlap == 0:
            return end
        lo = max(end - self.chunk_overlap, start + 1)
        idx = text.find(" ", lo, end)
        if idx != -1 and idx + 1 < end:
            return idx + 1
        return lo


# Singleton chunker instance
_chunker = None


def get_chunker() -> TextChunker:
    """Get the singleton chunker instance."""
    global _chunker
    if _chunker is None:
        _chunker = TextChunker()
    return _chunker
