"""Overlapping fixed-size text chunking."""
import math
from typing import List

from docuchat.models.document import Passage
from docuchat.utils.text_cleaner import clean_text


def estimate_token_count(text: str) -> int:
    """Approximate token count (roughly four characters per token)."""
    return math.ceil(len(text) / 4)


class TextChunker:
    """Splits extracted text into ordered, overlapping passages."""

    # Preferred window boundaries, strongest first
    _SEPARATORS = ("\n\n", "\n", ". ", " ")

    def __init__(self, chunk_size: int = 2048, chunk_overlap: int = 200):
        """
        Initialize the chunker.

        Args:
            chunk_size: Maximum passage length (in characters)
            chunk_overlap: Characters shared by consecutive passages
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def _window_end(self, text: str, start: int) -> int:
        """Pick where the window starting at ``start`` should end."""
        hard_end = start + self.chunk_size
        if hard_end >= len(text):
            return len(text)

        # Only accept a boundary in the second half of the window, and
        # always past the overlap so the next window moves forward.
        floor = start + max(self.chunk_overlap + 1, self.chunk_size // 2)
        window = text[start:hard_end]
        for separator in self._SEPARATORS:
            position = window.rfind(separator)
            if position == -1:
                continue
            end = start + position + len(separator)
            if floor <= end <= hard_end:
                return end

        return hard_end

    def chunk(self, text: str) -> List[Passage]:
        """
        Split text into passages with a trailing overlap.

        Consecutive passages share exactly ``chunk_overlap`` characters:
        the last characters of passage ``i`` are the first characters of
        passage ``i + 1``.

        Args:
            text: Extracted plain text

        Returns:
            Ordered list of passages; empty for blank input
        """
        text = clean_text(text or "")
        if not text:
            return []

        passages: List[Passage] = []
        start = 0
        while True:
            end = self._window_end(text, start)
            content = text[start:end]
            passages.append(
                Passage(
                    chunk_index=len(passages),
                    content=content,
                    token_count=estimate_token_count(content),
                )
            )
            if end >= len(text):
                break
            start = end - self.chunk_overlap

        return passages
