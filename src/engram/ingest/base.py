"""Base chunker interface for memory source files."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from bisect import bisect_right
from dataclasses import dataclass

# 4 characters ≈ 1 token.
CHARS_PER_TOKEN = 4


@dataclass
class TextChunk:
    """A line-addressed slice of a source file."""

    text: str
    start_line: int  # 1-based
    end_line: int  # 1-based, inclusive
    hash: str


def text_hash(text: str) -> str:
    """SHA-256 hex digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()`` and work on character offsets into the
    original content; ``_make_chunk()`` turns an offset range into a
    TextChunk with line numbers, so every chunk stays addressable in the file.

    Token counting uses a 4-chars-per-token approximation; no external
    tokenizer dependency is required.
    """

    def __init__(self, chunk_tokens: int = 400, overlap_tokens: int = 80) -> None:
        if chunk_tokens < 1:
            raise ValueError("chunk_tokens must be >= 1")
        if not 0 <= overlap_tokens < chunk_tokens:
            raise ValueError("overlap_tokens must be in [0, chunk_tokens)")
        self.chunk_tokens = chunk_tokens
        self.overlap_tokens = overlap_tokens

    @property
    def target_chars(self) -> int:
        return self.chunk_tokens * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        return self.overlap_tokens * CHARS_PER_TOKEN

    @abstractmethod
    def chunk(self, content: str) -> list[TextChunk]:
        """Split *content* into ordered, line-addressed chunks.

        Returns an empty list for empty or whitespace-only input.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // CHARS_PER_TOKEN)

    def _split_fixed_window(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        """Split ``text[start:end]`` into fixed windows stepping by target - overlap.

        A window that does not reach *end* is cut back to its last space when
        one exists. The next window never starts past the previous one's end,
        so no characters are skipped.
        """
        target = self.target_chars
        step = max(1, target - self.overlap_chars)

        ranges: list[tuple[int, int]] = []
        cursor = start
        while cursor < end:
            window_end = min(cursor + target, end)
            split_end = window_end
            if window_end < end:
                last_space = text.rfind(" ", cursor, window_end)
                if last_space > cursor:
                    split_end = last_space
            ranges.append((cursor, split_end))
            if split_end >= end:
                break
            cursor = min(cursor + step, split_end)
        return ranges

    @staticmethod
    def _line_starts(content: str) -> list[int]:
        """Offsets at which each line of *content* begins."""
        starts = [0]
        pos = content.find("\n")
        while pos != -1:
            if pos + 1 < len(content):
                starts.append(pos + 1)
            pos = content.find("\n", pos + 1)
        return starts

    @staticmethod
    def _make_chunk(content: str, line_starts: list[int], start: int, end: int) -> TextChunk | None:
        """Build a TextChunk for ``content[start:end]`` trimmed of outer whitespace.

        Returns None when the range holds only whitespace.
        """
        raw = content[start:end]
        stripped = raw.strip()
        if not stripped:
            return None
        start += len(raw) - len(raw.lstrip())
        end = start + len(stripped)
        return TextChunk(
            text=stripped,
            start_line=bisect_right(line_starts, start),
            end_line=bisect_right(line_starts, end - 1),
            hash=text_hash(stripped),
        )
