"""Markdown chunker: heading-aware sections, paragraph packing, fixed-window fallback."""

from __future__ import annotations

import re

from engram.ingest.base import BaseChunker, TextChunk

# Matches H1-H6 heading lines: one or more '#' followed by a space.
_HEADING_RE = re.compile(r"^#+ ", re.MULTILINE)

_PARAGRAPH_BREAK = "\n\n"


class MarkdownChunker(BaseChunker):
    """Split Markdown on heading boundaries.

    Strategy:
    - Every heading line starts a new *section*; content before the first
      heading (preamble) is its own section.
    - A section within the target size is one chunk.
    - A larger section is packed paragraph by paragraph (blank-line separated)
      up to the target size. A paragraph larger than the target is split with
      ``_split_fixed_window()``.
    - Consecutive chunks of one section overlap: each chunk starts up to
      ``overlap_chars`` before the end of the previous one. Overlap never
      crosses a heading.
    """

    def chunk(self, content: str) -> list[TextChunk]:
        if not content.strip():
            return []

        line_starts = self._line_starts(content)
        chunks: list[TextChunk] = []
        seen: set[tuple[int, int, str]] = set()
        for sec_start, sec_end in self._split_sections(content):
            if sec_end - sec_start <= self.target_chars:
                ranges = [(sec_start, sec_end)]
            else:
                ranges = self._split_large_section(content, sec_start, sec_end)
            for start, end in ranges:
                chunk = self._make_chunk(content, line_starts, start, end)
                if chunk is None:
                    continue
                # Periodic text on one long line yields identical windows;
                # they would share a chunk id.
                key = (chunk.start_line, chunk.end_line, chunk.hash)
                if key in seen:
                    continue
                seen.add(key)
                chunks.append(chunk)
        return chunks

    def _split_sections(self, content: str) -> list[tuple[int, int]]:
        """Return (start, end) offsets of each heading-delimited section."""
        boundaries = [m.start() for m in _HEADING_RE.finditer(content)]
        if not boundaries or boundaries[0] != 0:
            boundaries.insert(0, 0)
        boundaries.append(len(content))
        return [
            (boundaries[i], boundaries[i + 1])
            for i in range(len(boundaries) - 1)
            if boundaries[i] < boundaries[i + 1]
        ]

    def _split_large_section(self, content: str, start: int, end: int) -> list[tuple[int, int]]:
        target = self.target_chars

        core: list[tuple[int, int]] = []
        current: tuple[int, int] | None = None
        for para_start, para_end in self._split_paragraphs(content, start, end):
            if para_end - para_start > target:
                if current is not None:
                    core.append(current)
                    current = None
                core.extend(self._split_fixed_window(content, para_start, para_end))
                continue
            if current is None:
                current = (para_start, para_end)
            elif para_end - current[0] <= target:
                current = (current[0], para_end)
            else:
                core.append(current)
                current = (para_start, para_end)
        if current is not None:
            core.append(current)

        overlapped: list[tuple[int, int]] = []
        for range_start, range_end in core:
            if overlapped:
                range_start = min(range_start, max(start, overlapped[-1][1] - self.overlap_chars))
            overlapped.append((range_start, range_end))
        return overlapped

    @staticmethod
    def _split_paragraphs(content: str, start: int, end: int) -> list[tuple[int, int]]:
        """Paragraph ranges in ``content[start:end]``; each keeps its trailing blank line."""
        ranges: list[tuple[int, int]] = []
        cursor = start
        while cursor < end:
            pos = content.find(_PARAGRAPH_BREAK, cursor, end)
            if pos == -1:
                ranges.append((cursor, end))
                break
            split_end = pos + len(_PARAGRAPH_BREAK)
            ranges.append((cursor, split_end))
            cursor = split_end
        return ranges
