"""Exception taxonomy for the memory index and consolidation engine.

Everything except ConfigurationError is recovered locally by the component
that raises it: the caller sees degraded-but-correct behaviour, not a crash.
"""

from __future__ import annotations


class EngramError(Exception):
    """Base class for all engram errors."""


class TransientProviderError(EngramError):
    """An embedding or LLM call failed or timed out.

    The affected file or consolidation run is marked failed and retried on the
    next scheduled cycle, never inline.
    """


class SchemaMismatchError(EngramError):
    """The vector table is missing or sized for a different dimension."""

    def __init__(self, expected: int, actual: int | None) -> None:
        self.expected = expected
        self.actual = actual
        found = "no vector table" if actual is None else f"float[{actual}]"
        super().__init__(f"vector table mismatch: expected float[{expected}], found {found}")


class QueryParseError(EngramError):
    """The lexical index rejected the query syntax (e.g. unbalanced quotes)."""


class CorruptChunkError(EngramError):
    """A stored chunk embedding could not be decoded."""

    def __init__(self, chunk_id: str, reason: str) -> None:
        self.chunk_id = chunk_id
        super().__init__(f"chunk {chunk_id!r} has an unreadable embedding: {reason}")


class ConsolidationLlmError(EngramError):
    """The consolidation LLM call failed; the curated note is left untouched."""


class ConfigurationError(EngramError):
    """No usable embedding provider (or other startup configuration) is available."""
