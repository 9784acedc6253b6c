"""Domain models for the memory index database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

# meta key holding the JSON fingerprint of the active index generation
FINGERPRINT_KEY = "embedding_fingerprint"


@dataclass
class SourceFile:
    path: str
    source: str  # long_term | daily
    hash: str
    mtime: int
    size: int


@dataclass(frozen=True)
class Fingerprint:
    """The embedding configuration that produced the current index generation."""

    provider: str
    model: str
    dims: int

    @property
    def label(self) -> str:
        """Compact form stored in chunks.model, e.g. ``stub/stub@64``."""
        return f"{self.provider}/{self.model}@{self.dims}"

    def to_json(self) -> str:
        return json.dumps({"provider": self.provider, "model": self.model, "dims": self.dims})

    @classmethod
    def from_json(cls, raw: str) -> Fingerprint | None:
        try:
            data = json.loads(raw)
            return cls(provider=str(data["provider"]), model=str(data["model"]), dims=int(data["dims"]))
        except (ValueError, KeyError, TypeError):
            return None


@dataclass
class Chunk:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    hash: str
    model: str
    text: str
    embedding: list[float] = field(default_factory=list)
    updated_at: int | None = None


@dataclass
class SearchResult:
    """A ranked search hit with its fused score and per-channel scores."""

    chunk_id: str
    path: str
    source: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    vector_score: float = 0.0
    text_score: float = 0.0
