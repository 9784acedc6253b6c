"""Shared pytest fixtures."""

from __future__ import annotations

import re

import pytest

from engram.db.connection import Database
from engram.db.schema import initialize
from engram.store.files import MemoryFileStore


class KeywordEmbeddingProvider:
    """Deterministic *semantic* fake: a bag-of-words over a fixed vocabulary.

    Texts sharing vocabulary words get a positive cosine similarity; texts
    with no vocabulary words map to a small constant bias vector. ``calls``
    counts real embed() invocations, for cache assertions.
    """

    VOCAB = ("pasta", "tomato", "sauce", "cooking", "rust", "tokio", "async", "programming")

    provider_id = "fake"
    is_semantic = True

    def __init__(self, model_id: str = "keywords", dims: int | None = None) -> None:
        self.model_id = model_id
        self._dims = dims or len(self.VOCAB) + 1
        self.provider_key = f"fake#{self._dims}"
        self.calls = 0
        self.fail = False

    def dims(self) -> int:
        return self._dims

    def embed(self, text: str) -> list[float]:
        from engram.errors import TransientProviderError

        if self.fail:
            raise TransientProviderError("fake provider unavailable")
        self.calls += 1
        words = re.findall(r"[a-z]+", text.lower())
        vector = [float(words.count(w)) for w in self.VOCAB]
        vector.append(0.1)
        vector.extend([0.0] * (self._dims - len(vector)))
        return vector[: self._dims]


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def workspace(tmp_path):
    """Empty memory workspace directory."""
    ws = tmp_path / "workspace"
    (ws / "memory").mkdir(parents=True)
    return ws


@pytest.fixture
def files(workspace):
    return MemoryFileStore(workspace)


@pytest.fixture
def db(workspace):
    return Database(workspace / ".engram" / "index.db")


@pytest.fixture
def keyword_provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def make_keyword_provider():
    """Factory for extra fake providers (e.g. a second model id)."""
    return KeywordEmbeddingProvider
