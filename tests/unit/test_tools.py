"""Tests for the memory_search / memory_get agent tools."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from engram.db.models import SearchResult
from engram.index.maintainer import IndexMaintainer
from engram.ingest.embeddings import StubEmbeddingProvider
from engram.rag.searcher import HybridSearcher
from engram.tools import MemoryGetTool, MemorySearchTool


@pytest.fixture
def searcher(workspace, db, files):
    (workspace / "MEMORY.md").write_text(
        "# Cooking\n\nI love pasta with tomato sauce\n", encoding="utf-8"
    )
    (workspace / "memory" / "2026-02-13.md").write_text(
        "# Programming\n\nRust async with tokio\n", encoding="utf-8"
    )
    provider = StubEmbeddingProvider(dims=8)
    maintainer = IndexMaintainer(db, files, provider)
    maintainer.sync()
    yield HybridSearcher(db, provider, files)
    maintainer.close()


def _result(path: str, score: float, snippet: str) -> SearchResult:
    return SearchResult(
        chunk_id=f"id-{path}",
        path=path,
        source="daily",
        start_line=1,
        end_line=3,
        score=score,
        snippet=snippet,
    )


# ------------------------------------------------------------------
# memory_search
# ------------------------------------------------------------------


def test_search_definition():
    definition = MemorySearchTool(MagicMock(), default_max_results=4).definition()
    assert definition.name == "memory_search"
    assert definition.input_schema["required"] == ["query"]
    assert definition.input_schema["properties"]["max_results"]["default"] == 4


def test_search_formats_hits(searcher):
    output = MemorySearchTool(searcher).execute({"query": "tokio"})
    assert output.is_error is False
    assert output.content == (
        "## memory/2026-02-13.md:1-3 (score: 1.00)\n# Programming\n\nRust async with tokio\n"
    )


def test_search_joins_blocks_with_blank_line():
    fake = MagicMock()
    fake.search.return_value = [_result("a.md", 0.9, "first"), _result("b.md", 0.456, "second")]
    output = MemorySearchTool(fake).execute({"query": "x", "max_results": "2"})

    assert output.content == (
        "## a.md:1-3 (score: 0.90)\nfirst\n\n## b.md:1-3 (score: 0.46)\nsecond\n"
    )
    fake.search.assert_called_once_with("x", max_results=2)


def test_search_no_hits(searcher):
    output = MemorySearchTool(searcher).execute({"query": "quantum chromodynamics"})
    assert output.content == "No relevant memories found."
    assert output.is_error is False


@pytest.mark.parametrize("tool_input", [{}, {"query": ""}, {"query": "  "}, {"query": 42}])
def test_search_missing_query(tool_input):
    output = MemorySearchTool(MagicMock()).execute(tool_input)
    assert output.is_error is True
    assert output.content == "Missing 'query' field."


def test_search_bad_max_results():
    output = MemorySearchTool(MagicMock()).execute({"query": "x", "max_results": "many"})
    assert output.is_error is True


def test_search_errors_become_outputs():
    fake = MagicMock()
    fake.search.side_effect = RuntimeError("database is locked")
    output = MemorySearchTool(fake).execute({"query": "x"})
    assert output.is_error is True
    assert "database is locked" in output.content


# ------------------------------------------------------------------
# memory_get
# ------------------------------------------------------------------


def test_get_definition():
    definition = MemoryGetTool(MagicMock()).definition()
    assert definition.name == "memory_get"
    assert definition.input_schema["required"] == ["path"]


def test_get_whole_file(searcher):
    output = MemoryGetTool(searcher).execute({"path": "MEMORY.md"})
    assert output.content == "# Cooking\n\nI love pasta with tomato sauce"


def test_get_line_range(searcher):
    output = MemoryGetTool(searcher).execute({"path": "MEMORY.md", "from_line": 3, "line_count": 1})
    assert output.content == "I love pasta with tomato sauce"


def test_get_accepts_date_shorthand(searcher):
    output = MemoryGetTool(searcher).execute({"key": "2026-02-13"})
    assert output.is_error is False
    assert "tokio" in output.content


def test_get_missing_file(searcher):
    output = MemoryGetTool(searcher).execute({"path": "2025-01-01"})
    assert output.is_error is True
    assert output.content == "No memory file at 'memory/2025-01-01.md'."


def test_get_rejects_escape(searcher):
    output = MemoryGetTool(searcher).execute({"path": "../etc/passwd"})
    assert output.is_error is True
    assert "escapes the workspace" in output.content


def test_get_missing_path():
    output = MemoryGetTool(MagicMock()).execute({})
    assert output.is_error is True
    assert output.content == "Missing 'path' field."


def test_get_bad_line_numbers(searcher):
    output = MemoryGetTool(searcher).execute({"path": "MEMORY.md", "from_line": "first"})
    assert output.is_error is True
