"""Agent-facing memory tools: ``memory_search`` and ``memory_get``.

Both return a ToolOutput and never raise; failures become ``is_error=True``
outputs the agent can read.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from engram.rag.searcher import HybridSearcher
from engram.store.files import DAILY_DIR

_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolOutput:
    content: str
    is_error: bool = False


class MemorySearchTool:
    """Hybrid search over long-term and daily memory."""

    def __init__(self, searcher: HybridSearcher, default_max_results: int = 6) -> None:
        self._searcher = searcher
        self.default_max_results = default_max_results

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="memory_search",
            description=(
                "Search through long-term memory using semantic and keyword search. "
                "Returns relevant memory chunks ranked by relevance."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query to find relevant memories",
                    },
                    "max_results": {
                        "type": "integer",
                        "description": f"Maximum number of results (default: {self.default_max_results})",
                        "default": self.default_max_results,
                    },
                },
                "required": ["query"],
            },
        )

    def execute(self, tool_input: dict[str, Any]) -> ToolOutput:
        query = tool_input.get("query")
        if not isinstance(query, str) or not query.strip():
            return ToolOutput("Missing 'query' field.", is_error=True)
        try:
            max_results = int(tool_input.get("max_results", self.default_max_results))
        except (TypeError, ValueError):
            return ToolOutput("'max_results' must be an integer.", is_error=True)

        try:
            results = self._searcher.search(query, max_results=max_results)
        except Exception as exc:
            return ToolOutput(f"Search failed: {exc}", is_error=True)

        if not results:
            return ToolOutput("No relevant memories found.")
        blocks = [
            f"## {r.path}:{r.start_line}-{r.end_line} (score: {r.score:.2f})\n{r.snippet}\n"
            for r in results
        ]
        return ToolOutput("\n".join(blocks))


class MemoryGetTool:
    """Read a memory file, or a line range of it."""

    def __init__(self, searcher: HybridSearcher) -> None:
        self._searcher = searcher

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="memory_get",
            description=(
                "Retrieve a memory file or a line range of it. Use 'MEMORY.md' for "
                "long-term memory, 'memory/YYYY-MM-DD.md' (or just 'YYYY-MM-DD') for a "
                "daily file. Combine with line numbers from memory_search results."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Workspace-relative path, e.g. 'MEMORY.md' or 'memory/2026-02-13.md'",
                    },
                    "from_line": {
                        "type": "integer",
                        "description": "First line to return, 1-based (default: 1)",
                        "default": 1,
                    },
                    "line_count": {
                        "type": "integer",
                        "description": "Number of lines to return (default: to end of file)",
                    },
                },
                "required": ["path"],
            },
        )

    def execute(self, tool_input: dict[str, Any]) -> ToolOutput:
        path = tool_input.get("path") or tool_input.get("key")
        if not isinstance(path, str) or not path.strip():
            return ToolOutput("Missing 'path' field.", is_error=True)
        path = path.strip()
        if _DATE_KEY_RE.match(path):
            path = f"{DAILY_DIR}/{path}.md"

        try:
            from_line = int(tool_input.get("from_line", 1))
            line_count = tool_input.get("line_count")
            line_count = None if line_count is None else int(line_count)
        except (TypeError, ValueError):
            return ToolOutput("'from_line' and 'line_count' must be integers.", is_error=True)

        try:
            return ToolOutput(self._searcher.get_range(path, from_line, line_count))
        except FileNotFoundError:
            return ToolOutput(f"No memory file at '{path}'.", is_error=True)
        except (ValueError, OSError) as exc:
            return ToolOutput(f"Failed to read '{path}': {exc}", is_error=True)
