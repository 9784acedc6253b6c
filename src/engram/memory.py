"""MemorySpace: one workspace's memory files, index, search and consolidation wired together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from engram.config import EngramConfig, load_config
from engram.consolidate.hippocampus import (
    ConsolidationReport,
    ConsolidationScheduler,
    HippocampusConsolidator,
    LiteLLMCompleter,
    LlmCapability,
)
from engram.db.connection import Database
from engram.db.models import SearchResult
from engram.index.maintainer import IndexMaintainer, SyncReport
from engram.index.watcher import IndexWatcher
from engram.ingest.embeddings import EmbeddingProvider, resolve_provider
from engram.ingest.markdown import MarkdownChunker
from engram.rag import llm_client
from engram.rag.searcher import HybridSearcher
from engram.store.files import MemoryFileStore
from engram.tools import MemoryGetTool, MemorySearchTool

logger = logging.getLogger(__name__)


class MemorySpace:
    """Facade over a single memory workspace.

    Construction resolves the embedding provider (raising ConfigurationError
    when none is usable) and opens the index; ``start()`` runs the startup
    scan and launches the watcher and consolidation scheduler.
    """

    def __init__(
        self,
        workspace: Path,
        config: EngramConfig | None = None,
        provider: EmbeddingProvider | None = None,
        llm: LlmCapability | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.config = config or load_config(self.workspace)
        cfg = self.config

        self.files = MemoryFileStore(self.workspace)
        self.provider = provider or resolve_provider(cfg.embedding)
        self.db = Database(self.files.workspace / cfg.index.db_path)

        chunker = MarkdownChunker(
            chunk_tokens=cfg.chunking.chunk_tokens,
            overlap_tokens=cfg.chunking.overlap_tokens,
        )
        self.maintainer = IndexMaintainer(self.db, self.files, self.provider, chunker)
        self.searcher = HybridSearcher(self.db, self.provider, self.files, cfg.search)

        if llm is None and not llm_client.has_api_key(cfg.consolidation.model):
            logger.warning(
                "No API key set for consolidation model %s; consolidation runs will fail until it is set",
                cfg.consolidation.model,
            )
        completer = llm or LiteLLMCompleter(
            model=cfg.consolidation.model,
            timeout=cfg.consolidation.timeout,
            max_tokens=cfg.consolidation.max_tokens,
        )
        self.consolidator = HippocampusConsolidator(
            self.files, self.maintainer, completer, lookback_days=cfg.consolidation.lookback_days
        )
        self.watcher = IndexWatcher(self.maintainer, self.files, debounce_ms=cfg.watch.debounce_ms)
        self.scheduler = ConsolidationScheduler(
            self.consolidator, interval_hours=cfg.consolidation.interval_hours
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, *, watch: bool | None = None, schedule: bool = True) -> SyncReport:
        """Run the startup scan, then start background watching and consolidation."""
        report = self.maintainer.sync(reason="startup")
        if self.config.watch.enabled if watch is None else watch:
            self.watcher.start()
        if schedule:
            self.scheduler.start()
        return report

    def close(self) -> None:
        self.watcher.stop()
        self.scheduler.stop()
        self.maintainer.close()

    def __enter__(self) -> MemorySpace:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def search(
        self, query: str, max_results: int | None = None, min_score: float | None = None
    ) -> list[SearchResult]:
        return self.searcher.search(query, max_results=max_results, min_score=min_score)

    def get_range(self, path: str, from_line: int = 1, line_count: int | None = None) -> str:
        return self.searcher.get_range(path, from_line, line_count)

    def sync(self, paths: list[str] | None = None, reason: str = "manual") -> SyncReport:
        return self.maintainer.sync(paths=paths, reason=reason)

    def consolidate(self) -> ConsolidationReport:
        return self.consolidator.consolidate()

    def status(self) -> dict[str, Any]:
        return self.maintainer.status()

    def tools(self) -> list[MemorySearchTool | MemoryGetTool]:
        return [
            MemorySearchTool(self.searcher, default_max_results=self.config.search.max_results),
            MemoryGetTool(self.searcher),
        ]
