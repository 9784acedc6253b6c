"""Runtime watch: re-sync memory files as they change on disk."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path

from watchfiles import Change, watch

from engram.index.maintainer import IndexMaintainer, SyncReport
from engram.store.files import MemoryFileStore

logger = logging.getLogger(__name__)


class IndexWatcher:
    """Watches the workspace on a daemon thread and feeds debounced batches to the maintainer.

    Only ``MEMORY.md`` and ``memory/*.md`` trigger a sync, and only the paths
    that changed are synced.
    """

    def __init__(
        self,
        maintainer: IndexMaintainer,
        files: MemoryFileStore,
        debounce_ms: int = 1500,
    ) -> None:
        self._maintainer = maintainer
        self._files = files
        self.debounce_ms = debounce_ms
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="engram-index-watch", daemon=True)
        self._thread.start()
        logger.info("Watching %s (debounce %d ms)", self._files.workspace, self.debounce_ms)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def handle(self, changed: Iterable[str]) -> SyncReport | None:
        """Sync one batch of absolute changed paths. Errors are logged, never raised."""
        paths = sorted({p for p in (self._relative(c) for c in changed) if p is not None})
        if not paths:
            return None
        try:
            return self._maintainer.sync(paths=paths, reason="watch")
        except Exception:
            logger.exception("Watch-triggered sync failed for %s", paths)
            return None

    def _run(self) -> None:
        for changes in watch(
            self._files.workspace,
            watch_filter=self._filter,
            debounce=self.debounce_ms,
            stop_event=self._stop,
        ):
            self.handle(path for _, path in changes)

    def _filter(self, change: Change, path: str) -> bool:
        rel = self._relative(path)
        return rel is not None and self._files.source_for(rel) is not None

    def _relative(self, path: str) -> str | None:
        try:
            return self._files.relative(Path(path))
        except ValueError:
            return None
