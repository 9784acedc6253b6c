"""Index maintainer: the single writer of index rows and meta.

Keeps the dual index (chunks + FTS5 + sqlite-vec) in step with the memory
files. Every sync, rebuild and consolidation pass runs under one re-entrant
run lock; inside a pass each file is written in its own transaction with
embeddings computed beforehand, so readers never wait on provider latency and
never see a file half-updated.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from engram.db.connection import Database
from engram.db.models import Chunk, Fingerprint
from engram.db.repository import Repository
from engram.db.schema import initialize
from engram.db.vectors import current_vec_dims, drop_vec_table, ensure_vec_table
from engram.errors import TransientProviderError
from engram.index.snapshot import FileSnapshotTracker, FileStatus
from engram.ingest.embeddings import EmbeddingCache, EmbeddingProvider, fingerprint_of
from engram.ingest.markdown import MarkdownChunker
from engram.store.files import MemoryFileStore

logger = logging.getLogger(__name__)


def chunk_id(path: str, start_line: int, end_line: int, content_hash: str, model: str) -> str:
    """Stable id; changes whenever the text or the embedding configuration changes."""
    key = f"{path}\x00{start_line}\x00{end_line}\x00{content_hash}\x00{model}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass
class SyncReport:
    """Outcome of one maintenance pass (paths are workspace-relative)."""

    reason: str
    indexed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    rebuilt: bool = False
    chunks_written: int = 0


class IndexMaintainer:
    """Owns the writer connection and the run lock for one memory space."""

    def __init__(
        self,
        db: Database,
        files: MemoryFileStore,
        provider: EmbeddingProvider,
        chunker: MarkdownChunker | None = None,
    ) -> None:
        self._files = files
        self._provider = provider
        self._chunker = chunker or MarkdownChunker()
        self.run_lock = threading.RLock()

        self._conn = db.connect(shared=True)
        initialize(self._conn)
        self._repo = Repository(self._conn)
        self._tracker = FileSnapshotTracker(self._repo, files)
        self.cache = EmbeddingCache(self._repo, provider)

    @property
    def fingerprint(self) -> Fingerprint:
        return fingerprint_of(self._provider)

    def close(self) -> None:
        with self.run_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def needs_rebuild(self) -> bool:
        """True if the index was built by a different embedding configuration."""
        with self.run_lock:
            stored = self._repo.get_fingerprint()
            if stored is None:
                return self._repo.count_chunks() > 0
            return stored != self.fingerprint

    def sync(self, paths: Iterable[str] | None = None, reason: str = "scan") -> SyncReport:
        """Bring the index in line with the workspace.

        Args:
            paths: Workspace-relative paths to look at; None scans every source
                file and removes snapshots of files that no longer exist.
            reason: Label recorded in the report and logs.
        """
        with self.run_lock:
            report = SyncReport(reason=reason)
            if self._prepare(force=False):
                report.rebuilt = True
                paths = None

            if paths is None:
                targets = self._files.list_sources()
                removals = self._tracker.stale_paths(p for p, _ in targets)
            else:
                targets, removals = self._classify(paths)

            for rel_path, source in targets:
                self._sync_file(rel_path, source, report)
            for rel_path in removals:
                self._remove(rel_path, report)

            logger.info(
                "Index sync (%s): %d indexed, %d skipped, %d removed, %d failed%s",
                reason,
                len(report.indexed),
                len(report.skipped),
                len(report.removed),
                len(report.failed),
                ", full rebuild" if report.rebuilt else "",
            )
            return report

    def index_file(self, path: str) -> SyncReport:
        return self.sync(paths=[path], reason="index_file")

    def remove_file(self, path: str) -> SyncReport:
        with self.run_lock:
            report = SyncReport(reason="remove_file")
            self._remove(path, report)
            return report

    def rebuild(self) -> SyncReport:
        """Drop every index row and re-index all source files."""
        with self.run_lock:
            self._prepare(force=True)
            report = self.sync(reason="rebuild")
            report.rebuilt = True
            return report

    def status(self) -> dict[str, Any]:
        with self.run_lock:
            stored = self._repo.get_fingerprint()
            return {
                "files": len(self._repo.list_files()),
                "chunks": self._repo.count_chunks(),
                "cache_entries": self._repo.count_cache_entries(),
                "fingerprint": stored.label if stored else None,
                "active_fingerprint": self.fingerprint.label,
                "vec_dims": current_vec_dims(self._conn),
                "last_indexed": self._repo.get_meta("last_indexed"),
            }

    # ------------------------------------------------------------------
    # Internals (run lock held)
    # ------------------------------------------------------------------

    def _prepare(self, force: bool) -> bool:
        """Reconcile fingerprint and vec table with the active provider.

        Returns:
            True if every index row was cleared and a full re-index is due.
        """
        rebuild = force or self.needs_rebuild()
        if rebuild:
            logger.info("Embedding configuration changed to %s; rebuilding index", self.fingerprint.label)
            drop_vec_table(self._conn)

        recreated = ensure_vec_table(self._conn, self.fingerprint.dims)
        if recreated and not rebuild and self._repo.count_chunks() > 0:
            # Vector rows were lost with the old table; re-embed everything.
            rebuild = True

        if rebuild:
            self._repo.clear_index()
        self._repo.set_fingerprint(self.fingerprint)
        return rebuild

    def _classify(self, paths: Iterable[str]) -> tuple[list[tuple[str, str]], list[str]]:
        targets: list[tuple[str, str]] = []
        removals: list[str] = []
        for path in dict.fromkeys(p.replace("\\", "/") for p in paths):
            source = self._files.source_for(path)
            if source is None:
                logger.debug("Ignoring non-memory path %s", path)
                continue
            if self._files.resolve(path).is_file():
                targets.append((path, source))
            else:
                removals.append(path)
        return targets, removals

    def _sync_file(self, rel_path: str, source: str, report: SyncReport) -> None:
        try:
            check = self._tracker.check(rel_path, source)
        except FileNotFoundError:
            self._remove(rel_path, report)
            return

        if check.status is FileStatus.UNCHANGED:
            report.skipped.append(rel_path)
            return
        if check.status is FileStatus.TOUCHED:
            self._repo.upsert_file(check.snapshot)
            report.skipped.append(rel_path)
            return

        try:
            chunks = self._build_chunks(rel_path, source, check.content or "")
        except TransientProviderError as exc:
            logger.warning("Embedding failed for %s; will retry next cycle: %s", rel_path, exc)
            report.failed.append(rel_path)
            return

        try:
            self._repo.replace_file_chunks(check.snapshot, chunks)
        except sqlite3.DatabaseError as exc:
            logger.error("Could not write index rows for %s: %s", rel_path, exc)
            report.failed.append(rel_path)
            return
        report.indexed.append(rel_path)
        report.chunks_written += len(chunks)

    def _build_chunks(self, rel_path: str, source: str, content: str) -> list[Chunk]:
        label = self.fingerprint.label
        chunks: list[Chunk] = []
        for piece in self._chunker.chunk(content):
            chunks.append(
                Chunk(
                    id=chunk_id(rel_path, piece.start_line, piece.end_line, piece.hash, label),
                    path=rel_path,
                    source=source,
                    start_line=piece.start_line,
                    end_line=piece.end_line,
                    hash=piece.hash,
                    model=label,
                    text=piece.text,
                    embedding=self.cache.embed(piece.text),
                )
            )
        return chunks

    def _remove(self, rel_path: str, report: SyncReport) -> None:
        if self._repo.get_file(rel_path) is None and self._repo.count_chunks(rel_path) == 0:
            return
        self._repo.delete_file(rel_path)
        report.removed.append(rel_path)
