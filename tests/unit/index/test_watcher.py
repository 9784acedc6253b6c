"""Tests for IndexWatcher batch handling and path filtering."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from watchfiles import Change

from engram.index.maintainer import IndexMaintainer
from engram.index.watcher import IndexWatcher
from engram.ingest.embeddings import StubEmbeddingProvider


@pytest.fixture
def maintainer(db, files):
    m = IndexMaintainer(db, files, StubEmbeddingProvider(dims=8))
    yield m
    m.close()


def test_handle_syncs_changed_memory_files(maintainer, files, workspace):
    daily = workspace / "memory" / "2026-03-01.md"
    daily.write_text("# Day\n\nwatched note", encoding="utf-8")
    watcher = IndexWatcher(maintainer, files)

    report = watcher.handle([str(daily), str(daily)])

    assert report is not None
    assert report.reason == "watch"
    assert report.indexed == ["memory/2026-03-01.md"]


def test_handle_removes_deleted_files(maintainer, files, workspace):
    note = workspace / "MEMORY.md"
    note.write_text("# Long term\n\nkeep me", encoding="utf-8")
    maintainer.sync()
    note.unlink()

    report = IndexWatcher(maintainer, files).handle([str(note)])
    assert report.removed == ["MEMORY.md"]


def test_handle_ignores_paths_outside_workspace(maintainer, files, tmp_path):
    outside = tmp_path / "elsewhere.md"
    outside.write_text("x", encoding="utf-8")
    assert IndexWatcher(maintainer, files).handle([str(outside)]) is None


def test_handle_logs_and_swallows_sync_errors(files, workspace, caplog):
    broken = MagicMock()
    broken.sync.side_effect = RuntimeError("disk full")
    watcher = IndexWatcher(broken, files)

    assert watcher.handle([str(workspace / "MEMORY.md")]) is None
    assert "Watch-triggered sync failed" in caplog.text


def test_filter_accepts_only_memory_sources(maintainer, files, workspace):
    watcher = IndexWatcher(maintainer, files)
    assert watcher._filter(Change.modified, str(workspace / "MEMORY.md")) is True
    assert watcher._filter(Change.added, str(workspace / "memory" / "2026-01-01.md")) is True
    assert watcher._filter(Change.modified, str(workspace / "notes.md")) is False
    assert watcher._filter(Change.modified, str(workspace / "memory" / "x.txt")) is False
    assert watcher._filter(Change.modified, str(workspace / ".engram" / "index.db")) is False


def test_not_running_until_started(maintainer, files):
    watcher = IndexWatcher(maintainer, files, debounce_ms=50)
    assert watcher.running is False
    watcher.stop()  # no thread yet
    assert watcher.running is False
