"""Tests for IndexMaintainer: sync, rebuild on fingerprint change, removal."""

from __future__ import annotations

import os
import sqlite3

import pytest

from engram.db.repository import Repository
from engram.index.maintainer import IndexMaintainer, chunk_id
from engram.ingest.embeddings import StubEmbeddingProvider

DAILY = "memory/2026-02-13.md"


@pytest.fixture
def seeded(workspace):
    (workspace / "MEMORY.md").write_text(
        "# Cooking\n\nI love pasta with tomato sauce\n\n# Travel\n\nLisbon in spring",
        encoding="utf-8",
    )
    (workspace / DAILY).write_text("# Programming\n\nRust async with tokio", encoding="utf-8")
    return workspace


@pytest.fixture
def open_maintainer(seeded, db, files):
    opened: list[IndexMaintainer] = []

    def _open(provider) -> IndexMaintainer:
        m = IndexMaintainer(db, files, provider)
        opened.append(m)
        return m

    yield _open
    for m in opened:
        m.close()


@pytest.fixture
def reader(db):
    """Independent connection for inspecting index rows."""
    conn = db.connect()
    yield conn
    conn.close()


def _count(conn, sql: str, *args) -> int:
    return conn.execute(sql, args).fetchone()[0]


# ------------------------------------------------------------------
# chunk_id
# ------------------------------------------------------------------


def test_chunk_id_is_stable_and_model_sensitive():
    a = chunk_id("MEMORY.md", 1, 3, "abc", "stub/stub@8")
    assert a == chunk_id("MEMORY.md", 1, 3, "abc", "stub/stub@8")
    assert a != chunk_id("MEMORY.md", 1, 3, "abc", "stub/stub@16")
    assert a != chunk_id("MEMORY.md", 1, 4, "abc", "stub/stub@8")
    assert len(a) == 64


# ------------------------------------------------------------------
# sync
# ------------------------------------------------------------------


def test_first_sync_indexes_all_sources(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    report = m.sync()

    assert sorted(report.indexed) == ["MEMORY.md", DAILY]
    assert report.failed == []
    assert report.chunks_written == 3
    assert report.rebuilt is False

    repo = Repository(reader)
    assert repo.count_chunks() == 3
    assert repo.count_chunks(DAILY) == 1
    assert _count(reader, "SELECT COUNT(*) FROM chunks_fts") == 3
    assert _count(reader, "SELECT COUNT(*) FROM chunks_vec") == 3


def test_second_sync_is_idempotent(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    before = Repository(reader).list_chunk_ids()

    report = m.sync()
    assert report.indexed == []
    assert sorted(report.skipped) == ["MEMORY.md", DAILY]
    assert Repository(reader).list_chunk_ids() == before


def test_chunks_carry_fingerprint_label(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    models = {row[0] for row in reader.execute("SELECT model FROM chunks")}
    assert models == {"stub/stub@8"}


def test_edited_file_reindexed_with_cache_hits(open_maintainer, keyword_provider, seeded):
    m = open_maintainer(keyword_provider)
    m.sync()
    calls = keyword_provider.calls

    with (seeded / "MEMORY.md").open("a", encoding="utf-8") as f:
        f.write("\n\n# Music\n\nJazz records")
    report = m.sync()

    assert report.indexed == ["MEMORY.md"]
    # only the new section reaches the provider
    assert keyword_provider.calls == calls + 1


def test_touched_file_refreshes_snapshot_only(open_maintainer, keyword_provider, seeded, reader):
    m = open_maintainer(keyword_provider)
    m.sync()
    calls = keyword_provider.calls
    ids = Repository(reader).list_chunk_ids()

    path = seeded / DAILY
    st = path.stat()
    new_mtime = st.st_mtime_ns + 7_000_000_000
    os.utime(path, ns=(st.st_atime_ns, new_mtime))

    report = m.sync()
    assert DAILY in report.skipped
    assert keyword_provider.calls == calls
    assert Repository(reader).get_file(DAILY).mtime == new_mtime
    assert Repository(reader).list_chunk_ids() == ids


def test_deleted_file_leaves_no_orphans(open_maintainer, seeded, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    doomed = Repository(reader).list_chunk_ids(DAILY)

    (seeded / DAILY).unlink()
    report = m.sync()

    assert report.removed == [DAILY]
    assert Repository(reader).get_file(DAILY) is None
    assert _count(reader, "SELECT COUNT(*) FROM chunks WHERE path = ?", DAILY) == 0
    assert _count(reader, "SELECT COUNT(*) FROM chunks_fts WHERE path = ?", DAILY) == 0
    for cid in doomed:
        assert _count(reader, "SELECT COUNT(*) FROM chunks_vec WHERE chunk_id = ?", cid) == 0
    assert _count(reader, "SELECT COUNT(*) FROM chunks_vec") == 2


def test_transient_failure_marks_file_and_continues(open_maintainer, keyword_provider, reader):
    m = open_maintainer(keyword_provider)
    keyword_provider.fail = True
    report = m.sync()

    assert sorted(report.failed) == ["MEMORY.md", DAILY]
    assert report.indexed == []
    repo = Repository(reader)
    assert repo.list_files() == []
    assert repo.count_chunks() == 0

    keyword_provider.fail = False
    report = m.sync()
    assert sorted(report.indexed) == ["MEMORY.md", DAILY]


def test_sync_paths_only_touches_named_files(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    report = m.sync(paths=[DAILY])
    assert report.indexed == [DAILY]
    assert Repository(reader).get_file("MEMORY.md") is None


def test_sync_paths_ignores_non_memory_files(open_maintainer, seeded):
    (seeded / "notes.txt").write_text("not memory", encoding="utf-8")
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    report = m.sync(paths=["notes.txt", "memory/nested/2026-01-01.md"])
    assert (report.indexed, report.removed, report.failed) == ([], [], [])


def test_sync_paths_removes_missing_file(open_maintainer, seeded):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    (seeded / DAILY).unlink()
    report = m.sync(paths=[DAILY])
    assert report.removed == [DAILY]


def test_remove_file(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    report = m.remove_file("MEMORY.md")
    assert report.removed == ["MEMORY.md"]
    assert Repository(reader).count_chunks("MEMORY.md") == 0
    assert m.remove_file("MEMORY.md").removed == []


# ------------------------------------------------------------------
# Fingerprint changes and rebuild
# ------------------------------------------------------------------


def test_fresh_index_needs_no_rebuild(open_maintainer):
    assert open_maintainer(StubEmbeddingProvider(dims=8)).needs_rebuild() is False


def test_dimension_change_rebuilds(open_maintainer, reader):
    first = open_maintainer(StubEmbeddingProvider(dims=8))
    first.sync()
    old_ids = set(Repository(reader).list_chunk_ids())
    first.close()

    second = open_maintainer(StubEmbeddingProvider(dims=16))
    assert second.needs_rebuild() is True
    report = second.sync()

    assert report.rebuilt is True
    assert sorted(report.indexed) == ["MEMORY.md", DAILY]
    new_ids = set(Repository(reader).list_chunk_ids())
    assert len(new_ids) == 3
    assert new_ids.isdisjoint(old_ids)
    assert {row[0] for row in reader.execute("SELECT model FROM chunks")} == {"stub/stub@16"}
    assert second.status()["vec_dims"] == 16
    assert _count(reader, "SELECT COUNT(*) FROM chunks_vec") == 3


def test_model_change_rebuilds(open_maintainer, make_keyword_provider, reader):
    open_maintainer(make_keyword_provider(model_id="one")).sync()
    report = open_maintainer(make_keyword_provider(model_id="two")).sync()
    assert report.rebuilt is True
    models = {row[0] for row in reader.execute("SELECT model FROM chunks")}
    assert models == {"fake/two@9"}


def test_rebuild_reuses_cached_embeddings(open_maintainer, keyword_provider, reader):
    m = open_maintainer(keyword_provider)
    m.sync()
    ids = Repository(reader).list_chunk_ids()
    calls = keyword_provider.calls

    report = m.rebuild()
    assert report.rebuilt is True
    assert keyword_provider.calls == calls
    assert Repository(reader).list_chunk_ids() == ids


def test_status(open_maintainer):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    m.sync()
    status = m.status()
    assert status["files"] == 2
    assert status["chunks"] == 3
    assert status["cache_entries"] == 3
    assert status["fingerprint"] == "stub/stub@8"
    assert status["active_fingerprint"] == "stub/stub@8"
    assert status["vec_dims"] == 8
    assert status["last_indexed"] is not None


def test_index_file(open_maintainer, reader):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    report = m.index_file("MEMORY.md")
    assert report.reason == "index_file"
    assert report.indexed == ["MEMORY.md"]
    assert Repository(reader).count_chunks("MEMORY.md") == 2


# ------------------------------------------------------------------
# Per-file failures never abort a pass
# ------------------------------------------------------------------


def test_periodic_single_line_file_indexes(open_maintainer, seeded, reader):
    (seeded / "MEMORY.md").write_text("x " * 3000, encoding="utf-8")
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    report = m.sync()

    assert report.failed == []
    assert sorted(report.indexed) == ["MEMORY.md", DAILY]
    repo = Repository(reader)
    assert repo.count_chunks("MEMORY.md") >= 2
    assert repo.count_chunks(DAILY) == 1


def test_write_error_marks_file_failed_and_continues(open_maintainer, reader, monkeypatch):
    m = open_maintainer(StubEmbeddingProvider(dims=8))
    original = Repository.replace_file_chunks

    def failing(self, file, chunks):
        if file.path == "MEMORY.md":
            raise sqlite3.IntegrityError("UNIQUE constraint failed: chunks.id")
        return original(self, file, chunks)

    monkeypatch.setattr(Repository, "replace_file_chunks", failing)
    report = m.sync()

    assert report.failed == ["MEMORY.md"]
    assert report.indexed == [DAILY]
    repo = Repository(reader)
    assert repo.get_file("MEMORY.md") is None
    assert repo.count_chunks(DAILY) == 1

    monkeypatch.setattr(Repository, "replace_file_chunks", original)
    assert m.sync().indexed == ["MEMORY.md"]
