"""Tests for Database connection layer."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from engram.db.connection import Database


def test_connect_creates_file_and_parents(tmp_path):
    db_path = tmp_path / ".engram" / "index.db"
    db = Database(db_path)
    conn = db.connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_busy_timeout_set(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
    conn.close()
    assert timeout == 5000


def test_row_factory_set(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_each_connect_returns_new_connection(tmp_path):
    db = Database(tmp_path / "index.db")
    a = db.connect()
    b = db.connect()
    try:
        assert a is not b
    finally:
        a.close()
        b.close()


def test_shared_connection_usable_from_other_thread(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect(shared=True)
    result: list[int] = []

    def worker():
        result.append(conn.execute("SELECT 1").fetchone()[0])

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    conn.close()
    assert result == [1]


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / "index.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    # Connection should be closed; further use raises ProgrammingError
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / "index.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        result = conn.execute("SELECT 1").fetchone()[0]
    assert result == 1
