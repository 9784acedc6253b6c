"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

_BUSY_TIMEOUT_MS = 5_000


class Database:
    """Per-workspace SQLite index database with sqlite-vec vector search support.

    Every call to connect() returns a fresh connection. Readers open their own
    connection per query; WAL mode lets them run next to the single writer
    and see either the state before or after each committed transaction.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open a connection.

        Args:
            db_path: Path to the SQLite database file (created if missing,
                parent directories included).
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self, *, shared: bool = False) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        Args:
            shared: Allow the connection to be used from threads other than the
                one that opened it. The caller must serialize access (the index
                maintainer does so with its run lock).
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.db_path,
            timeout=_BUSY_TIMEOUT_MS / 1000,
            check_same_thread=not shared,
        )
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {_BUSY_TIMEOUT_MS}")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
