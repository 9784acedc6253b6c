"""Dimension-aware sqlite-vec virtual table management.

The vector table's row width is fixed at creation time, so it is created
lazily and dropped/recreated whenever the dimension recorded in ``meta``
(``vec_dims``) no longer matches the active embedding provider. Losing its rows
is acceptable: the index maintainer rebuilds them from source.
"""

from __future__ import annotations

import logging
import sqlite3

from engram.errors import SchemaMismatchError

logger = logging.getLogger(__name__)

VEC_TABLE = "chunks_vec"
VEC_DIMS_KEY = "vec_dims"


def vec_table_exists(conn: sqlite3.Connection) -> bool:
    """Return True if the chunks_vec virtual table exists."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (VEC_TABLE,)
    ).fetchone()
    return row is not None


def current_vec_dims(conn: sqlite3.Connection) -> int | None:
    """Return the dimension the vector table was created with, or None if absent."""
    if not vec_table_exists(conn):
        return None
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (VEC_DIMS_KEY,)).fetchone()
    if row is None:
        return None
    try:
        return int(row[0])
    except ValueError:
        return None


def verify_vec_table(conn: sqlite3.Connection, dimensions: int) -> None:
    """Raise SchemaMismatchError unless chunks_vec exists with *dimensions* columns."""
    actual = current_vec_dims(conn)
    if actual != dimensions:
        raise SchemaMismatchError(expected=dimensions, actual=actual)


def drop_vec_table(conn: sqlite3.Connection) -> None:
    """Drop chunks_vec and forget its recorded dimension."""
    conn.execute(f"DROP TABLE IF EXISTS {VEC_TABLE}")
    conn.execute("DELETE FROM meta WHERE key = ?", (VEC_DIMS_KEY,))
    conn.commit()


def ensure_vec_table(conn: sqlite3.Connection, dimensions: int) -> bool:
    """Make sure chunks_vec exists with *dimensions* columns.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        dimensions: Embedding vector dimensions of the active provider.

    Returns:
        True if the table was (re)created, False if it already matched.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    try:
        verify_vec_table(conn, dimensions)
        return False
    except SchemaMismatchError as exc:
        logger.info("Recreating %s: %s", VEC_TABLE, exc)

    conn.execute(f"DROP TABLE IF EXISTS {VEC_TABLE}")
    conn.execute(
        f"CREATE VIRTUAL TABLE {VEC_TABLE} USING vec0("
        f"chunk_id TEXT PRIMARY KEY, embedding float[{dimensions}] distance_metric=cosine)"
    )
    conn.execute(
        """
        INSERT INTO meta (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (VEC_DIMS_KEY, str(dimensions)),
    )
    conn.commit()
    return True
