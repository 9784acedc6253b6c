"""Repository pattern for all memory index database operations.

Single interface for: meta, file snapshots, chunks, FTS5 search, vec search
and the embedding cache. The vector table itself is managed by
engram.db.vectors (ensure_vec_table); the repository reads and writes its rows.

Chunk rows, their FTS5 mirror and their vec rows are only ever written
together, one file per transaction (replace_file_chunks / delete_file).
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Iterator

from engram.db.models import FINGERPRINT_KEY, Chunk, Fingerprint, SourceFile
from engram.db.vectors import VEC_TABLE, vec_table_exists
from engram.errors import QueryParseError


class Repository:
    """Data access layer for all memory index entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see engram.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        self._conn.commit()

    def get_fingerprint(self) -> Fingerprint | None:
        raw = self.get_meta(FINGERPRINT_KEY)
        return Fingerprint.from_json(raw) if raw else None

    def set_fingerprint(self, fingerprint: Fingerprint) -> None:
        self.set_meta(FINGERPRINT_KEY, fingerprint.to_json())

    # ------------------------------------------------------------------
    # File snapshots
    # ------------------------------------------------------------------

    def get_file(self, path: str) -> SourceFile | None:
        row = self._conn.execute(
            "SELECT path, source, hash, mtime, size FROM files WHERE path = ?", (path,)
        ).fetchone()
        return _row_to_file(row) if row else None

    def list_files(self) -> list[SourceFile]:
        rows = self._conn.execute(
            "SELECT path, source, hash, mtime, size FROM files ORDER BY path"
        ).fetchall()
        return [_row_to_file(r) for r in rows]

    def upsert_file(self, file: SourceFile) -> None:
        """Insert or update a snapshot row on its own (no chunk changes)."""
        self._upsert_file(file)
        self._conn.commit()

    def _upsert_file(self, file: SourceFile) -> None:
        self._conn.execute(
            """
            INSERT INTO files (path, source, hash, mtime, size)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                source = excluded.source,
                hash = excluded.hash,
                mtime = excluded.mtime,
                size = excluded.size
            """,
            (file.path, file.source, file.hash, file.mtime, file.size),
        )

    # ------------------------------------------------------------------
    # Chunks: atomic per-file writes
    # ------------------------------------------------------------------

    def replace_file_chunks(self, file: SourceFile, chunks: list[Chunk]) -> None:
        """Swap every row of *file* for *chunks* in a single transaction.

        Deletes the old chunk, FTS5 and vec rows for the path, inserts the new
        ones and upserts the file snapshot. Readers on other connections see
        either the complete old state or the complete new state.
        """
        has_vec = vec_table_exists(self._conn)
        now = int(time.time())
        with self._conn:
            self._delete_path_rows(file.path, has_vec)
            for chunk in chunks:
                embedding_json = json.dumps(chunk.embedding) if chunk.embedding else ""
                self._conn.execute(
                    """
                    INSERT INTO chunks (
                        id, path, source, start_line, end_line, hash, model, text, embedding, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.id,
                        chunk.path,
                        chunk.source,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model,
                        chunk.text,
                        embedding_json,
                        now,
                    ),
                )
                self._conn.execute(
                    """
                    INSERT INTO chunks_fts (text, id, path, source, model, start_line, end_line)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.text,
                        chunk.id,
                        chunk.path,
                        chunk.source,
                        chunk.model,
                        chunk.start_line,
                        chunk.end_line,
                    ),
                )
                if has_vec and embedding_json:
                    self._conn.execute(
                        f"INSERT INTO {VEC_TABLE} (chunk_id, embedding) VALUES (?, ?)",
                        (chunk.id, embedding_json),
                    )
            self._upsert_file(file)
            self._conn.execute(
                """
                INSERT INTO meta (key, value) VALUES ('last_indexed', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (str(now),),
            )

    def delete_file(self, path: str) -> int:
        """Delete every chunk, FTS5 and vec row plus the snapshot for *path*.

        Returns:
            Number of chunk rows removed.
        """
        has_vec = vec_table_exists(self._conn)
        with self._conn:
            removed = self._delete_path_rows(path, has_vec)
            self._conn.execute("DELETE FROM files WHERE path = ?", (path,))
        return removed

    def _delete_path_rows(self, path: str, has_vec: bool) -> int:
        """Delete index rows for *path* inside the caller's transaction."""
        self._conn.execute("DELETE FROM chunks_fts WHERE path = ?", (path,))
        if has_vec:
            self._conn.execute(
                f"DELETE FROM {VEC_TABLE} WHERE chunk_id IN (SELECT id FROM chunks WHERE path = ?)",
                (path,),
            )
        cur = self._conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
        return cur.rowcount

    def clear_index(self) -> None:
        """Delete all chunks, FTS5 rows, vec rows and file snapshots.

        The embedding cache and meta rows are kept.
        """
        has_vec = vec_table_exists(self._conn)
        with self._conn:
            self._conn.execute("DELETE FROM chunks_fts")
            if has_vec:
                self._conn.execute(f"DELETE FROM {VEC_TABLE}")
            self._conn.execute("DELETE FROM chunks")
            self._conn.execute("DELETE FROM files")

    # ------------------------------------------------------------------
    # Chunk reads
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        row = self._conn.execute(
            """
            SELECT id, path, source, start_line, end_line, hash, model, text, updated_at
            FROM chunks WHERE id = ?
            """,
            (chunk_id,),
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunks(self, chunk_ids: list[str]) -> dict[str, Chunk]:
        """Return {id: Chunk} for the ids that exist (embeddings not decoded)."""
        if not chunk_ids:
            return {}
        placeholders = ",".join("?" * len(chunk_ids))
        rows = self._conn.execute(
            f"""
            SELECT id, path, source, start_line, end_line, hash, model, text, updated_at
            FROM chunks WHERE id IN ({placeholders})
            """,
            chunk_ids,
        ).fetchall()
        return {r["id"]: _row_to_chunk(r) for r in rows}

    def list_chunk_ids(self, path: str | None = None) -> list[str]:
        if path is None:
            rows = self._conn.execute("SELECT id FROM chunks ORDER BY id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT id FROM chunks WHERE path = ? ORDER BY id", (path,)
            ).fetchall()
        return [r["id"] for r in rows]

    def count_chunks(self, path: str | None = None) -> int:
        if path is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE path = ?", (path,)
        ).fetchone()[0]

    def iter_chunk_embeddings(self) -> Iterator[tuple[Chunk, str]]:
        """Yield (chunk, raw embedding JSON) for every chunk with an embedding.

        Used by the linear-scan fallback; decoding is left to the caller so a
        single corrupt row can be skipped.
        """
        cur = self._conn.execute(
            """
            SELECT id, path, source, start_line, end_line, hash, model, text, updated_at, embedding
            FROM chunks WHERE embedding <> ''
            """
        )
        for row in cur:
            yield _row_to_chunk(row), row["embedding"]

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 10) -> list[tuple[Chunk, float]]:
        """BM25 full-text search with the raw query text. Returns (chunk, rank).

        bm25() returns negative values; lower (more negative) = better match.
        The raw rank is returned so callers can normalise it.

        Raises:
            QueryParseError: If FTS5 rejects the query syntax.
        """
        try:
            rows = self._conn.execute(
                """
                SELECT id, bm25(chunks_fts) AS rank FROM chunks_fts
                WHERE chunks_fts MATCH ? ORDER BY rank LIMIT ?
                """,
                (query, limit),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            raise QueryParseError(str(exc)) from exc

        chunks = self.get_chunks([r["id"] for r in rows])
        return [(chunks[r["id"]], float(r["rank"])) for r in rows if r["id"] in chunks]

    # ------------------------------------------------------------------
    # Vec search
    # ------------------------------------------------------------------

    def search_vec(self, embedding: list[float], limit: int = 10) -> list[tuple[Chunk, float]]:
        """Nearest-neighbour search. Returns (chunk, cosine distance) sorted by distance."""
        rows = self._conn.execute(
            f"""
            SELECT chunk_id, distance FROM {VEC_TABLE}
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (json.dumps(embedding), limit),
        ).fetchall()

        chunks = self.get_chunks([r["chunk_id"] for r in rows])
        return [
            (chunks[r["chunk_id"]], float(r["distance"]))
            for r in rows
            if r["chunk_id"] in chunks
        ]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def get_cached_embedding(
        self, provider: str, model: str, provider_key: str, text_hash: str
    ) -> list[float] | None:
        row = self._conn.execute(
            """
            SELECT embedding FROM embedding_cache
            WHERE provider = ? AND model = ? AND provider_key = ? AND hash = ?
            """,
            (provider, model, provider_key, text_hash),
        ).fetchone()
        if row is None:
            return None
        try:
            return [float(x) for x in json.loads(row["embedding"])]
        except (ValueError, TypeError):
            return None

    def put_cached_embedding(
        self,
        provider: str,
        model: str,
        provider_key: str,
        text_hash: str,
        embedding: list[float],
    ) -> bool:
        """Insert a cache entry. An existing entry for the same key is never overwritten.

        Returns:
            True if a row was written.
        """
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO embedding_cache
                (provider, model, provider_key, hash, embedding, dims, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                provider,
                model,
                provider_key,
                text_hash,
                json.dumps(embedding),
                len(embedding),
                int(time.time()),
            ),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def count_cache_entries(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

    def clear_embedding_cache(self, provider: str, model: str) -> int:
        """Delete cached vectors for one provider/model pair. Returns rows removed."""
        cur = self._conn.execute(
            "DELETE FROM embedding_cache WHERE provider = ? AND model = ?", (provider, model)
        )
        self._conn.commit()
        return cur.rowcount


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_file(row: sqlite3.Row) -> SourceFile:
    return SourceFile(
        path=row["path"],
        source=row["source"],
        hash=row["hash"],
        mtime=row["mtime"],
        size=row["size"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        path=row["path"],
        source=row["source"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        hash=row["hash"],
        model=row["model"],
        text=row["text"],
        updated_at=row["updated_at"],
    )
