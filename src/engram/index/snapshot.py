"""Change detection for indexed memory files.

A file is compared to its stored snapshot in two steps: (mtime, size) first,
so unchanged files are never read; then the SHA-256 of the content, so a file
that was only touched gets its snapshot refreshed without re-embedding.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from engram.db.models import SourceFile
from engram.db.repository import Repository
from engram.store.files import MemoryFileStore


class FileStatus(str, Enum):
    UNCHANGED = "unchanged"  # mtime and size match, content not read
    TOUCHED = "touched"  # metadata differs, content hash matches
    CHANGED = "changed"  # new file or different content


@dataclass
class FileCheck:
    status: FileStatus
    snapshot: SourceFile
    content: str | None = None  # set for CHANGED only


class FileSnapshotTracker:
    """Compares workspace files with the ``files`` table."""

    def __init__(self, repo: Repository, files: MemoryFileStore) -> None:
        self._repo = repo
        self._files = files

    def check(self, rel_path: str, source: str) -> FileCheck:
        """Classify *rel_path* against its stored snapshot.

        Raises:
            FileNotFoundError: If the file disappeared.
        """
        path = self._files.resolve(rel_path)
        st = path.stat()
        stored = self._repo.get_file(rel_path)
        if stored is not None and stored.mtime == st.st_mtime_ns and stored.size == st.st_size:
            return FileCheck(FileStatus.UNCHANGED, stored)

        raw = path.read_bytes()
        digest = hashlib.sha256(raw).hexdigest()
        # Size comes from the bytes read, in case the file changed after stat().
        snapshot = SourceFile(
            path=rel_path, source=source, hash=digest, mtime=st.st_mtime_ns, size=len(raw)
        )
        if stored is not None and stored.hash == digest and stored.source == source:
            return FileCheck(FileStatus.TOUCHED, snapshot)
        return FileCheck(FileStatus.CHANGED, snapshot, raw.decode("utf-8", errors="replace"))

    def stale_paths(self, present: Iterable[str]) -> list[str]:
        """Stored snapshot paths that are not in *present*."""
        keep = set(present)
        return [f.path for f in self._repo.list_files() if f.path not in keep]
