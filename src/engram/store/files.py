"""Markdown memory files of one workspace.

Layout:
  MEMORY.md                curated long-term note
  memory/YYYY-MM-DD.md     raw daily notes
  .engram/                 engine state (index database, consolidation state)

Whole-file writes are atomic (temp file in the same directory → os.replace),
so a concurrent reader or the index watcher never sees a half-written note.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any

LONG_TERM_FILE = "MEMORY.md"
DAILY_DIR = "memory"
STATE_DIR = ".engram"

SOURCE_LONG_TERM = "long_term"
SOURCE_DAILY = "daily"


class MemoryFileStore:
    """Reads and writes the memory files rooted at *workspace*."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = Path(workspace).resolve()

    @property
    def long_term_path(self) -> Path:
        return self.workspace / LONG_TERM_FILE

    @property
    def daily_dir(self) -> Path:
        return self.workspace / DAILY_DIR

    @property
    def state_dir(self) -> Path:
        return self.workspace / STATE_DIR

    def daily_path(self, day: date) -> Path:
        return self.daily_dir / f"{day.isoformat()}.md"

    # ------------------------------------------------------------------
    # Long-term note
    # ------------------------------------------------------------------

    def read_long_term(self) -> str:
        """Return MEMORY.md, or '' if it does not exist yet."""
        try:
            return self.long_term_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def write_long_term(self, content: str) -> None:
        _atomic_write(self.long_term_path, content)

    # ------------------------------------------------------------------
    # Daily notes
    # ------------------------------------------------------------------

    def read_daily(self, day: date) -> str | None:
        try:
            return self.daily_path(day).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def append_daily(self, day: date, content: str) -> None:
        """Append *content* to the day's file, creating it with a date heading."""
        path = self.daily_path(day)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(f"# {day.isoformat()}\n\n", encoding="utf-8")
        with path.open("a", encoding="utf-8") as f:
            f.write(f"\n{content}\n")

    def write_daily(self, day: date, content: str) -> None:
        _atomic_write(self.daily_path(day), content)

    def list_daily_files(self) -> list[tuple[date, Path]]:
        """Dated daily files (``YYYY-MM-DD.md``), newest first."""
        if not self.daily_dir.is_dir():
            return []
        out: list[tuple[date, Path]] = []
        for path in self.daily_dir.glob("*.md"):
            if not path.is_file():
                continue
            try:
                day = date.fromisoformat(path.stem)
            except ValueError:
                continue
            out.append((day, path))
        out.sort(key=lambda item: item[0], reverse=True)
        return out

    def read_recent_daily(self, days: int) -> list[tuple[date, str]]:
        """Contents of the *days* most recent daily files, newest first."""
        return [
            (day, path.read_text(encoding="utf-8"))
            for day, path in self.list_daily_files()[:days]
        ]

    # ------------------------------------------------------------------
    # Indexable sources
    # ------------------------------------------------------------------

    def list_sources(self) -> list[tuple[str, str]]:
        """Return (relative path, source) for every file the index covers.

        ``MEMORY.md`` is ``long_term``; every ``memory/*.md`` is ``daily``.
        """
        sources: list[tuple[str, str]] = []
        if self.long_term_path.is_file():
            sources.append((LONG_TERM_FILE, SOURCE_LONG_TERM))
        if self.daily_dir.is_dir():
            for path in sorted(self.daily_dir.glob("*.md")):
                if path.is_file():
                    sources.append((self.relative(path), SOURCE_DAILY))
        return sources

    @staticmethod
    def source_for(rel_path: str) -> str | None:
        """Classify a workspace-relative path, or None if it is not indexed."""
        if rel_path == LONG_TERM_FILE:
            return SOURCE_LONG_TERM
        parts = rel_path.split("/")
        if len(parts) == 2 and parts[0] == DAILY_DIR and parts[1].endswith(".md"):
            return SOURCE_DAILY
        return None

    # ------------------------------------------------------------------
    # Paths and ranges
    # ------------------------------------------------------------------

    def resolve(self, rel_path: str) -> Path:
        """Absolute path for *rel_path*.

        Raises:
            ValueError: If the path is absolute or escapes the workspace.
        """
        if not rel_path or Path(rel_path).is_absolute():
            raise ValueError(f"Path must be relative to the workspace: '{rel_path}'")
        target = (self.workspace / rel_path).resolve()
        if target != self.workspace and self.workspace not in target.parents:
            raise ValueError(f"Path escapes the workspace: '{rel_path}'")
        return target

    def relative(self, path: Path) -> str:
        """Workspace-relative form of *path* with forward slashes."""
        return Path(path).resolve().relative_to(self.workspace).as_posix()

    def read_range(self, rel_path: str, from_line: int = 1, line_count: int | None = None) -> str:
        """Return lines ``from_line .. from_line + line_count - 1`` (1-based) of a file.

        Raises:
            ValueError: For paths outside the workspace or a from_line below 1.
            FileNotFoundError: If the file does not exist.
        """
        if from_line < 1:
            raise ValueError(f"from_line must be >= 1, got {from_line}")
        if line_count is not None and line_count < 0:
            raise ValueError(f"line_count must be >= 0, got {line_count}")
        lines = self.resolve(rel_path).read_text(encoding="utf-8").splitlines()
        start = from_line - 1
        end = len(lines) if line_count is None else start + line_count
        return "\n".join(lines[start:end])

    # ------------------------------------------------------------------
    # Engine state
    # ------------------------------------------------------------------

    def read_state(self, name: str) -> dict[str, Any]:
        """Load ``.engram/<name>.json``; missing or unreadable state is empty."""
        path = self.state_dir / f"{name}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def write_state(self, name: str, data: dict[str, Any]) -> None:
        _atomic_write(self.state_dir / f"{name}.json", json.dumps(data, indent=2, sort_keys=True))


# ------------------------------------------------------------------
# Atomic write
# ------------------------------------------------------------------


def _atomic_write(path: Path, content: str) -> None:
    """Write *content* to *path* atomically (temp → rename).

    Creates parent directories if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except Exception:
        # Clean up temp file on error
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
