"""Hippocampus: periodic consolidation of daily notes into MEMORY.md.

Idle → Reading → Synthesizing → Writing → Reindexing → Idle
          └──────────── (nothing new) ──────────────────┘

One LLM call merges the current curated note with the recent daily notes,
resolving conflicts in favour of newer observations. The rewritten note is
written atomically and then re-indexed. A run is skipped when the daily
window is byte-identical to the one the last successful run consumed, so
repeated runs without new material never rewrite the note.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Protocol

from engram.errors import ConsolidationLlmError
from engram.index.maintainer import IndexMaintainer
from engram.rag import llm_client
from engram.store.files import LONG_TERM_FILE, MemoryFileStore

logger = logging.getLogger(__name__)

STATE_NAME = "hippocampus"

CONSOLIDATION_SYSTEM_PROMPT = """\
You are a memory consolidation system. You maintain a personal knowledge base (MEMORY.md)
by integrating new daily observations.

Rules:
- Preserve existing important knowledge that is still valid
- Add new stable facts, user preferences, and behavioral patterns from daily notes
- When a daily note contradicts the existing knowledge, the newer observation wins
- Drop information that is stale or no longer useful
- Use clear Markdown formatting with headers for organization
- Be concise: only keep information that is useful for future conversations
- Output the COMPLETE updated MEMORY.md content (not a diff)"""


class ConsolidationState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    SYNTHESIZING = "synthesizing"
    WRITING = "writing"
    REINDEXING = "reindexing"


@dataclass
class ConsolidationReport:
    """Outcome of one run. ``final_state`` is the last state reached before returning to Idle."""

    daily_files_read: int
    memory_updated: bool
    reindexed: bool
    summary: str
    failed: bool = False
    final_state: ConsolidationState = ConsolidationState.IDLE


class LlmCapability(Protocol):
    def complete(self, system_prompt: str, content: str) -> str: ...


class LiteLLMCompleter:
    """LlmCapability backed by litellm.completion."""

    def __init__(self, model: str = "openai/gpt-4o-mini", timeout: float = 120.0, max_tokens: int = 4096) -> None:
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens

    def complete(self, system_prompt: str, content: str) -> str:
        llm_client.validate_api_key(self.model)
        return llm_client.complete(
            self.model,
            system_prompt,
            content,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )


class HippocampusConsolidator:
    """Folds recent daily notes into the curated long-term note."""

    def __init__(
        self,
        files: MemoryFileStore,
        maintainer: IndexMaintainer,
        llm: LlmCapability,
        lookback_days: int = 7,
    ) -> None:
        if lookback_days < 1:
            raise ValueError(f"lookback_days must be >= 1, got {lookback_days}")
        self._files = files
        self._maintainer = maintainer
        self._llm = llm
        self.lookback_days = lookback_days
        self.state = ConsolidationState.IDLE

    def consolidate(self) -> ConsolidationReport:
        """Run one consolidation pass under the maintainer's run lock."""
        with self._maintainer.run_lock:
            try:
                return self._run()
            finally:
                self.state = ConsolidationState.IDLE

    def _run(self) -> ConsolidationReport:
        self.state = ConsolidationState.READING
        current = self._files.read_long_term()
        recent = self._files.read_recent_daily(self.lookback_days)
        if not recent:
            return self._report(0, "No daily files found in lookback window; skipped consolidation.")

        digest = window_digest(recent)
        if self._files.read_state(STATE_NAME).get("digest") == digest:
            return self._report(
                len(recent), "No new daily content since the last consolidation; skipped."
            )

        self.state = ConsolidationState.SYNTHESIZING
        try:
            updated = self._synthesize(current, recent)
        except ConsolidationLlmError as exc:
            logger.error("Consolidation aborted, MEMORY.md left untouched: %s", exc)
            return self._report(len(recent), f"Consolidation failed: {exc}", failed=True)

        self.state = ConsolidationState.WRITING
        try:
            self._files.write_long_term(updated + "\n")
        except OSError as exc:
            logger.error("Could not write MEMORY.md: %s", exc)
            return self._report(len(recent), f"Writing MEMORY.md failed: {exc}", failed=True)
        try:
            self._files.write_state(
                STATE_NAME,
                {
                    "digest": digest,
                    "consolidated_at": datetime.now(timezone.utc).isoformat(),
                    "daily_files": [day.isoformat() for day, _ in recent],
                },
            )
        except OSError as exc:
            # The note is already written; the next run repeats the same window.
            logger.warning("Could not record consolidation state: %s", exc)

        self.state = ConsolidationState.REINDEXING
        reindexed = self._reindex()
        summary = f"Consolidated {len(recent)} daily files into {LONG_TERM_FILE}."
        if not reindexed:
            summary += " Re-indexing failed; the next maintenance pass will retry."
        return self._report(len(recent), summary, memory_updated=True, reindexed=reindexed)

    def _synthesize(self, current: str, recent: list[tuple[date, str]]) -> str:
        daily_sections = "".join(
            f"### {day.isoformat()}\n{content}\n\n" for day, content in sorted(recent)
        )
        prompt = (
            f"## Current {LONG_TERM_FILE}\n{current}\n\n"
            f"## Recent Daily Observations (oldest first)\n{daily_sections}"
            f"Please synthesize the daily observations into an updated {LONG_TERM_FILE}.\n"
            f"Output ONLY the new {LONG_TERM_FILE} content, no explanations."
        )
        try:
            response = self._llm.complete(CONSOLIDATION_SYSTEM_PROMPT, prompt)
        except Exception as exc:
            raise ConsolidationLlmError(str(exc)) from exc

        text = strip_markdown_fence(response or "")
        if not text:
            raise ConsolidationLlmError("LLM returned an empty note")
        return text

    def _reindex(self) -> bool:
        try:
            report = self._maintainer.sync(paths=[LONG_TERM_FILE], reason="consolidation")
        except Exception:
            logger.exception("Post-consolidation reindex failed")
            return False
        if LONG_TERM_FILE in report.failed:
            logger.warning("Post-consolidation reindex of %s failed", LONG_TERM_FILE)
            return False
        logger.info("Post-consolidation reindex: %d chunks indexed", report.chunks_written)
        return True

    def _report(
        self,
        daily_files_read: int,
        summary: str,
        *,
        memory_updated: bool = False,
        reindexed: bool = False,
        failed: bool = False,
    ) -> ConsolidationReport:
        return ConsolidationReport(
            daily_files_read=daily_files_read,
            memory_updated=memory_updated,
            reindexed=reindexed,
            summary=summary,
            failed=failed,
            final_state=self.state,
        )


class ConsolidationScheduler:
    """Runs consolidation every *interval_hours* on a daemon thread."""

    def __init__(self, consolidator: HippocampusConsolidator, interval_hours: float = 24.0) -> None:
        if interval_hours <= 0:
            raise ValueError(f"interval_hours must be positive, got {interval_hours}")
        self._consolidator = consolidator
        self.interval_hours = interval_hours
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="engram-hippocampus", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> ConsolidationReport | None:
        """Run one consolidation; failures are logged and left for the next tick."""
        logger.info("Running scheduled hippocampus consolidation")
        try:
            report = self._consolidator.consolidate()
        except Exception:
            logger.exception("Consolidation failed")
            return None
        logger.info(
            "Consolidation complete: daily_files_read=%d, memory_updated=%s, reindexed=%s, summary=%s",
            report.daily_files_read,
            report.memory_updated,
            report.reindexed,
            report.summary,
        )
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_hours * 3600):
            self.run_once()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def window_digest(recent: list[tuple[date, str]]) -> str:
    """SHA-256 over the dated contents of a lookback window, order-independent."""
    h = hashlib.sha256()
    for day, content in sorted(recent):
        h.update(day.isoformat().encode("utf-8"))
        h.update(b"\x00")
        h.update(hashlib.sha256(content.encode("utf-8")).digest())
    return h.hexdigest()


def strip_markdown_fence(text: str) -> str:
    """Remove a surrounding ```markdown / ```md / ``` fence from an LLM reply."""
    trimmed = text.strip()
    for prefix in ("```markdown", "```md", "```"):
        if trimmed.startswith(prefix):
            trimmed = trimmed[len(prefix):].lstrip()
            break
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]
    return trimmed.strip()
