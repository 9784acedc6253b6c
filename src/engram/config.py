"""engram configuration loader.

Priority (high → low):
  1. Environment variables  (ENGRAM_EMBEDDING_PROVIDER, ENGRAM_EMBEDDING_MODEL,
                             ENGRAM_CONSOLIDATION_MODEL)
  2. Per-workspace engram.yaml  (workspace root, next to MEMORY.md)
  3. Global ~/.engram/config.yaml  (model defaults only, no API keys)
  4. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".engram"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_WORKSPACE_CONFIG_NAME: str = "engram.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like chunk_tokens, max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token (suffix)
    r"|^token$"                  # exactly "token"
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret"
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "chunking", "search", "watch", "consolidation", "index"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingConfig:
    """Embedding provider selection (engram.yaml: embedding:).

    Attributes:
        provider: auto | litellm | ollama | stub. ``auto`` picks the remote
            model if its API key is set, then local Ollama, then the stub.
        model: LiteLLM model string for the remote provider.
        dims: Output width of *model*.
        api_base: Optional endpoint override for the remote provider.
        local_model: Ollama model (litellm ``ollama/`` prefix).
        local_dims: Output width of *local_model*.
        local_api_base: Ollama server URL.
        stub_dims: Width of stub vectors.
        timeout: Per-call timeout in seconds.
    """

    provider: str = "auto"
    model: str = "openai/text-embedding-3-small"
    dims: int = 1536
    api_base: str | None = None
    local_model: str = "ollama/nomic-embed-text"
    local_dims: int = 768
    local_api_base: str = "http://localhost:11434"
    stub_dims: int = 64
    timeout: float = 30.0


@dataclass
class ChunkingConfig:
    """Chunk size and overlap in approximate tokens (engram.yaml: chunking:)."""

    chunk_tokens: int = 400
    overlap_tokens: int = 80


@dataclass
class SearchConfig:
    """Hybrid search parameters (engram.yaml: search:)."""

    max_results: int = 6
    min_score: float = 0.35
    candidate_multiplier: int = 4
    vector_weight: float = 0.7
    text_weight: float = 0.3
    snippet_chars: int = 700
    half_life_days: float | None = None  # None = no temporal decay


@dataclass
class WatchConfig:
    """File watching (engram.yaml: watch:)."""

    enabled: bool = True
    debounce_ms: int = 1500


@dataclass
class ConsolidationConfig:
    """Hippocampus consolidation (engram.yaml: consolidation:)."""

    model: str = "openai/gpt-4o-mini"
    lookback_days: int = 7
    interval_hours: float = 24.0
    timeout: float = 120.0
    max_tokens: int = 4096


@dataclass
class IndexConfig:
    """Index storage (engram.yaml: index:). ``db_path`` is workspace-relative."""

    db_path: str = ".engram/index.db"


@dataclass
class EngramConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    index: IndexConfig = field(default_factory=IndexConfig)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: EngramConfig) -> None:
    """Raise ConfigError for values no component can work with."""
    if cfg.chunking.chunk_tokens < 1:
        raise ConfigError("chunking.chunk_tokens must be >= 1")
    if not 0 <= cfg.chunking.overlap_tokens < cfg.chunking.chunk_tokens:
        raise ConfigError("chunking.overlap_tokens must be >= 0 and < chunking.chunk_tokens")
    if not 0.0 <= cfg.search.min_score <= 1.0:
        raise ConfigError("search.min_score must be within [0, 1]")
    if cfg.search.vector_weight < 0 or cfg.search.text_weight < 0:
        raise ConfigError("search weights must be non-negative")
    if abs(cfg.search.vector_weight + cfg.search.text_weight - 1.0) > 1e-9:
        raise ConfigError("search.vector_weight + search.text_weight must equal 1.0")
    if cfg.search.half_life_days is not None and cfg.search.half_life_days <= 0:
        raise ConfigError("search.half_life_days must be positive when set")
    if cfg.consolidation.lookback_days < 1:
        raise ConfigError("consolidation.lookback_days must be >= 1")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _cfg_from_dict(data: dict[str, Any]) -> EngramConfig:
    """Build an *EngramConfig* from a merged raw YAML dict."""
    cfg = EngramConfig()

    if "embedding" in data:
        e = data["embedding"] or {}
        d = cfg.embedding
        cfg.embedding = EmbeddingConfig(
            provider=str(e.get("provider", d.provider)),
            model=str(e.get("model", d.model)),
            dims=int(e.get("dims", d.dims)),
            api_base=e.get("api_base", d.api_base),
            local_model=str(e.get("local_model", d.local_model)),
            local_dims=int(e.get("local_dims", d.local_dims)),
            local_api_base=str(e.get("local_api_base", d.local_api_base)),
            stub_dims=int(e.get("stub_dims", d.stub_dims)),
            timeout=float(e.get("timeout", d.timeout)),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingConfig(
            chunk_tokens=int(c.get("chunk_tokens", cfg.chunking.chunk_tokens)),
            overlap_tokens=int(c.get("overlap_tokens", cfg.chunking.overlap_tokens)),
        )

    if "search" in data:
        s = data["search"] or {}
        d = cfg.search
        cfg.search = SearchConfig(
            max_results=int(s.get("max_results", d.max_results)),
            min_score=float(s.get("min_score", d.min_score)),
            candidate_multiplier=int(s.get("candidate_multiplier", d.candidate_multiplier)),
            vector_weight=float(s.get("vector_weight", d.vector_weight)),
            text_weight=float(s.get("text_weight", d.text_weight)),
            snippet_chars=int(s.get("snippet_chars", d.snippet_chars)),
            half_life_days=_optional_float(s.get("half_life_days", d.half_life_days)),
        )

    if "watch" in data:
        w = data["watch"] or {}
        cfg.watch = WatchConfig(
            enabled=bool(w.get("enabled", cfg.watch.enabled)),
            debounce_ms=int(w.get("debounce_ms", cfg.watch.debounce_ms)),
        )

    if "consolidation" in data:
        c = data["consolidation"] or {}
        d = cfg.consolidation
        cfg.consolidation = ConsolidationConfig(
            model=str(c.get("model", d.model)),
            lookback_days=int(c.get("lookback_days", d.lookback_days)),
            interval_hours=float(c.get("interval_hours", d.interval_hours)),
            timeout=float(c.get("timeout", d.timeout)),
            max_tokens=int(c.get("max_tokens", d.max_tokens)),
        )

    if "index" in data:
        i = data["index"] or {}
        cfg.index = IndexConfig(db_path=str(i.get("db_path", cfg.index.db_path)))

    return cfg


def _apply_env_overrides(cfg: EngramConfig) -> EngramConfig:
    """Apply ENGRAM_* environment variable overrides (top layer)."""
    if provider := os.environ.get("ENGRAM_EMBEDDING_PROVIDER"):
        cfg.embedding.provider = provider
    if model := os.environ.get("ENGRAM_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("ENGRAM_CONSOLIDATION_MODEL"):
        cfg.consolidation.model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    workspace: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> EngramConfig:
    """Load and return a merged *EngramConfig*.

    Applies layers in order: global → per-workspace → env vars.

    Args:
        workspace: Directory to search for *engram.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or a value
            is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = workspace if workspace is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-workspace config
    workspace_cfg_path = search_dir / _WORKSPACE_CONFIG_NAME
    if workspace_cfg_path.exists():
        raw_workspace = yaml.safe_load(workspace_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_workspace, workspace_cfg_path)
        merged = _deep_merge(merged, raw_workspace)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg
