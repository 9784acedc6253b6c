"""Embedding providers, the persistent embedding cache and provider resolution.

Providers:
  LiteLLMEmbeddingProvider  remote API model via litellm.embedding
  OllamaEmbeddingProvider   local Ollama server (litellm ``ollama/`` models)
  StubEmbeddingProvider     deterministic hash-derived vectors, not semantic

EmbeddingCache wraps any provider and consults the ``embedding_cache`` table
before every provider call; identical text under an identical
(provider, model, provider_key) is embedded at most once.
"""

from __future__ import annotations

import hashlib
import logging
import struct
import urllib.error
import urllib.request
from typing import TYPE_CHECKING, Protocol

from engram.db.models import Fingerprint
from engram.errors import ConfigurationError, TransientProviderError
from engram.ingest.base import text_hash
from engram.rag import llm_client

if TYPE_CHECKING:
    from engram.config import EmbeddingConfig
    from engram.db.repository import Repository

logger = logging.getLogger(__name__)

_OLLAMA_PROBE_TIMEOUT = 2.0


class EmbeddingProvider(Protocol):
    """Capability that turns text into a fixed-width vector."""

    provider_id: str
    model_id: str
    provider_key: str
    is_semantic: bool

    def dims(self) -> int: ...

    def embed(self, text: str) -> list[float]: ...


def fingerprint_of(provider: EmbeddingProvider) -> Fingerprint:
    """The (provider, model, dims) triple identifying an index generation."""
    return Fingerprint(provider=provider.provider_id, model=provider.model_id, dims=provider.dims())


# ------------------------------------------------------------------
# Providers
# ------------------------------------------------------------------


class LiteLLMEmbeddingProvider:
    """Remote embedding model reached through litellm (e.g. openai/text-embedding-3-small)."""

    is_semantic = True

    def __init__(
        self,
        model: str = "openai/text-embedding-3-small",
        dims: int = 1536,
        timeout: float = 30.0,
        api_base: str | None = None,
    ) -> None:
        if dims < 1:
            raise ValueError(f"dims must be >= 1, got {dims}")
        self.model = model
        self.provider_id = llm_client.provider_of(model)
        self.model_id = model.split("/", 1)[1] if "/" in model else model
        self.provider_key = f"{api_base or 'default'}#{dims}"
        self.timeout = timeout
        self.api_base = api_base
        self._dims = dims

    def dims(self) -> int:
        return self._dims

    def embed(self, text: str) -> list[float]:
        # Only the text-embedding-3 family accepts a requested width.
        dimensions = self._dims if self.model_id.startswith("text-embedding-3") else None
        vector = llm_client.embed(
            self.model,
            text,
            timeout=self.timeout,
            api_base=self.api_base,
            dimensions=dimensions,
        )
        if len(vector) != self._dims:
            raise TransientProviderError(
                f"{self.model} returned {len(vector)} dims, expected {self._dims}"
            )
        return vector


class OllamaEmbeddingProvider(LiteLLMEmbeddingProvider):
    """Local embedding model served by Ollama."""

    def __init__(
        self,
        model: str = "ollama/nomic-embed-text",
        dims: int = 768,
        timeout: float = 30.0,
        api_base: str = "http://localhost:11434",
    ) -> None:
        if not model.startswith("ollama/"):
            model = f"ollama/{model}"
        super().__init__(model=model, dims=dims, timeout=timeout, api_base=api_base)
        self.provider_id = "ollama"

    def is_available(self) -> bool:
        """Return True if the Ollama server answers /api/tags within 2 seconds."""
        url = f"{self.api_base.rstrip('/')}/api/tags"
        try:
            with urllib.request.urlopen(url, timeout=_OLLAMA_PROBE_TIMEOUT) as resp:
                return 200 <= resp.status < 300
        except (urllib.error.URLError, OSError, ValueError):
            return False


class StubEmbeddingProvider:
    """Deterministic, non-semantic vectors for tests and offline use.

    Component *i* of the vector for *text* is the first four bytes of
    SHA-256(text || i) read as an unsigned int and mapped to [-1, 1].
    """

    provider_id = "stub"
    model_id = "stub"
    is_semantic = False

    def __init__(self, dims: int = 64) -> None:
        if dims < 1:
            raise ValueError(f"dims must be >= 1, got {dims}")
        self._dims = dims
        self.provider_key = f"stub#{dims}"

    def dims(self) -> int:
        return self._dims

    def embed(self, text: str) -> list[float]:
        data = text.encode("utf-8")
        vector = []
        for index in range(self._dims):
            digest = hashlib.sha256(data + struct.pack("<Q", index)).digest()
            value = struct.unpack("<I", digest[:4])[0]
            vector.append(value / 0xFFFFFFFF * 2.0 - 1.0)
        return vector


# ------------------------------------------------------------------
# Cache
# ------------------------------------------------------------------


class EmbeddingCache:
    """EmbeddingProvider decorator backed by the ``embedding_cache`` table.

    Entries are keyed by (provider, model, provider_key, sha256(text)) and never
    expire. Only successful provider calls are cached.
    """

    def __init__(self, repo: Repository, provider: EmbeddingProvider) -> None:
        self._repo = repo
        self.inner = provider
        self.hits = 0
        self.misses = 0

    @property
    def provider_id(self) -> str:
        return self.inner.provider_id

    @property
    def model_id(self) -> str:
        return self.inner.model_id

    @property
    def provider_key(self) -> str:
        return self.inner.provider_key

    @property
    def is_semantic(self) -> bool:
        return self.inner.is_semantic

    def dims(self) -> int:
        return self.inner.dims()

    def embed(self, text: str) -> list[float]:
        key = (self.provider_id, self.model_id, self.provider_key, text_hash(text))
        cached = self._repo.get_cached_embedding(*key)
        if cached is not None and len(cached) == self.dims():
            self.hits += 1
            return cached

        self.misses += 1
        vector = self.inner.embed(text)
        self._repo.put_cached_embedding(*key, vector)
        return vector


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------


def resolve_provider(cfg: EmbeddingConfig) -> EmbeddingProvider:
    """Build the embedding provider selected by *cfg*.

    ``auto`` prefers the remote model when its API key is set, then a reachable
    local Ollama server, then the stub.

    Raises:
        ConfigurationError: If no provider is configured, the name is unknown,
            or an explicitly requested provider cannot be used.
    """
    name = (cfg.provider or "").strip().lower()

    if name in ("", "none"):
        raise ConfigurationError("No embedding provider configured (embedding.provider is empty).")

    if name == "stub":
        return StubEmbeddingProvider(dims=cfg.stub_dims)

    if name in ("litellm", "remote"):
        if not llm_client.has_api_key(cfg.model):
            raise ConfigurationError(
                f"Embedding provider '{name}' requires an API key for '{cfg.model}'."
            )
        return _remote(cfg)

    if name in ("ollama", "local"):
        local = _local(cfg)
        if not local.is_available():
            raise ConfigurationError(f"Ollama is not reachable at {cfg.local_api_base}.")
        return local

    if name == "auto":
        if llm_client.provider_of(cfg.model) != "ollama" and llm_client.has_api_key(cfg.model):
            logger.info("Embedding provider: %s (remote)", cfg.model)
            return _remote(cfg)
        local = _local(cfg)
        if local.is_available():
            logger.info("Embedding provider: %s (local)", local.model)
            return local
        logger.warning(
            "No semantic embedding provider available; using the stub (lexical search only)."
        )
        return StubEmbeddingProvider(dims=cfg.stub_dims)

    raise ConfigurationError(f"Unknown embedding provider '{cfg.provider}'.")


def _remote(cfg: EmbeddingConfig) -> LiteLLMEmbeddingProvider:
    return LiteLLMEmbeddingProvider(
        model=cfg.model, dims=cfg.dims, timeout=cfg.timeout, api_base=cfg.api_base
    )


def _local(cfg: EmbeddingConfig) -> OllamaEmbeddingProvider:
    return OllamaEmbeddingProvider(
        model=cfg.local_model, dims=cfg.local_dims, timeout=cfg.timeout, api_base=cfg.local_api_base
    )
