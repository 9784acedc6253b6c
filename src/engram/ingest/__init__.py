"""engram ingest pipeline: chunking and embedding."""

from engram.ingest.base import BaseChunker, TextChunk
from engram.ingest.embeddings import (
    EmbeddingCache,
    EmbeddingProvider,
    LiteLLMEmbeddingProvider,
    OllamaEmbeddingProvider,
    StubEmbeddingProvider,
    resolve_provider,
)
from engram.ingest.markdown import MarkdownChunker

__all__ = [
    "BaseChunker",
    "EmbeddingCache",
    "EmbeddingProvider",
    "LiteLLMEmbeddingProvider",
    "MarkdownChunker",
    "OllamaEmbeddingProvider",
    "StubEmbeddingProvider",
    "TextChunk",
    "resolve_provider",
]
