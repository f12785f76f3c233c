"""Embedding types, provider client and cache."""

from mnemos.embeddings.cache import EmbeddingCache, cache_key
from mnemos.embeddings.openai_client import OpenAIEmbeddingProvider
from mnemos.embeddings.types import (
    EmbeddingProvider,
    EmbeddingResult,
    Entity,
    EntityEmbedding,
    EntityStorage,
    EntityWriter,
)

__all__ = [
    "EmbeddingCache",
    "cache_key",
    "OpenAIEmbeddingProvider",
    "EmbeddingProvider",
    "EmbeddingResult",
    "Entity",
    "EntityEmbedding",
    "EntityStorage",
    "EntityWriter",
]
