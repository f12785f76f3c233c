"""Entity and embedding types plus the collaborator protocols.

The graph store, the entity writer used by the protocol layer and the
embedding provider are external collaborators. They are described here as
structural Protocols; any object with the right methods can be injected.
"""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_validator


class Entity(BaseModel):
    """A named node in the memory graph.

    Attributes:
        name: Unique entity name (the job's entity_uid)
        entity_type: Free-form entity type label
        observations: Facts recorded about the entity
        version: Entity version; None is treated as version 1
    """

    name: str
    entity_type: str
    observations: list[str] = Field(default_factory=list)
    version: int | None = None

    @field_validator("observations", mode="before")
    @classmethod
    def coerce_observations(cls, v: Any) -> Any:
        """Accept observations stored as a JSON string or a single value."""
        if v is None:
            return []
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return [v]
            return parsed if isinstance(parsed, list) else [str(parsed)]
        if not isinstance(v, (list, tuple)):
            return [str(v)]
        return v


class EntityEmbedding(BaseModel):
    """A vector stored against an entity.

    Attributes:
        vector: Embedding values
        model: Model that produced the vector
        last_updated: Epoch milliseconds when the vector was generated
    """

    vector: list[float]
    model: str
    last_updated: int


class EmbeddingResult(BaseModel):
    """Output of one embedding provider call.

    Attributes:
        vector: Embedding values
        total_tokens: Tokens the provider billed for the request
    """

    vector: list[float]
    total_tokens: int = 0


@runtime_checkable
class EntityStorage(Protocol):
    """Graph storage operations the job manager depends on."""

    async def get_entity(self, name: str) -> Entity | None:
        """Fetch an entity by name, or None if it does not exist."""
        ...

    async def store_entity_vector(self, name: str, embedding: EntityEmbedding) -> None:
        """Attach an embedding to an entity."""
        ...

    async def get_entities_without_embeddings(self, limit: int) -> list[Entity]:
        """List up to limit entities that have no stored embedding."""
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text embedding service."""

    model_name: str

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed text and report token usage."""
        ...


@runtime_checkable
class EntityWriter(Protocol):
    """Entity creation entry point of the protocol layer."""

    async def create_entities(self, entities: list[Entity]) -> list[Entity]:
        """Persist entities and return what was created."""
        ...
