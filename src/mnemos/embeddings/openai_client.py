"""OpenAI-compatible embedding provider.

Calls the ``/embeddings`` endpoint of an OpenAI-compatible API with httpx,
returns the vector normalized to unit length together with the token usage
reported by the provider, which the job manager feeds back into the rate
limiter.

HTTP errors are not retried here. They propagate as httpx exceptions and are
classified by the caller: timeouts, network errors, 429 and 5xx responses are
transient; other 4xx responses are permanent.

Example usage:
    >>> from mnemos.config import EmbeddingConfig
    >>> config = EmbeddingConfig(api_key="sk-...")
    >>> async with OpenAIEmbeddingProvider(config) as provider:
    ...     result = await provider.embed("Name: Alice")
"""

from __future__ import annotations

import os
from typing import Any

import httpx
import numpy as np
import structlog

from mnemos.config import EmbeddingConfig
from mnemos.embeddings.types import EmbeddingResult

logger = structlog.get_logger(__name__)


class OpenAIEmbeddingProvider:
    """Async client for an OpenAI-compatible embeddings API.

    Attributes:
        config: Embedding configuration (endpoint, model, dimensions, timeout)
        model_name: Model identifier recorded on jobs and stored vectors
    """

    def __init__(self, config: EmbeddingConfig) -> None:
        """Initialize the provider.

        Args:
            config: EmbeddingConfig instance

        Raises:
            ValueError: If no API key is configured and OPENAI_API_KEY is unset
        """
        self.config = config
        self.model_name = config.model
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Embedding API key required: set embedding.api_key or OPENAI_API_KEY"
            )
        self._client: httpx.AsyncClient | None = None

        logger.info(
            "openai_embedding_provider_initialized",
            base_url=config.base_url,
            model=config.model,
            dimensions=config.dimensions,
        )

    async def __aenter__(self) -> OpenAIEmbeddingProvider:
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "OpenAIEmbeddingProvider must be used as async context manager"
            )
        return self._client

    @staticmethod
    def _normalize(vector: list[float]) -> list[float]:
        """Scale a vector to unit L2 norm; zero vectors are returned unchanged."""
        arr = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(arr)
        if norm == 0:
            logger.warning("embedding_zero_norm", embedding_dim=len(vector))
            return list(vector)
        return (arr / norm).tolist()

    async def embed(self, text: str) -> EmbeddingResult:
        """Generate an embedding for text.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult with a unit-length vector and billed token count

        Raises:
            ValueError: If text is blank or the response is malformed or has
                the wrong dimensionality
            httpx.HTTPStatusError: If the API returns an error status
            httpx.TransportError: On timeouts and connection failures
        """
        if not text or not text.strip():
            raise ValueError("Cannot generate embedding for empty or whitespace text")

        client = self._get_client()
        payload = {"input": text, "model": self.model_name}

        logger.debug("openai_embedding_request", text_length=len(text), model=self.model_name)

        response = await client.post("/embeddings", json=payload)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "openai_api_error",
                status_code=e.response.status_code,
                error=str(e),
            )
            raise

        data = response.json()
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError("Invalid embedding response: missing data[0].embedding") from e

        if len(vector) != self.config.dimensions:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self.config.dimensions}"
            )

        total_tokens = int((data.get("usage") or {}).get("total_tokens", 0))

        logger.info(
            "openai_embedding_generated",
            text_length=len(text),
            embedding_dim=len(vector),
            total_tokens=total_tokens,
        )

        return EmbeddingResult(vector=self._normalize(vector), total_tokens=total_tokens)
