"""In-process LRU cache for embedding vectors.

Entries are keyed by the MD5 digest of the exact text that was embedded and
expire after a fixed time-to-live. When the cache is full the least recently
used entry is evicted.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


def cache_key(text: str) -> str:
    """Deterministic cache key for a text."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """LRU cache with per-entry expiry.

    Args:
        max_size: Maximum number of entries (0 disables caching)
        ttl_seconds: Lifetime of an entry
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[list[float], float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> list[float] | None:
        """Return the cached vector for text, or None if absent or expired."""
        key = cache_key(text)
        entry = self._entries.get(key)

        if entry is None:
            self.misses += 1
            return None

        vector, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        logger.debug("embedding_cache_hit", text_hash=key[:8])
        return vector

    def put(self, text: str, vector: list[float]) -> None:
        """Cache vector for text, evicting the least recently used entry if full."""
        if self.max_size == 0:
            return

        key = cache_key(text)
        self._entries[key] = (vector, self._clock() + self.ttl_seconds)
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
