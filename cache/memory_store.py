"""
In-process query cache with lazy TTL expiry and numpy similarity search.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from cache.base_cache_store import BaseQueryCacheStore, cosine_similarity
from models.query import CacheEntry

logger = logging.getLogger(__name__)


class InMemoryQueryCache(BaseQueryCacheStore):
    """
    In-memory cache store.

    Safe for concurrent coroutines via an asyncio lock. Designed for a
    single process; use the Qdrant backend when several workers share a cache.
    """

    def __init__(self, default_ttl: int = 3600, similarity_threshold: float = 0.85):
        super().__init__(default_ttl=default_ttl, similarity_threshold=similarity_threshold)
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def lookup_exact(self, fingerprint: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if entry.is_expired():
                # Lazy expiry: treat as absent and drop it while we hold the lock
                del self._entries[fingerprint]
                logger.debug(f"Cache entry expired: {fingerprint[:12]}")
                return None
            return entry

    async def nearest(self, embedding: List[float], k: int = 5) -> List[Tuple[CacheEntry, float]]:
        if not embedding:
            return []
        async with self._lock:
            live = [e for e in self._entries.values() if not e.is_expired() and e.embedding_vector]
        scored = [(entry, cosine_similarity(embedding, entry.embedding_vector)) for entry in live]
        return self._rank(scored, k)

    async def store(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._entries[entry.fingerprint] = entry
        logger.debug(f"Cached structured query for {entry.fingerprint[:12]}")

    async def invalidate(self, fingerprint: str) -> None:
        async with self._lock:
            self._entries.pop(fingerprint, None)

    async def close(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
