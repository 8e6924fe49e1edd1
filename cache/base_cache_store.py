"""
Abstract query cache store interface.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import numpy as np

from cache.single_flight import SingleFlight
from models.query import CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_TTL = 3600


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 when either is all zeros or shapes differ."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class BaseQueryCacheStore(ABC):
    """Fingerprint-keyed store of structured queries with similarity lookup.

    Subclasses provide storage; single-flight coordination lives here so every
    backend offers the same at-most-one-build-per-fingerprint guarantee.
    """

    def __init__(self, default_ttl: int = DEFAULT_TTL,
                 similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.default_ttl = default_ttl
        self.similarity_threshold = similarity_threshold
        self._single_flight = SingleFlight()

    @abstractmethod
    async def lookup_exact(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for a fingerprint, or None."""

    @abstractmethod
    async def nearest(self, embedding: List[float], k: int = 5) -> List[Tuple[CacheEntry, float]]:
        """Return up to k unexpired entries ordered by similarity, best first."""

    @abstractmethod
    async def store(self, entry: CacheEntry) -> None:
        """Upsert an entry, replacing any entry with the same fingerprint."""

    @abstractmethod
    async def invalidate(self, fingerprint: str) -> None:
        """Remove an entry."""

    async def close(self) -> None:
        """Release backend resources."""

    async def lookup_similar(self, embedding: List[float],
                             threshold: Optional[float] = None) -> Optional[CacheEntry]:
        """
        Return the nearest entry if its cosine similarity reaches the threshold.

        Ties on similarity go to the most recently created entry.
        """
        threshold = self.similarity_threshold if threshold is None else threshold
        candidates = await self.nearest(embedding, k=5)
        if not candidates:
            return None
        best_entry, best_score = max(candidates, key=lambda pair: (pair[1], pair[0].created_at))
        if best_score >= threshold:
            return best_entry
        return None

    async def get_or_build(self, fingerprint: str,
                           builder: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """
        Coalesce concurrent builds for one fingerprint.

        Args:
            fingerprint: Query fingerprint
            builder: Coroutine factory computing the value on a miss

        Returns:
            Tuple of (built value, shared flag)
        """
        return await self._single_flight.do(fingerprint, builder)

    def build_in_flight(self, fingerprint: str) -> bool:
        return self._single_flight.in_flight(fingerprint)

    @staticmethod
    def _rank(scored: List[Tuple[CacheEntry, float]], k: int) -> List[Tuple[CacheEntry, float]]:
        scored.sort(key=lambda pair: (pair[1], pair[0].created_at), reverse=True)
        return scored[:k]
