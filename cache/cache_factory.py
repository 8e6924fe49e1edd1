"""
Cache store factory: build the configured backend once per process.
"""
import logging
from typing import Any, Dict, Optional

from cache.base_cache_store import BaseQueryCacheStore
from cache.memory_store import InMemoryQueryCache

logger = logging.getLogger(__name__)


def create_cache_store(cache_config: Optional[Dict[str, Any]] = None) -> BaseQueryCacheStore:
    """
    Create the cache store selected by configuration.

    Args:
        cache_config: The CACHE_CONFIG section (defaults to config.CACHE_CONFIG)

    Returns:
        A cache store instance; the caller owns its lifecycle
    """
    if cache_config is None:
        from config import CACHE_CONFIG
        cache_config = CACHE_CONFIG

    backend = cache_config.get("backend", "memory")
    ttl = cache_config.get("ttl", 3600)
    threshold = cache_config.get("similarity_threshold", 0.85)

    if backend == "qdrant":
        from cache.qdrant_store import QdrantQueryCache
        logger.info(f"Using Qdrant query cache: {cache_config.get('collection_name')}")
        return QdrantQueryCache(
            url=cache_config.get("qdrant_url", "http://localhost:6333"),
            api_key=cache_config.get("qdrant_api_key", ""),
            collection_name=cache_config.get("collection_name", "query_cache"),
            dimension=cache_config.get("dimension", 384),
            default_ttl=ttl,
            similarity_threshold=threshold,
        )

    if backend != "memory":
        raise ValueError(f"Unsupported cache backend: {backend}")

    logger.info("Using in-memory query cache")
    return InMemoryQueryCache(default_ttl=ttl, similarity_threshold=threshold)
