"""
Query cache backed by a Qdrant collection for durable, shared deployments.
"""
import logging
import uuid
from typing import List, Optional, Tuple

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models

from cache.base_cache_store import BaseQueryCacheStore
from models.query import CacheEntry

logger = logging.getLogger(__name__)


class QdrantQueryCache(BaseQueryCacheStore):
    """
    Cache store keeping one Qdrant point per query fingerprint.

    The point id is a deterministic UUID derived from the fingerprint, the
    vector is the query embedding and the payload holds the serialized entry.
    """

    def __init__(self,
                 client: Optional[AsyncQdrantClient] = None,
                 url: str = "http://localhost:6333",
                 api_key: str = "",
                 collection_name: str = "query_cache",
                 dimension: int = 384,
                 default_ttl: int = 3600,
                 similarity_threshold: float = 0.85):
        """
        Initialize the Qdrant cache store.

        Args:
            client: Optional pre-built async client (tests inject a mock)
            url: Qdrant server URL
            api_key: Optional API key
            collection_name: Collection holding cache points
            dimension: Embedding dimension
            default_ttl: Entry time-to-live in seconds
            similarity_threshold: Default threshold for similarity lookups
        """
        super().__init__(default_ttl=default_ttl, similarity_threshold=similarity_threshold)
        self.collection_name = collection_name
        self.dimension = dimension
        self.client = client or AsyncQdrantClient(url=url, api_key=api_key or None)
        self._collection_ready = False

    async def _ensure_collection(self):
        """Create the collection on first use if it doesn't exist."""
        if self._collection_ready:
            return
        try:
            if not await self.client.collection_exists(self.collection_name):
                logger.info(f"Creating Qdrant cache collection: {self.collection_name}")
                await self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=qdrant_models.VectorParams(
                        size=self.dimension,
                        distance=qdrant_models.Distance.COSINE
                    )
                )
                await self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name="has_vector",
                    field_schema=qdrant_models.PayloadSchemaType.BOOL
                )
            self._collection_ready = True
        except Exception as e:
            logger.error(f"Error initializing Qdrant cache collection: {str(e)}")
            raise

    @staticmethod
    def point_id(fingerprint: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, fingerprint))

    def _placeholder_vector(self) -> List[float]:
        # Entries without an embedding still need a vector; they are excluded
        # from similarity search by the has_vector payload flag.
        return [1.0] + [0.0] * (self.dimension - 1)

    async def lookup_exact(self, fingerprint: str) -> Optional[CacheEntry]:
        await self._ensure_collection()
        records = await self.client.retrieve(
            collection_name=self.collection_name,
            ids=[self.point_id(fingerprint)],
            with_payload=True
        )
        if not records:
            return None
        entry = CacheEntry.model_validate(records[0].payload["entry"])
        if entry.is_expired():
            await self.invalidate(fingerprint)
            return None
        return entry

    async def nearest(self, embedding: List[float], k: int = 5) -> List[Tuple[CacheEntry, float]]:
        if not embedding:
            return []
        await self._ensure_collection()
        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=list(embedding),
            query_filter=qdrant_models.Filter(must=[
                qdrant_models.FieldCondition(key="has_vector", match=qdrant_models.MatchValue(value=True))
            ]),
            # Over-fetch so lazily expired points do not starve the result
            limit=k * 2,
            with_payload=True
        )
        scored = []
        for point in response.points:
            entry = CacheEntry.model_validate(point.payload["entry"])
            if entry.is_expired():
                continue
            scored.append((entry, float(point.score)))
        return self._rank(scored, k)

    async def store(self, entry: CacheEntry) -> None:
        await self._ensure_collection()
        has_vector = bool(entry.embedding_vector)
        await self.client.upsert(
            collection_name=self.collection_name,
            points=[qdrant_models.PointStruct(
                id=self.point_id(entry.fingerprint),
                vector=list(entry.embedding_vector) if has_vector else self._placeholder_vector(),
                payload={
                    "fingerprint": entry.fingerprint,
                    "has_vector": has_vector,
                    "entry": entry.model_dump(mode="json"),
                }
            )]
        )
        logger.debug(f"Stored cache point for {entry.fingerprint[:12]}")

    async def invalidate(self, fingerprint: str) -> None:
        await self._ensure_collection()
        await self.client.delete(
            collection_name=self.collection_name,
            points_selector=qdrant_models.PointIdsList(points=[self.point_id(fingerprint)])
        )

    async def close(self) -> None:
        await self.client.close()
