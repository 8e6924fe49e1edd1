"""
Client for the model-serving collaborator: classification, expansion and embeddings.
"""
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from models.errors import ModelError, ModelTimeout
from models.parameters import VALID_INTENTS
from models.query import Classification, ExpansionTerm, ModelTier
from utils.llm import get_llm, get_embeddings, parse_json_response
from utils.prompts import INTENT_CLASSIFICATION_PROMPT, QUERY_EXPANSION_PROMPT

logger = logging.getLogger(__name__)


class ModelClient:
    """
    Async facade over the language-model tiers.

    Every call runs under its own timeout and raises ModelTimeout or
    ModelError; callers decide whether that is fatal. Chat models are
    created lazily per tier so constructing the client never touches the network.
    """

    def __init__(self,
                 llm_factory: Callable[[ModelTier], Any] = get_llm,
                 embeddings_factory: Callable[[], Any] = get_embeddings,
                 model_timeout_ms: int = 60,
                 embed_timeout_ms: int = 80,
                 timeout_overrides: Optional[Dict[ModelTier, int]] = None):
        """
        Initialize the model client.

        Args:
            llm_factory: Builds a chat model for a tier
            embeddings_factory: Builds the embeddings model
            model_timeout_ms: Default timeout for classify/expand
            embed_timeout_ms: Timeout for embedding calls
            timeout_overrides: Per-tier timeout overrides (e.g. the local model)
        """
        self._llm_factory = llm_factory
        self._embeddings_factory = embeddings_factory
        self.model_timeout_ms = model_timeout_ms
        self.embed_timeout_ms = embed_timeout_ms
        self.timeout_overrides = timeout_overrides or {}
        self._llms: Dict[ModelTier, Any] = {}
        self._embeddings = None
        self.call_counts: Dict[str, int] = {"classify": 0, "expand": 0, "embed": 0}

    def _llm(self, tier: ModelTier, operation: str):
        if tier not in self._llms:
            try:
                self._llms[tier] = self._llm_factory(tier)
            except Exception as e:
                raise ModelError(operation, tier.value, f"Model unavailable: {str(e)}") from e
        return self._llms[tier]

    def _timeout_for(self, tier: ModelTier) -> int:
        return self.timeout_overrides.get(tier, self.model_timeout_ms)

    async def _call(self, operation: str, tier: ModelTier, timeout_ms: int, coro_factory):
        """Run one model call under a timeout, mapping failures onto the taxonomy."""
        self.call_counts[operation] = self.call_counts.get(operation, 0) + 1
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(coro_factory(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning(f"Model call '{operation}' timed out on tier {tier.value} after {timeout_ms}ms")
            raise ModelTimeout(operation, tier.value, timeout_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Model call '{operation}' failed on tier {tier.value}: {str(e)}")
            raise ModelError(operation, tier.value, str(e)) from e
        logger.debug(f"Model call '{operation}' on tier {tier.value} took {(time.perf_counter() - start) * 1000:.1f}ms")
        return result

    async def classify(self, text: str, tier: ModelTier = ModelTier.LOW_COST) -> Classification:
        """
        Classify intent and count entities.

        Args:
            text: Sanitized query text
            tier: Model tier

        Returns:
            Classification with a validated intent
        """
        chain = INTENT_CLASSIFICATION_PROMPT | self._llm(tier, "classify")
        response = await self._call("classify", tier, self._timeout_for(tier),
                                    lambda: chain.ainvoke({"query": text}))
        try:
            payload = parse_json_response(response.content)
            intent = str(payload.get("intent", "")).strip().upper()
            entity_count = max(0, int(payload.get("entity_count", 0)))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            raise ModelError("classify", tier.value, f"Unparseable classification: {str(e)}") from e

        if intent not in VALID_INTENTS:
            logger.warning(f"Invalid intent received: {intent}, using default")
            intent = "PRODUCT_DISCOVERY"
        return Classification(intent=intent, entity_count=entity_count)

    async def expand(self, text: str, tier: ModelTier = ModelTier.LOW_COST,
                     max_terms: int = 8) -> List[ExpansionTerm]:
        """
        Ask the model for expansion terms, highest confidence first.

        Plain string items are accepted; their confidence decays with position.
        """
        chain = QUERY_EXPANSION_PROMPT | self._llm(tier, "expand")
        response = await self._call("expand", tier, self._timeout_for(tier),
                                    lambda: chain.ainvoke({"query": text, "max_terms": max_terms}))
        try:
            payload = parse_json_response(response.content)
        except json.JSONDecodeError as e:
            raise ModelError("expand", tier.value, f"Unparseable expansion: {str(e)}") from e
        if not isinstance(payload, list):
            raise ModelError("expand", tier.value, "Expansion response is not a JSON array")

        terms = []
        for position, item in enumerate(payload):
            if isinstance(item, str):
                term, confidence = item, 1.0 / (position + 1)
            elif isinstance(item, dict) and item.get("term"):
                term = str(item["term"])
                try:
                    confidence = float(item.get("confidence", 0.5))
                except (TypeError, ValueError):
                    confidence = 0.5
            else:
                continue
            term = term.strip()
            if term:
                terms.append(ExpansionTerm(term=term, confidence=confidence))

        terms.sort(key=lambda t: t.confidence, reverse=True)
        return terms

    async def embed(self, text: str, tier: ModelTier = ModelTier.LOW_COST) -> List[float]:
        """Embed text; the embedding model is shared across tiers."""
        if self._embeddings is None:
            try:
                self._embeddings = self._embeddings_factory()
            except Exception as e:
                raise ModelError("embed", tier.value, f"Embeddings unavailable: {str(e)}") from e
        embeddings = self._embeddings
        vector = await self._call("embed", tier, self.embed_timeout_ms,
                                  lambda: embeddings.aembed_query(text))
        return [float(v) for v in vector]
