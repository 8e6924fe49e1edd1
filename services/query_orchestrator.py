"""
Orchestrator for the query understanding pipeline.

Sequence per request: sanitize, exact cache lookup alongside intent
classification, routing, expansion under single-flight, build, cache store,
execution and the fallback chain.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import CACHE_CONFIG, FEATURES, LOCAL_LLM_CONFIG, PIPELINE_CONFIG
from data.rule_table import RuleTable, load_rule_table
from models.errors import (
    BuildError,
    ExpansionUnavailable,
    ModelUnavailable,
    PipelineError,
    PipelineTimeout,
)
from models.parameters import QueryParams, SearchFilters
from models.query import (
    CacheEntry,
    Classification,
    ExpansionResult,
    FallbackReason,
    ModelTier,
    SearchResponse,
    StructuredQuery,
)
from pipeline.expansion import ExpansionEngine
from pipeline.fallback import FallbackController
from pipeline.fingerprint import fingerprint_normalized, normalize_query
from pipeline.parameter_extraction import merge_text_parameters
from pipeline.query_builder import QueryBuilder
from pipeline.routing import select_model_tier
from pipeline.sanitizer import Sanitizer
from services import telemetry_service as events
from services.telemetry_service import TelemetryService

logger = logging.getLogger(__name__)

@dataclass
class QueryPlan:
    """Everything known about a request once understanding has finished."""
    clean_text: str
    fingerprint: str
    filters: SearchFilters
    params: QueryParams
    redaction_count: int = 0
    query: Optional[StructuredQuery] = None
    expansion: Optional[ExpansionResult] = None
    cache_hit: bool = False
    deadline: Optional[float] = None
    reason: FallbackReason = FallbackReason.NONE
    stage_latency_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.expansion and self.expansion.degraded)

    @property
    def embedding(self) -> Optional[List[float]]:
        return self.expansion.vector if self.expansion else None

class QueryOrchestrator:
    """
    Turns raw query text into a structured query and drives its execution.

    Constructed once per process; shares the cache, model client and
    executor across requests. Call close() on shutdown.
    """

    def __init__(self,
                 cache,
                 model_client,
                 executor,
                 rule_table: Optional[RuleTable] = None,
                 telemetry: Optional[TelemetryService] = None,
                 review_log=None,
                 sanitizer: Optional[Sanitizer] = None,
                 pipeline_config: Optional[Dict] = None):
        """
        Initialize the orchestrator.

        Args:
            cache: Query cache store
            model_client: Model-service client (classify, expand, embed)
            executor: Search-execution collaborator
            rule_table: Expansion rule table; loaded from config if omitted
            telemetry: Telemetry sink
            review_log: Offline review log for failed queries
            sanitizer: Sanitizer instance
            pipeline_config: Overrides for PIPELINE_CONFIG
        """
        self.config = {**PIPELINE_CONFIG, **(pipeline_config or {})}
        self.stage_timeouts_ms = {**PIPELINE_CONFIG["stage_timeouts_ms"],
                                  **self.config.get("stage_timeouts_ms", {})}

        self.cache = cache
        self.model_client = model_client
        self.executor = executor
        self.rule_table = rule_table if rule_table is not None else load_rule_table(self.config["rule_table_path"])
        self.telemetry = telemetry or TelemetryService(enabled=FEATURES["log_telemetry"])
        self.review_log = review_log
        self.sanitizer = sanitizer or Sanitizer()

        self.builder = QueryBuilder(
            default_k=self.config["vector_k"],
            max_k=self.config["vector_k_max"],
            default_limit=self.config["result_limit"],
        )
        self.expansion_engine = ExpansionEngine(
            self.rule_table,
            model_client,
            max_terms=self.config["max_terms"],
            model_timeout_ms=self.config["model_timeout_ms"],
            embed_timeout_ms=self.config["embed_timeout_ms"],
            local_timeout_ms=LOCAL_LLM_CONFIG["timeout_ms"],
        )

        recorder = None
        if review_log is not None and FEATURES["record_failed_queries"]:
            recorder = review_log.record
        self.fallback = FallbackController(
            executor,
            self.builder,
            cache=cache,
            expansion_engine=self.expansion_engine,
            review_recorder=recorder,
            result_threshold=self.config["relax_threshold"],
            max_relaxations=self.config["max_relaxations"],
            widen_percent=self.config["widen_percent"],
            nearest_k=CACHE_CONFIG["nearest_k"],
            similarity_threshold=getattr(cache, "similarity_threshold", CACHE_CONFIG["similarity_threshold"]),
        )
        logger.info("Query orchestrator initialized")

    async def understand_and_build(self,
                                   raw_query: str,
                                   explicit_filters: Optional[SearchFilters] = None,
                                   budget_ms: Optional[int] = None) -> StructuredQuery:
        """
        Produce a structured query without executing it.

        Args:
            raw_query: Untrusted query text
            explicit_filters: Caller-supplied structured filters
            budget_ms: Overall latency budget

        Returns:
            StructuredQuery; the plain lexical query when understanding failed

        Raises:
            PipelineError: If not even a plain lexical query can be built
        """
        plan = await self._plan(raw_query, explicit_filters, budget_ms)
        if plan.query is not None:
            return plan.query
        try:
            return self.builder.build_plain_lexical(plan.clean_text, plan.filters, plan.params)
        except BuildError as e:
            raise PipelineError(plan.clean_text, plan.reason.value, e) from e

    async def search(self,
                     raw_query: str,
                     explicit_filters: Optional[SearchFilters] = None,
                     budget_ms: Optional[int] = None) -> SearchResponse:
        """
        Understand, build and execute a query, falling back as needed.

        Args:
            raw_query: Untrusted query text
            explicit_filters: Caller-supplied structured filters
            budget_ms: Overall latency budget, covering execution and fallbacks

        Returns:
            SearchResponse with results and fallback history

        Raises:
            PipelineError: If execution is unavailable or every fallback failed
        """
        start_time = time.time()
        plan = await self._plan(raw_query, explicit_filters, budget_ms)

        embedding = plan.embedding
        if embedding is None and plan.reason in (FallbackReason.MODEL_FAILURE,
                                                 FallbackReason.EXPANSION_UNAVAILABLE):
            embedding = await self._fallback_embedding(plan.clean_text)

        exec_start = time.time()
        result = await self.fallback.run(
            plan.query,
            plan.clean_text,
            filters=plan.filters,
            params=plan.params,
            embedding=embedding,
            reason=plan.reason,
            deadline=plan.deadline,
        )
        self._record_stage(plan, "execute", exec_start)

        if result.fallback.strategy.value != "none":
            self.telemetry.emit(events.FALLBACK, strategy=result.fallback.strategy.value,
                                reason=result.fallback.reason.value, history=result.history)

        execution_time = time.time() - start_time
        if not result.succeeded:
            reason = result.fallback.reason.value
            self.telemetry.emit(events.QUERY_COMPLETE, terminal_state=result.terminal_state,
                                degraded=plan.degraded, execution_time=execution_time, error=reason)
            logger.error(f"Query pipeline failed: {reason} (history: {' -> '.join(result.history)})")
            raise PipelineError(plan.clean_text, reason)

        self.telemetry.emit(events.QUERY_COMPLETE, terminal_state=result.terminal_state,
                            degraded=plan.degraded, execution_time=execution_time)
        logger.info(f"Query finished in {result.terminal_state} with {result.outcome.result_count} "
                    f"result(s) in {execution_time * 1000:.1f}ms")

        return SearchResponse(
            query_text=plan.clean_text,
            fingerprint=plan.fingerprint,
            structured_query=result.query,
            result_count=result.outcome.result_count,
            results=result.outcome.results,
            cache_hit=plan.cache_hit,
            degraded=plan.degraded,
            terminal_state=result.terminal_state,
            fallback_history=result.history,
            stage_latency_ms=plan.stage_latency_ms,
        )

    async def invalidate(self, fingerprint: str):
        await self.cache.invalidate(fingerprint)
        logger.info(f"Invalidated cache entry {fingerprint[:12]}")

    async def close(self):
        """Release the cache, executor and review log."""
        await self.cache.close()
        close = getattr(self.executor, "close", None)
        if close is not None:
            await close()
        if self.review_log is not None:
            self.review_log.close()
        logger.info("Query orchestrator closed")

    async def _plan(self,
                    raw_query: str,
                    explicit_filters: Optional[SearchFilters],
                    budget_ms: Optional[int]) -> QueryPlan:
        budget_ms = budget_ms or self.config["budget_ms"]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget_ms / 1000.0

        start = time.time()
        clean_text, redactions = self.sanitizer.sanitize(raw_query)
        normalized = normalize_query(clean_text)
        filters = explicit_filters or SearchFilters()
        if FEATURES["extract_price_from_text"]:
            filters = merge_text_parameters(clean_text, filters)

        plan = QueryPlan(
            clean_text=clean_text,
            fingerprint=fingerprint_normalized(normalized),
            filters=filters,
            params=QueryParams(result_limit=self.config["result_limit"], trace_budget_ms=budget_ms),
            redaction_count=redactions,
            deadline=deadline,
        )
        self._record_stage(plan, "sanitize", start)
        if redactions:
            self.telemetry.emit(events.REDACTION, count=redactions)

        if not clean_text:
            # Nothing to understand; the floor query runs on the filters alone
            plan.reason = FallbackReason.BUILD_ERROR
            return plan

        try:
            await asyncio.wait_for(self._understand(plan, normalized, deadline),
                                   timeout=budget_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning(f"{PipelineTimeout(budget_ms)}; using plain lexical query")
            plan.query = None
            plan.reason = FallbackReason.BUDGET_EXCEEDED
        return plan

    def _remaining_ms(self, deadline: float) -> int:
        return max(0, int((deadline - asyncio.get_running_loop().time()) * 1000))

    def _stage_timeout(self, stage: str) -> float:
        # The overall budget is enforced around the whole understanding step
        return self.stage_timeouts_ms[stage] / 1000.0

    async def _understand(self, plan: QueryPlan, normalized: str, deadline: float):
        start = time.time()
        lookup_task = asyncio.ensure_future(asyncio.wait_for(
            self.cache.lookup_exact(plan.fingerprint),
            timeout=self._stage_timeout("cache_lookup")))
        classify_task = asyncio.ensure_future(asyncio.wait_for(
            self.model_client.classify(plan.clean_text, tier=ModelTier.LOW_COST),
            timeout=self._stage_timeout("classify")))

        try:
            entry = await self._lookup(lookup_task)
            self._record_stage(plan, "cache_lookup", start)

            if entry is not None and entry.expansion is not None:
                classify_task.cancel()
                self.telemetry.emit(events.CACHE_HIT, fingerprint=plan.fingerprint)
                logger.info(f"Cache hit for {plan.fingerprint[:12]}")
                plan.cache_hit = True
                plan.expansion = entry.expansion
                self._build(plan, deadline)
                return

            self.telemetry.emit(events.CACHE_MISS, fingerprint=plan.fingerprint)
            classification = await self._classification(classify_task)
            self._record_stage(plan, "classify", start)
        except asyncio.CancelledError:
            lookup_task.cancel()
            classify_task.cancel()
            raise

        tier = select_model_tier(
            plan.redaction_count,
            classification.entity_count,
            entity_threshold=self.config["entity_threshold"],
        )
        logger.info(f"Routing query (intent={classification.intent}, "
                    f"entities={classification.entity_count}) to tier {tier.value}")

        start = time.time()
        try:
            plan.expansion, _ = await self.cache.get_or_build(
                plan.fingerprint,
                lambda: self._expand_and_store(plan, tier, normalized))
        except ExpansionUnavailable as e:
            logger.warning(f"Expansion unavailable: {str(e)}")
            plan.reason = FallbackReason.EXPANSION_UNAVAILABLE
            return
        except (ModelUnavailable, asyncio.TimeoutError):
            logger.warning("Expansion stage timed out")
            plan.reason = FallbackReason.MODEL_FAILURE
            return
        finally:
            self._record_stage(plan, "expand", start)

        if plan.expansion.degraded:
            self.telemetry.emit(events.DEGRADED, tier=tier.value)

        self._build(plan, deadline)

    async def _expand_and_store(self, plan: QueryPlan, tier: ModelTier, normalized: str) -> ExpansionResult:
        """
        Single-flight body: expand and cache under one latch.

        Waiters that join receive the expansion and build their own query;
        the cache entry is written before the latch is released.
        """
        # A build that finished after this request's lookup has already stored its entry
        entry = await self._lookup(asyncio.wait_for(
            self.cache.lookup_exact(plan.fingerprint),
            timeout=self._stage_timeout("cache_lookup")))
        if entry is not None and entry.expansion is not None:
            logger.info(f"Entry for {plan.fingerprint[:12]} stored by a concurrent build")
            plan.cache_hit = True
            return entry.expansion

        expansion = await asyncio.wait_for(
            self.expansion_engine.expand(plan.clean_text, tier),
            timeout=self._stage_timeout("expand"))
        if expansion.degraded:
            return expansion

        try:
            query = self.builder.build(expansion, plan.filters, plan.params)
        except BuildError:
            return expansion
        await self._store(plan, normalized, expansion, query)
        return expansion

    def _build(self, plan: QueryPlan, deadline: float) -> bool:
        start = time.time()
        plan.params = plan.params.model_copy(update={"trace_budget_ms": self._remaining_ms(deadline)})
        try:
            plan.query = self.builder.build(plan.expansion, plan.filters, plan.params)
            return True
        except BuildError as e:
            logger.warning(f"Build failed: {str(e)}")
            plan.reason = FallbackReason.BUILD_ERROR
            return False
        finally:
            self._record_stage(plan, "build", start)

    async def _lookup(self, lookup_task) -> Optional[CacheEntry]:
        try:
            return await lookup_task
        except asyncio.TimeoutError:
            logger.warning("Cache lookup timed out, treating as a miss")
        except Exception as e:
            logger.error(f"Cache lookup failed, treating as a miss: {str(e)}")
        return None

    async def _classification(self, classify_task) -> Classification:
        try:
            return await classify_task
        except (ModelUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Classification unavailable, using defaults: {str(e) or 'timeout'}")
            return Classification()

    async def _store(self, plan: QueryPlan, normalized: str,
                     expansion: ExpansionResult, query: StructuredQuery):
        start = time.time()
        entry = CacheEntry(
            fingerprint=plan.fingerprint,
            normalized_text=normalized,
            structured_query=query,
            embedding_vector=expansion.vector,
            ttl=getattr(self.cache, "default_ttl", CACHE_CONFIG["ttl"]),
            expansion=expansion,
        )
        try:
            await asyncio.wait_for(self.cache.store(entry),
                                   timeout=self._stage_timeout("cache_store"))
        except asyncio.TimeoutError:
            logger.warning("Cache store timed out, entry not cached")
        except Exception as e:
            logger.error(f"Cache store failed: {str(e)}")
        finally:
            self._record_stage(plan, "cache_store", start)

    async def _fallback_embedding(self, clean_text: str) -> Optional[List[float]]:
        """Best-effort vector for the nearest-cached fallback."""
        try:
            return await asyncio.wait_for(
                self.model_client.embed(clean_text, tier=ModelTier.LOW_COST),
                timeout=self.config["embed_timeout_ms"] / 1000.0)
        except (ModelUnavailable, asyncio.TimeoutError):
            logger.info("No embedding for nearest-cached fallback")
            return None

    def _record_stage(self, plan: QueryPlan, stage: str, start: float):
        latency_ms = (time.time() - start) * 1000
        plan.stage_latency_ms[stage] = latency_ms
        self.telemetry.stage(stage, latency_ms)

def build_orchestrator() -> QueryOrchestrator:
    """Create the process-wide orchestrator and its collaborators from configuration."""
    from cache.cache_factory import create_cache_store
    from config import DB_CONFIG
    from data.review_log import ReviewLog
    from services.model_client import ModelClient
    from services.search_client import HttpSearchExecutor

    model_client = ModelClient(
        model_timeout_ms=PIPELINE_CONFIG["model_timeout_ms"],
        embed_timeout_ms=PIPELINE_CONFIG["embed_timeout_ms"],
        timeout_overrides={ModelTier.LOCAL: LOCAL_LLM_CONFIG["timeout_ms"]},
    )
    review_log = None
    if FEATURES["record_failed_queries"]:
        review_log = ReviewLog(DB_CONFIG["connection_string"])

    return QueryOrchestrator(
        cache=create_cache_store(),
        model_client=model_client,
        executor=HttpSearchExecutor(),
        review_log=review_log,
    )
