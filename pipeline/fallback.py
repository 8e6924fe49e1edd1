"""
Relaxation/fallback controller built as a LangGraph state machine.

States: primary -> relaxed -> broadened for thin results, primary ->
nearest_cached -> local_model for model failures, and failed as the floor.
Primary is only ever the entry node, so it is never revisited.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from langgraph.graph import StateGraph, END

from models.errors import BuildError, ExecutionUnavailable, ExpansionUnavailable
from models.parameters import QueryParams, SearchFilters
from models.query import (
    FallbackOutcome,
    FallbackReason,
    FallbackState,
    FallbackStrategy,
    FilterClause,
    MatchMode,
    SearchOutcome,
    StructuredQuery,
)
from models.state import FallbackGraphState
from pipeline.query_builder import QueryBuilder

logger = logging.getLogger(__name__)

PRIMARY = "primary"
RELAXED = "relaxed"
BROADENED = "broadened"
NEAREST_CACHED = "nearest_cached"
LOCAL_MODEL = "local_model"
FAILED = "failed"
DONE = "done"

MODEL_FAILURE_REASONS = {FallbackReason.MODEL_FAILURE.value, FallbackReason.EXPANSION_UNAVAILABLE.value}
FLOOR_REASONS = {FallbackReason.BUDGET_EXCEEDED.value, FallbackReason.BUILD_ERROR.value}

def drop_lowest_weight_filter(query: StructuredQuery) -> Tuple[StructuredQuery, Optional[FilterClause]]:
    """
    Remove the lowest-weight filter clause (the last one on ties).

    Returns:
        Tuple of (new query, removed clause or None when there was nothing to drop)
    """
    if not query.filter_clauses:
        return query, None
    index = min(range(len(query.filter_clauses)),
                key=lambda i: (query.filter_clauses[i].weight, -i))
    removed = query.filter_clauses[index]
    remaining = [c for i, c in enumerate(query.filter_clauses) if i != index]
    return query.model_copy(update={"filter_clauses": remaining}), removed

def widen_numeric_filters(clauses: List[FilterClause], percent: float) -> List[FilterClause]:
    """Loosen numeric bounds by a percentage; non-numeric clauses pass through."""
    factor = percent / 100.0
    widened = []
    for clause in clauses:
        value = clause.value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if clause.operator in ("<", "<="):
                value = value * (1 + factor)
            elif clause.operator in (">", ">="):
                value = value * (1 - factor)
        widened.append(clause.model_copy(update={"value": value}))
    return widened

def broaden_query(query: StructuredQuery, percent: float) -> StructuredQuery:
    """Switch every text clause to permissive matching and widen numeric filters."""
    text_clauses = [c.model_copy(update={"match_mode": MatchMode.PERMISSIVE}) for c in query.text_clauses]
    return query.model_copy(update={
        "text_clauses": text_clauses,
        "filter_clauses": widen_numeric_filters(query.filter_clauses, percent),
    })

class FallbackController:
    """Drives a structured query through execution and the fallback chain."""

    def __init__(self,
                 executor,
                 builder: QueryBuilder,
                 cache=None,
                 expansion_engine=None,
                 review_recorder: Optional[Callable[[str, str, List[str]], Awaitable[Any]]] = None,
                 result_threshold: int = 50,
                 max_relaxations: int = 2,
                 widen_percent: float = 15.0,
                 nearest_k: int = 5,
                 similarity_threshold: float = 0.85):
        """
        Initialize the fallback controller.

        Args:
            executor: Search-execution collaborator with async execute(query)
            builder: Query builder used for rebuilds and the floor query
            cache: Cache store used by the nearest-cached strategy
            expansion_engine: Engine with expand_local() for the local-model strategy
            review_recorder: Async callback recording failed queries for offline review
            result_threshold: Result count below which results are thin
            max_relaxations: Relaxed/broadened attempts allowed
            widen_percent: Numeric bound widening when broadening
            nearest_k: Candidates fetched by the nearest-cached strategy
            similarity_threshold: Minimum similarity for reusing a cached query
        """
        self.executor = executor
        self.builder = builder
        self.cache = cache
        self.expansion_engine = expansion_engine
        self.review_recorder = review_recorder
        self.result_threshold = result_threshold
        self.max_relaxations = max_relaxations
        self.widen_percent = widen_percent
        self.nearest_k = nearest_k
        self.similarity_threshold = similarity_threshold
        self.graph = self._build_graph()

    def _build_graph(self):
        """Create the LangGraph for the fallback chain."""
        graph = StateGraph(FallbackGraphState)

        graph.add_node(PRIMARY, self._primary)
        graph.add_node(RELAXED, self._relaxed)
        graph.add_node(BROADENED, self._broadened)
        graph.add_node(NEAREST_CACHED, self._nearest_cached)
        graph.add_node(LOCAL_MODEL, self._local_model)
        graph.add_node(FAILED, self._failed)
        graph.add_node(DONE, self._done)

        def route(state):
            return state["next"]

        graph.add_conditional_edges(PRIMARY, route,
                                    {DONE: DONE, RELAXED: RELAXED, NEAREST_CACHED: NEAREST_CACHED, FAILED: FAILED})
        graph.add_conditional_edges(RELAXED, route, {DONE: DONE, BROADENED: BROADENED, FAILED: FAILED})
        graph.add_conditional_edges(BROADENED, route, {DONE: DONE, FAILED: FAILED})
        graph.add_conditional_edges(NEAREST_CACHED, route, {DONE: DONE, LOCAL_MODEL: LOCAL_MODEL, FAILED: FAILED})
        graph.add_conditional_edges(LOCAL_MODEL, route, {DONE: DONE, FAILED: FAILED})

        graph.add_edge(FAILED, END)
        graph.add_edge(DONE, END)

        graph.set_entry_point(PRIMARY)
        return graph.compile()

    async def run(self,
                  query: Optional[StructuredQuery],
                  clean_text: str,
                  filters: Optional[SearchFilters] = None,
                  params: Optional[QueryParams] = None,
                  embedding: Optional[List[float]] = None,
                  reason: FallbackReason = FallbackReason.NONE,
                  deadline: Optional[float] = None) -> FallbackOutcome:
        """
        Execute a query, falling back as needed until a terminal state.

        Args:
            query: Primary structured query (None when building failed)
            clean_text: Sanitized query text
            filters: Explicit filters for rebuilds
            params: Result limit and budget for rebuilds
            embedding: Query vector for the nearest-cached strategy
            reason: Why the chain starts, if the primary attempt is already known bad
            deadline: Event-loop time after which no further attempt runs;
                the chain then goes straight to the failed floor

        Returns:
            FallbackOutcome with the terminal state and visited history
        """
        initial: FallbackGraphState = {
            "clean_text": clean_text,
            "filters": filters,
            "params": params or QueryParams(),
            "query": query,
            "embedding": embedding,
            "deadline": deadline,
            "reason": reason.value,
            "strategy": FallbackStrategy.NONE.value,
            "attempt_index": 0,
            "relaxations": 0,
            "history": [],
            "next": "",
            "outcome": None,
            "error": None,
            "terminal": "",
        }
        final = await self.graph.ainvoke(initial)
        return FallbackOutcome(
            terminal_state=final["terminal"],
            query=final.get("query"),
            outcome=final.get("outcome"),
            fallback=FallbackState(
                attempt_index=final.get("attempt_index", 0),
                strategy=FallbackStrategy(final.get("strategy", FallbackStrategy.NONE.value)),
                reason=FallbackReason(final.get("reason", FallbackReason.NONE.value)),
            ),
            history=final.get("history", []),
            error=final.get("error"),
        )

    def _remaining_s(self, state: FallbackGraphState) -> Optional[float]:
        deadline = state.get("deadline")
        if deadline is None:
            return None
        return deadline - asyncio.get_running_loop().time()

    async def _attempt(self, state: FallbackGraphState,
                       query: StructuredQuery) -> Tuple[Optional[SearchOutcome], Optional[FallbackGraphState]]:
        """
        Execute a query within whatever is left of the latency budget.

        Returns:
            Tuple of (outcome, None) on success, or (None, state routed to failed)
        """
        remaining = self._remaining_s(state)
        try:
            if remaining is None:
                return await self.executor.execute(query), None
            if remaining <= 0:
                raise asyncio.TimeoutError()
            return await asyncio.wait_for(self.executor.execute(query), timeout=remaining), None
        except asyncio.TimeoutError:
            logger.warning("Latency budget exhausted during fallback, going to the floor query")
            return None, {**state, "query": query, "reason": FallbackReason.BUDGET_EXCEEDED.value,
                          "next": FAILED}
        except ExecutionUnavailable as e:
            logger.error(f"Search execution unavailable: {str(e)}")
            return None, {**state, "query": query, "reason": FallbackReason.EXECUTION_UNAVAILABLE.value,
                          "error": str(e), "next": FAILED}

    def _thin(self, outcome: SearchOutcome) -> bool:
        return outcome.result_count < self.result_threshold

    def _advance(self, state: FallbackGraphState, node: str, strategy: FallbackStrategy) -> FallbackGraphState:
        return {
            **state,
            "history": state.get("history", []) + [node],
            "strategy": strategy.value,
            "attempt_index": state.get("attempt_index", 0) + 1,
        }

    async def _primary(self, state: FallbackGraphState) -> FallbackGraphState:
        state = {**state, "history": state.get("history", []) + [PRIMARY]}
        reason = state.get("reason", FallbackReason.NONE.value)

        if reason in MODEL_FAILURE_REASONS:
            logger.info(f"Primary skipped ({reason}), trying nearest cached query")
            return {**state, "next": NEAREST_CACHED}
        if reason in FLOOR_REASONS or state.get("query") is None:
            return {**state, "next": FAILED}

        outcome, failed = await self._attempt(state, state["query"])
        if failed:
            return failed
        if not self._thin(outcome):
            return {**state, "outcome": outcome, "next": DONE}

        logger.info(f"Thin results ({outcome.result_count} < {self.result_threshold}), relaxing filters")
        return {**state, "outcome": outcome, "reason": FallbackReason.THIN_RESULTS.value, "next": RELAXED}

    def _after_relaxation(self, state: FallbackGraphState, outcome: SearchOutcome, next_state: str) -> str:
        if not self._thin(outcome):
            return DONE
        if state["relaxations"] < self.max_relaxations and next_state:
            return next_state
        # Retry budget spent: keep thin results rather than nothing
        return DONE if outcome.result_count > 0 else FAILED

    async def _relaxed(self, state: FallbackGraphState) -> FallbackGraphState:
        state = self._advance(state, RELAXED, FallbackStrategy.RELAX_TERMS)
        state["relaxations"] = state.get("relaxations", 0) + 1

        query, removed = drop_lowest_weight_filter(state["query"])
        if removed is None:
            logger.info("No filter clause to relax, broadening instead")
            next_state = BROADENED if state["relaxations"] < self.max_relaxations else FAILED
            return {**state, "next": next_state}

        logger.info(f"Relaxed filter on '{removed.field}' ({removed.operator})")
        outcome, failed = await self._attempt(state, query)
        if failed:
            return failed
        return {**state, "query": query, "outcome": outcome,
                "next": self._after_relaxation(state, outcome, BROADENED)}

    async def _broadened(self, state: FallbackGraphState) -> FallbackGraphState:
        state = self._advance(state, BROADENED, FallbackStrategy.BROADEN_GRAMMAR)
        state["relaxations"] = state.get("relaxations", 0) + 1

        query = broaden_query(state["query"], self.widen_percent)
        outcome, failed = await self._attempt(state, query)
        if failed:
            return failed
        return {**state, "query": query, "outcome": outcome,
                "next": self._after_relaxation(state, outcome, "")}

    async def _nearest_cached(self, state: FallbackGraphState) -> FallbackGraphState:
        state = self._advance(state, NEAREST_CACHED, FallbackStrategy.NEAREST_CACHED)
        embedding = state.get("embedding")
        if self.cache is None or not embedding:
            return {**state, "next": LOCAL_MODEL}

        try:
            candidates = await self.cache.nearest(embedding, k=self.nearest_k)
        except Exception as e:
            logger.error(f"Nearest cached lookup failed, trying local model: {str(e)}")
            return {**state, "next": LOCAL_MODEL}
        if not candidates or candidates[0][1] < self.similarity_threshold:
            logger.info("No cached query within similarity threshold")
            return {**state, "next": LOCAL_MODEL}

        entry, similarity = candidates[0]
        logger.info(f"Reusing cached query {entry.fingerprint[:12]} (similarity {similarity:.3f})")
        outcome, failed = await self._attempt(state, entry.structured_query)
        if failed:
            return failed
        return {**state, "query": entry.structured_query, "outcome": outcome, "next": DONE}

    async def _local_model(self, state: FallbackGraphState) -> FallbackGraphState:
        state = self._advance(state, LOCAL_MODEL, FallbackStrategy.LOCAL_MODEL)
        if self.expansion_engine is None:
            return {**state, "next": FAILED}

        try:
            expansion = await self.expansion_engine.expand_local(state["clean_text"])
            query = self.builder.build(expansion, state.get("filters"), state.get("params"))
        except (ExpansionUnavailable, BuildError) as e:
            logger.warning(f"Local model fallback failed: {str(e)}")
            return {**state, "next": FAILED}

        outcome, failed = await self._attempt(state, query)
        if failed:
            return failed
        return {**state, "query": query, "outcome": outcome, "next": DONE}

    async def _failed(self, state: FallbackGraphState) -> FallbackGraphState:
        """Floor: record the query and run the sanitized text as a plain lexical search."""
        state = {**state, "history": state.get("history", []) + [FAILED], "terminal": FAILED}
        clean_text = state.get("clean_text", "")

        if self.review_recorder is not None:
            try:
                await self.review_recorder(clean_text, state.get("reason", ""), state["history"])
            except Exception as e:
                logger.error(f"Failed to record query for review: {str(e)}")

        try:
            query = self.builder.build_plain_lexical(clean_text, state.get("filters"), state.get("params"))
        except BuildError as e:
            return {**state, "query": None, "outcome": None, "error": str(e)}

        # The floor runs even when the budget is spent, bounded by the executor's own timeout
        try:
            outcome = await self.executor.execute(query)
        except ExecutionUnavailable as e:
            logger.error(f"Search execution unavailable: {str(e)}")
            return {**state, "query": query, "outcome": None,
                    "reason": FallbackReason.EXECUTION_UNAVAILABLE.value, "error": str(e)}
        return {**state, "query": query, "outcome": outcome, "error": None}

    async def _done(self, state: FallbackGraphState) -> FallbackGraphState:
        return {**state, "history": state.get("history", []) + [DONE], "terminal": DONE}
