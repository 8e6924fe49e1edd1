"""
Tests for the relaxation/fallback controller.
"""
import unittest
import sys
import os
import asyncio
from unittest.mock import AsyncMock
import logging

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from cache.memory_store import InMemoryQueryCache
from data.rule_table import RuleTable
from models.errors import ModelError
from models.parameters import PriceRange, SearchFilters
from models.query import (
    CacheEntry,
    ExpansionResult,
    FallbackReason,
    FallbackStrategy,
    FilterClause,
    MatchMode,
    ModelTier,
    StructuredQuery,
    TextClause,
)
from pipeline.expansion import ExpansionEngine
from pipeline.fallback import FallbackController, drop_lowest_weight_filter, widen_numeric_filters
from pipeline.query_builder import QueryBuilder
from stubs import StubModelClient, StubSearchExecutor, unavailable

# Disable logging during tests
logging.disable(logging.CRITICAL)

FILTERS = SearchFilters(price_range=PriceRange(max=500), brands=["Sony"])

def primary_query(filters=FILTERS):
    expansion = ExpansionResult(original_text="4k tv", merged_terms=["UHD", "HDR10"], vector=[1.0, 0.0])
    return QueryBuilder().build(expansion, filters)

class TestFallbackHelpers(unittest.TestCase):

    def test_drop_lowest_weight_filter(self):
        query, removed = drop_lowest_weight_filter(primary_query())
        self.assertEqual(removed.field, "brand")
        self.assertEqual([c.field for c in query.filter_clauses], ["price"])

    def test_drop_ties_prefer_last_clause(self):
        query = StructuredQuery(filter_clauses=[
            FilterClause(field="brand", operator="in", value=["a"], weight=0.5),
            FilterClause(field="category", operator="in", value=["b"], weight=0.5),
        ])
        _, removed = drop_lowest_weight_filter(query)
        self.assertEqual(removed.field, "category")

    def test_nothing_to_drop(self):
        query, removed = drop_lowest_weight_filter(StructuredQuery())
        self.assertIsNone(removed)

    def test_widen_numeric_filters(self):
        clauses = [
            FilterClause(field="price", operator="<", value=500),
            FilterClause(field="price", operator=">=", value=100),
            FilterClause(field="in_stock", operator="=", value=True),
            FilterClause(field="brand", operator="in", value=["Sony"]),
        ]
        widened = widen_numeric_filters(clauses, 15)
        self.assertAlmostEqual(widened[0].value, 575)
        self.assertAlmostEqual(widened[1].value, 85)
        self.assertIs(widened[2].value, True)
        self.assertEqual(widened[3].value, ["Sony"])


class TestFallbackController(unittest.IsolatedAsyncioTestCase):
    """Tests for the fallback state machine."""

    def controller(self, executor, **kwargs):
        return FallbackController(executor, QueryBuilder(), **kwargs)

    async def test_enough_results_finish_in_primary(self):
        executor = StubSearchExecutor([60])
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS)
        self.assertEqual(outcome.history, ["primary", "done"])
        self.assertEqual(outcome.terminal_state, "done")
        self.assertEqual(outcome.fallback.strategy, FallbackStrategy.NONE)
        self.assertEqual(outcome.outcome.result_count, 60)

    async def test_thin_results_relax_then_done(self):
        """10 results, then 80 after relaxation: primary -> relaxed -> done."""
        executor = StubSearchExecutor([10, 80])
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS)
        self.assertEqual(outcome.history, ["primary", "relaxed", "done"])
        self.assertEqual(outcome.outcome.result_count, 80)
        self.assertEqual(outcome.fallback.strategy, FallbackStrategy.RELAX_TERMS)
        self.assertEqual(outcome.fallback.reason, FallbackReason.THIN_RESULTS)
        self.assertEqual(outcome.fallback.attempt_index, 1)
        self.assertEqual([c.field for c in executor.queries[1].filter_clauses], ["price"])

    async def test_nothing_to_relax_goes_to_broadened(self):
        executor = StubSearchExecutor([10, 5])
        outcome = await self.controller(executor).run(primary_query(None), "4k tv")
        self.assertEqual(outcome.history, ["primary", "relaxed", "broadened", "done"])
        # Relaxed had nothing to drop and did not execute
        self.assertEqual(len(executor.queries), 2)
        self.assertTrue(all(c.match_mode == MatchMode.PERMISSIVE for c in executor.queries[1].text_clauses))
        self.assertEqual(outcome.outcome.result_count, 5)

    async def test_broadened_widens_price(self):
        executor = StubSearchExecutor([10, 10, 20])
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS)
        self.assertEqual(outcome.history, ["primary", "relaxed", "broadened", "done"])
        price = executor.queries[2].filter_clauses[0]
        self.assertEqual(price.field, "price")
        self.assertAlmostEqual(price.value, 575)

    async def test_exhausted_chain_runs_plain_lexical(self):
        executor = StubSearchExecutor([10, 0, 0, 7])
        recorder = AsyncMock()
        outcome = await self.controller(executor, review_recorder=recorder).run(
            primary_query(), "4k tv", FILTERS)
        self.assertEqual(outcome.history, ["primary", "relaxed", "broadened", "failed"])
        self.assertEqual(outcome.terminal_state, "failed")
        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.outcome.result_count, 7)
        floor = executor.queries[-1]
        self.assertIsNone(floor.vector_clause)
        self.assertEqual(floor.text_clauses[0].term, "4k tv")
        self.assertEqual(floor.text_clauses[0].match_mode, MatchMode.EXACT)
        recorder.assert_awaited_once()
        self.assertEqual(recorder.call_args.args[0], "4k tv")

    async def test_execution_unavailable(self):
        executor = StubSearchExecutor([unavailable(), unavailable()])
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS)
        self.assertEqual(outcome.history, ["primary", "failed"])
        self.assertFalse(outcome.succeeded)
        self.assertEqual(outcome.fallback.reason, FallbackReason.EXECUTION_UNAVAILABLE)

    async def test_budget_exceeded_goes_straight_to_failed(self):
        executor = StubSearchExecutor([3])
        outcome = await self.controller(executor).run(
            None, "4k tv", reason=FallbackReason.BUDGET_EXCEEDED)
        self.assertEqual(outcome.history, ["primary", "failed"])
        self.assertTrue(outcome.succeeded)
        self.assertEqual(len(executor.queries), 1)

    async def test_model_failure_reuses_nearest_cached_query(self):
        cache = InMemoryQueryCache()
        cached_query = StructuredQuery(
            text_clauses=[TextClause(field="search_text", term="uhd television", match_mode=MatchMode.BROAD_RECALL)]
        )
        await cache.store(CacheEntry(fingerprint="fp", normalized_text="uhd television",
                                     structured_query=cached_query, embedding_vector=[1.0, 0.05]))
        executor = StubSearchExecutor([12])
        outcome = await self.controller(executor, cache=cache).run(
            None, "4k tv", embedding=[1.0, 0.0], reason=FallbackReason.MODEL_FAILURE)
        self.assertEqual(outcome.history, ["primary", "nearest_cached", "done"])
        self.assertEqual(executor.queries[0], cached_query)
        self.assertEqual(outcome.fallback.strategy, FallbackStrategy.NEAREST_CACHED)

    async def test_no_similar_cache_entry_uses_local_model(self):
        client = StubModelClient()
        engine = ExpansionEngine(RuleTable(), client)
        executor = StubSearchExecutor([4])
        outcome = await self.controller(executor, cache=InMemoryQueryCache(), expansion_engine=engine).run(
            None, "4k tv", embedding=[1.0, 0.0], reason=FallbackReason.EXPANSION_UNAVAILABLE)
        self.assertEqual(outcome.history, ["primary", "nearest_cached", "local_model", "done"])
        self.assertEqual(client.expand_tiers, [ModelTier.LOCAL])
        self.assertEqual(outcome.fallback.attempt_index, 2)

    async def test_local_model_failure_ends_failed(self):
        client = StubModelClient(expand_error=ModelError("expand", "local", "ollama down"))

        class Broken(RuleTable):
            def lookup(self, text):
                raise RuntimeError("broken")

        engine = ExpansionEngine(Broken(), client)
        executor = StubSearchExecutor([9])
        outcome = await self.controller(executor, expansion_engine=engine).run(
            None, "4k tv", reason=FallbackReason.MODEL_FAILURE)
        self.assertEqual(outcome.history, ["primary", "nearest_cached", "local_model", "failed"])
        self.assertTrue(outcome.succeeded)

    async def test_unreachable_cache_moves_on_to_local_model(self):
        cache = InMemoryQueryCache()
        cache.nearest = AsyncMock(side_effect=ConnectionError("vector store unreachable"))
        client = StubModelClient()
        engine = ExpansionEngine(RuleTable(), client)
        executor = StubSearchExecutor([4])
        outcome = await self.controller(executor, cache=cache, expansion_engine=engine).run(
            None, "4k tv", embedding=[1.0, 0.0], reason=FallbackReason.EXPANSION_UNAVAILABLE)
        self.assertEqual(outcome.history, ["primary", "nearest_cached", "local_model", "done"])
        self.assertEqual(client.expand_tiers, [ModelTier.LOCAL])

    async def test_spent_budget_skips_to_floor(self):
        executor = StubSearchExecutor([10, 80])
        deadline = asyncio.get_running_loop().time() - 1
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS, deadline=deadline)
        self.assertEqual(outcome.history, ["primary", "failed"])
        self.assertEqual(outcome.fallback.reason, FallbackReason.BUDGET_EXCEEDED)
        # Only the plain lexical floor ran
        self.assertEqual(len(executor.queries), 1)
        self.assertEqual(executor.queries[0].text_clauses[0].match_mode, MatchMode.EXACT)
        self.assertTrue(outcome.succeeded)

    async def test_budget_runs_out_during_relaxation(self):
        executor = StubSearchExecutor([10, 7], delay=0.05)
        deadline = asyncio.get_running_loop().time() + 0.08
        outcome = await self.controller(executor).run(primary_query(), "4k tv", FILTERS, deadline=deadline)
        self.assertEqual(outcome.history, ["primary", "relaxed", "failed"])
        self.assertEqual(outcome.fallback.reason, FallbackReason.BUDGET_EXCEEDED)
        self.assertEqual(outcome.outcome.result_count, 7)

    async def test_primary_never_revisited(self):
        for script in ([60], [10, 80], [10, 10, 0, 1], [unavailable(), 1], [10, 0, 0, 0]):
            outcome = await self.controller(StubSearchExecutor(script)).run(primary_query(), "4k tv", FILTERS)
            self.assertEqual(outcome.history.count("primary"), 1)
            self.assertEqual(outcome.history[0], "primary")
            self.assertIn(outcome.terminal_state, ("done", "failed"))
            relaxations = outcome.history.count("relaxed") + outcome.history.count("broadened")
            self.assertLessEqual(relaxations, 2)

if __name__ == '__main__':
    unittest.main()
