"""
Tests for query construction: routing, parameter extraction and the builder.
"""
import unittest
import sys
import os
import logging

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.errors import BuildError, InvalidFilterError
from models.parameters import PriceRange, QueryParams, SearchFilters
from models.query import (
    ExpansionResult,
    FilterClause,
    MatchMode,
    ModelTier,
    RankingProfile,
    StructuredQuery,
    TextClause,
)
from pipeline.parameter_extraction import extract_price_range, merge_text_parameters
from pipeline.query_builder import QueryBuilder, build_filter_clauses, filter_clause
from pipeline.routing import select_model_tier

# Disable logging during tests
logging.disable(logging.CRITICAL)

class TestRoutingPolicy(unittest.TestCase):
    """Tests for model-tier routing."""

    def test_simple_query_uses_low_cost(self):
        self.assertEqual(select_model_tier(0, 1), ModelTier.LOW_COST)

    def test_redaction_forces_high_capability(self):
        self.assertEqual(select_model_tier(1, 0), ModelTier.HIGH_CAPABILITY)
        self.assertEqual(select_model_tier(2, 9), ModelTier.HIGH_CAPABILITY)

    def test_many_entities_use_high_capability(self):
        self.assertEqual(select_model_tier(0, 4, entity_threshold=3), ModelTier.HIGH_CAPABILITY)
        self.assertEqual(select_model_tier(0, 3, entity_threshold=3), ModelTier.LOW_COST)

    def test_threshold_is_configurable(self):
        self.assertEqual(select_model_tier(0, 2, entity_threshold=1), ModelTier.HIGH_CAPABILITY)
        self.assertEqual(select_model_tier(0, 5, entity_threshold=5), ModelTier.LOW_COST)


class TestParameterExtraction(unittest.TestCase):
    """Tests for price phrase extraction."""

    def test_under_amount(self):
        price = extract_price_range("4k tv under $500")
        self.assertEqual(price.max, 500)
        self.assertIsNone(price.min)

    def test_over_amount(self):
        price = extract_price_range("laptop over 1k")
        self.assertEqual(price.min, 1000)
        self.assertIsNone(price.max)

    def test_between(self):
        price = extract_price_range("headphones between $50 and $100")
        self.assertEqual((price.min, price.max), (50, 100))

    def test_dollar_range(self):
        price = extract_price_range("shoes $80-$120")
        self.assertEqual((price.min, price.max), (80, 120))

    def test_no_price(self):
        self.assertIsNone(extract_price_range("iphone 15 pro max 256"))
        self.assertIsNone(extract_price_range("ssd over 2TB"))
        self.assertIsNone(extract_price_range(""))

    def test_caller_values_win(self):
        filters = SearchFilters(price_range=PriceRange(max=300), brands=["Sony"])
        merged = merge_text_parameters("tv between $100 and $500", filters)
        self.assertEqual(merged.price_range.max, 300)
        self.assertEqual(merged.price_range.min, 100)
        self.assertEqual(merged.brands, ["Sony"])
        # The caller's object is untouched
        self.assertIsNone(filters.price_range.min)

    def test_merge_without_filters(self):
        merged = merge_text_parameters("tv under 500", None)
        self.assertEqual(merged.price_range.max, 500)


class TestFilterClauses(unittest.TestCase):

    def test_filter_clauses_from_parameters(self):
        filters = SearchFilters(
            price_range=PriceRange(min=100, max=500),
            brands=["Sony", " "],
            categories=["tv"],
            in_stock=True,
            min_rating=4.0
        )
        clauses = build_filter_clauses(filters)
        summary = [(c.field, c.operator, c.value) for c in clauses]
        self.assertEqual(summary, [
            ("price", ">=", 100),
            ("price", "<", 500),
            ("brand", "in", ["Sony"]),
            ("category", "in", ["tv"]),
            ("in_stock", "=", True),
            ("rating", ">=", 4.0),
        ])

    def test_unknown_field_rejected(self):
        with self.assertRaises(InvalidFilterError):
            filter_clause("price; drop", "=", 1)

    def test_request_body_rejects_unknown_fields(self):
        query = StructuredQuery(filter_clauses=[FilterClause(field="password", operator="=", value="x")])
        with self.assertRaises(InvalidFilterError):
            query.to_request_body()
        query = StructuredQuery(text_clauses=[TextClause(field="raw_sql", term="x", match_mode=MatchMode.EXACT)])
        with self.assertRaises(InvalidFilterError):
            query.to_request_body()


class TestQueryBuilder(unittest.TestCase):
    """Tests for the QueryBuilder."""

    def setUp(self):
        self.builder = QueryBuilder()

    def test_broad_recall_with_terms(self):
        expansion = ExpansionResult(original_text="4k tv", merged_terms=["UHD", "HDR10", "4K TV"],
                                    vector=[0.1, 0.2])
        query = self.builder.build(expansion)
        terms = [c.term for c in query.text_clauses]
        self.assertEqual(terms, ["4k tv", "UHD", "HDR10"])
        self.assertTrue(all(c.match_mode == MatchMode.BROAD_RECALL for c in query.text_clauses))
        self.assertEqual(query.vector_clause.k, 50)
        self.assertEqual(query.ranking_profile, RankingProfile.HYBRID)

    def test_exact_without_terms(self):
        query = self.builder.build(ExpansionResult(original_text="sku 1234"))
        self.assertEqual(len(query.text_clauses), 1)
        self.assertEqual(query.text_clauses[0].match_mode, MatchMode.EXACT)
        self.assertIsNone(query.vector_clause)
        self.assertEqual(query.ranking_profile, RankingProfile.LEXICAL)

    def test_large_term_set_scales_k(self):
        terms = [f"term{i}" for i in range(12)]
        query = self.builder.build(ExpansionResult(original_text="tv", merged_terms=terms, vector=[1.0]))
        self.assertEqual(query.vector_clause.k, 600)

        terms = [f"term{i}" for i in range(30)]
        query = self.builder.build(ExpansionResult(original_text="tv", merged_terms=terms, vector=[1.0]))
        self.assertEqual(query.vector_clause.k, 1000)

    def test_filters_select_filtered_profile(self):
        filters = SearchFilters(price_range=PriceRange(max=500))
        expansion = ExpansionResult(original_text="4k tv", merged_terms=["UHD"], vector=[0.1])
        query = self.builder.build(expansion, filters)
        self.assertEqual(query.ranking_profile, RankingProfile.HYBRID_FILTERED)
        self.assertEqual(query.filter_clauses[0].field, "price")
        self.assertEqual(query.filter_clauses[0].operator, "<")
        self.assertEqual(query.filter_clauses[0].value, 500)

    def test_degraded_uses_conservative_profile(self):
        expansion = ExpansionResult(original_text="4k tv", merged_terms=["UHD"], vector=[0.1], degraded=True)
        query = self.builder.build(expansion)
        self.assertEqual(query.ranking_profile, RankingProfile.CONSERVATIVE_LEXICAL)
        self.assertIsNotNone(query.vector_clause)

    def test_build_error_when_nothing_to_query(self):
        with self.assertRaises(BuildError):
            self.builder.build(ExpansionResult(original_text="   "))
        # Filters alone are enough to query on
        query = self.builder.build(ExpansionResult(original_text=""), SearchFilters(in_stock=True))
        self.assertEqual(query.text_clauses, [])
        self.assertEqual(len(query.filter_clauses), 1)

    def test_params_flow_into_query(self):
        query = self.builder.build(ExpansionResult(original_text="tv"),
                                   params=QueryParams(result_limit=10, trace_budget_ms=120))
        self.assertEqual(query.result_limit, 10)
        self.assertEqual(query.trace_budget_ms, 120)
        self.assertEqual(query.to_request_body()["timeout_ms"], 120)

    def test_request_body_shape(self):
        expansion = ExpansionResult(original_text="4k tv", merged_terms=["UHD"], vector=[0.5])
        body = self.builder.build(expansion, SearchFilters(brands=["LG"])).to_request_body()
        self.assertEqual(body["knn"]["field"], "embedding")
        self.assertEqual(body["filters"], [{"field": "brand", "op": "in", "value": ["LG"]}])
        self.assertEqual(body["ranking_profile"], "hybrid_filtered")

    def test_plain_lexical(self):
        query = self.builder.build_plain_lexical("4k tv", SearchFilters(in_stock=True))
        self.assertEqual(query.text_clauses[0].match_mode, MatchMode.EXACT)
        self.assertIsNone(query.vector_clause)
        self.assertEqual(query.ranking_profile, RankingProfile.LEXICAL_FILTERED)
        with self.assertRaises(BuildError):
            self.builder.build_plain_lexical("", None)

if __name__ == '__main__':
    unittest.main()
