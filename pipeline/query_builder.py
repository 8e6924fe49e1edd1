"""
Query builder: assembles a typed hybrid query from an expansion and explicit filters.

Never interpolates values into query syntax; serialization happens at the
executor boundary through StructuredQuery.to_request_body().
"""
import logging
from typing import Dict, List, Optional, Tuple

from models.errors import BuildError, InvalidFilterError
from models.parameters import QueryParams, SearchFilters
from models.query import (
    ALLOWED_FILTER_FIELDS,
    ExpansionResult,
    FilterClause,
    MatchMode,
    RankingProfile,
    StructuredQuery,
    TextClause,
    VECTOR_FIELD,
    VectorClause,
)

logger = logging.getLogger(__name__)

TEXT_FIELD = "search_text"

# Relaxation weights: the lowest-weight clause is dropped first
FILTER_WEIGHTS: Dict[str, float] = {
    "category": 1.0,
    "price": 0.8,
    "brand": 0.6,
    "rating": 0.4,
    "in_stock": 0.3,
}

# (has_vector_clause, has_filters, degraded) -> profile
RANKING_PROFILES: Dict[Tuple[bool, bool, bool], RankingProfile] = {
    (True, True, False): RankingProfile.HYBRID_FILTERED,
    (True, False, False): RankingProfile.HYBRID,
    (False, True, False): RankingProfile.LEXICAL_FILTERED,
    (False, False, False): RankingProfile.LEXICAL,
    (True, True, True): RankingProfile.CONSERVATIVE_LEXICAL,
    (True, False, True): RankingProfile.CONSERVATIVE_LEXICAL,
    (False, True, True): RankingProfile.CONSERVATIVE_LEXICAL,
    (False, False, True): RankingProfile.CONSERVATIVE_LEXICAL,
}

def select_ranking_profile(has_vector: bool, has_filters: bool, degraded: bool) -> RankingProfile:
    return RANKING_PROFILES[(bool(has_vector), bool(has_filters), bool(degraded))]

def filter_clause(field: str, operator: str, value) -> FilterClause:
    """Create a filter clause, rejecting fields outside the allow-list."""
    if field not in ALLOWED_FILTER_FIELDS:
        raise InvalidFilterError(field)
    return FilterClause(field=field, operator=operator, value=value,
                        weight=FILTER_WEIGHTS.get(field, 0.5))

def build_filter_clauses(filters: Optional[SearchFilters]) -> List[FilterClause]:
    """
    Derive filter clauses from explicit structured parameters.

    Args:
        filters: Caller-supplied filters

    Returns:
        Ordered filter clauses
    """
    if filters is None:
        return []

    clauses = []
    price = filters.price_range
    if price is not None:
        if price.min is not None:
            clauses.append(filter_clause("price", ">=", price.min))
        if price.max is not None:
            clauses.append(filter_clause("price", "<", price.max))
    if filters.brands:
        clauses.append(filter_clause("brand", "in", list(filters.brands)))
    if filters.categories:
        clauses.append(filter_clause("category", "in", list(filters.categories)))
    if filters.in_stock is not None:
        clauses.append(filter_clause("in_stock", "=", filters.in_stock))
    if filters.min_rating is not None:
        clauses.append(filter_clause("rating", ">=", filters.min_rating))
    return clauses

class QueryBuilder:
    """Pure transform from expansion output to StructuredQuery."""

    def __init__(self, default_k: int = 50, max_k: int = 1000,
                 broad_term_threshold: int = 10, default_limit: int = 50):
        self.default_k = default_k
        self.max_k = max_k
        self.broad_term_threshold = broad_term_threshold
        self.default_limit = default_limit

    def _vector_k(self, broad: bool, term_count: int) -> int:
        if broad and term_count > self.broad_term_threshold:
            return min(self.max_k, self.default_k * term_count)
        return self.default_k

    def build(self, expansion: ExpansionResult,
              filters: Optional[SearchFilters] = None,
              params: Optional[QueryParams] = None) -> StructuredQuery:
        """
        Build a structured query.

        Args:
            expansion: Expansion result for the sanitized query
            filters: Explicit structured filters
            params: Result limit and remaining latency budget

        Returns:
            StructuredQuery

        Raises:
            BuildError: If there are no terms, no filters and no text
            InvalidFilterError: If a filter references a non-allowed field
        """
        params = params or QueryParams(result_limit=self.default_limit)
        clean_text = (expansion.original_text or "").strip()
        merged = [t for t in expansion.merged_terms if t and t.strip()]
        filter_clauses = build_filter_clauses(filters)

        if not merged and not filter_clauses and not clean_text:
            raise BuildError("Nothing to query on: no terms, no filters and no text")

        text_clauses: List[TextClause] = []
        broad = bool(merged)
        if broad:
            if clean_text:
                text_clauses.append(TextClause(field=TEXT_FIELD, term=clean_text,
                                               match_mode=MatchMode.BROAD_RECALL))
            seen = {clean_text.lower()}
            for term in merged:
                if term.lower() in seen:
                    continue
                seen.add(term.lower())
                text_clauses.append(TextClause(field=TEXT_FIELD, term=term,
                                               match_mode=MatchMode.BROAD_RECALL))
        elif clean_text:
            text_clauses.append(TextClause(field=TEXT_FIELD, term=clean_text,
                                           match_mode=MatchMode.EXACT))

        vector_clause = None
        if expansion.vector:
            vector_clause = VectorClause(field=VECTOR_FIELD, vector=list(expansion.vector),
                                         k=self._vector_k(broad, len(merged)))

        profile = select_ranking_profile(vector_clause is not None, bool(filter_clauses),
                                         expansion.degraded)

        query = StructuredQuery(
            text_clauses=text_clauses,
            vector_clause=vector_clause,
            filter_clauses=filter_clauses,
            ranking_profile=profile,
            result_limit=params.result_limit,
            trace_budget_ms=params.trace_budget_ms,
        )
        logger.debug(f"Built query: {len(text_clauses)} text clause(s), "
                     f"vector={vector_clause is not None}, {len(filter_clauses)} filter(s), "
                     f"profile={profile.value}")
        return query

    def build_plain_lexical(self, clean_text: str,
                            filters: Optional[SearchFilters] = None,
                            params: Optional[QueryParams] = None) -> StructuredQuery:
        """
        Build the floor query: the sanitized, unexpanded text as a lexical search.

        Raises:
            BuildError: If there is neither text nor a filter
        """
        params = params or QueryParams(result_limit=self.default_limit)
        clean_text = (clean_text or "").strip()
        filter_clauses = build_filter_clauses(filters)
        if not clean_text and not filter_clauses:
            raise BuildError("Nothing to query on: empty text and no filters")

        text_clauses = []
        if clean_text:
            text_clauses.append(TextClause(field=TEXT_FIELD, term=clean_text, match_mode=MatchMode.EXACT))
        return StructuredQuery(
            text_clauses=text_clauses,
            filter_clauses=filter_clauses,
            ranking_profile=(RankingProfile.LEXICAL_FILTERED if filter_clauses else RankingProfile.LEXICAL),
            result_limit=params.result_limit,
            trace_budget_ms=params.trace_budget_ms,
        )
