"""
Structured query, expansion and cache models.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.errors import InvalidFilterError

# Field allow-lists; nothing outside these ever reaches the engine's syntax
ALLOWED_TEXT_FIELDS = frozenset({"search_text", "title", "description"})
ALLOWED_FILTER_FIELDS = frozenset({"price", "brand", "category", "in_stock", "rating"})
VECTOR_FIELD = "embedding"


class MatchMode(str, Enum):
    """How a text clause is matched by the search engine."""
    BROAD_RECALL = "broad_recall"  # any term may match, ranked by match density
    EXACT = "exact"
    PERMISSIVE = "permissive"


class RankingProfile(str, Enum):
    HYBRID = "hybrid"
    HYBRID_FILTERED = "hybrid_filtered"
    LEXICAL = "lexical"
    LEXICAL_FILTERED = "lexical_filtered"
    CONSERVATIVE_LEXICAL = "conservative_lexical"


class ModelTier(str, Enum):
    LOW_COST = "low_cost"
    HIGH_CAPABILITY = "high_capability"
    LOCAL = "local"


class FallbackStrategy(str, Enum):
    NONE = "none"
    RELAX_TERMS = "relax_terms"
    BROADEN_GRAMMAR = "broaden_grammar"
    NEAREST_CACHED = "nearest_cached"
    LOCAL_MODEL = "local_model"


class FallbackReason(str, Enum):
    NONE = "none"
    THIN_RESULTS = "thin_results"
    MODEL_FAILURE = "model_failure"
    EXPANSION_UNAVAILABLE = "expansion_unavailable"
    BUILD_ERROR = "build_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    EXECUTION_UNAVAILABLE = "execution_unavailable"


class TextClause(BaseModel):
    field: str
    term: str
    match_mode: MatchMode


class VectorClause(BaseModel):
    field: str
    vector: List[float]
    k: int


class FilterClause(BaseModel):
    field: str
    operator: str
    value: Any
    weight: float = 1.0


class StructuredQuery(BaseModel):
    """The sole artifact handed to the search-execution collaborator."""
    text_clauses: List[TextClause] = Field(default_factory=list)
    vector_clause: Optional[VectorClause] = None
    filter_clauses: List[FilterClause] = Field(default_factory=list)
    ranking_profile: RankingProfile = RankingProfile.LEXICAL
    result_limit: int = 50
    trace_budget_ms: int = 0

    def to_request_body(self) -> Dict[str, Any]:
        """
        Serialize for the search-execution collaborator.

        Field names are validated again here so nothing outside the
        allow-lists can reach the engine's query syntax.
        """
        text = []
        for clause in self.text_clauses:
            if clause.field not in ALLOWED_TEXT_FIELDS:
                raise InvalidFilterError(clause.field)
            text.append({"field": clause.field, "query": clause.term, "mode": clause.match_mode.value})

        filters = []
        for clause in self.filter_clauses:
            if clause.field not in ALLOWED_FILTER_FIELDS:
                raise InvalidFilterError(clause.field)
            filters.append({"field": clause.field, "op": clause.operator, "value": clause.value})

        body: Dict[str, Any] = {
            "text": text,
            "filters": filters,
            "ranking_profile": self.ranking_profile.value,
            "limit": self.result_limit,
            "timeout_ms": self.trace_budget_ms,
        }
        if self.vector_clause is not None:
            if self.vector_clause.field != VECTOR_FIELD:
                raise InvalidFilterError(self.vector_clause.field)
            body["knn"] = {
                "field": self.vector_clause.field,
                "vector": self.vector_clause.vector,
                "k": self.vector_clause.k,
            }
        return body


class ExpansionTerm(BaseModel):
    term: str
    confidence: float = 1.0


class Classification(BaseModel):
    intent: str = "PRODUCT_DISCOVERY"
    entity_count: int = 0


class ExpansionResult(BaseModel):
    original_text: str
    rule_terms: List[str] = Field(default_factory=list)
    model_terms: List[str] = Field(default_factory=list)
    merged_terms: List[str] = Field(default_factory=list)
    vector: Optional[List[float]] = None
    degraded: bool = False
    model_tier: Optional[ModelTier] = None


class CacheEntry(BaseModel):
    fingerprint: str
    normalized_text: str
    structured_query: StructuredQuery
    embedding_vector: Optional[List[float]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ttl: int = 3600
    expansion: Optional[ExpansionResult] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() >= self.ttl


class SearchOutcome(BaseModel):
    """What the search-execution collaborator reports back."""
    result_count: int = 0
    results: List[Dict[str, Any]] = Field(default_factory=list)
    latency_ms: float = 0.0


class FallbackState(BaseModel):
    attempt_index: int = 0
    strategy: FallbackStrategy = FallbackStrategy.NONE
    reason: FallbackReason = FallbackReason.NONE


class FallbackOutcome(BaseModel):
    """Terminal result of driving the fallback controller."""
    terminal_state: str
    query: Optional[StructuredQuery] = None
    outcome: Optional[SearchOutcome] = None
    fallback: FallbackState = Field(default_factory=FallbackState)
    history: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.outcome is not None


class SearchResponse(BaseModel):
    query_text: str
    fingerprint: str
    structured_query: StructuredQuery
    result_count: int = 0
    results: List[Dict[str, Any]] = Field(default_factory=list)
    cache_hit: bool = False
    degraded: bool = False
    terminal_state: str = "done"
    fallback_history: List[str] = Field(default_factory=list)
    stage_latency_ms: Dict[str, float] = Field(default_factory=dict)
