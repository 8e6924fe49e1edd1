"""
State definitions for the fallback graph.
"""
from typing import List, Optional, TypedDict

from models.parameters import QueryParams, SearchFilters
from models.query import SearchOutcome, StructuredQuery

class FallbackGraphState(TypedDict, total=False):
    """
    Represents the state of the fallback graph.
    Maintains all information as it flows through the relaxation chain.
    """
    # Core query information
    clean_text: str  # Sanitized, unexpanded query text
    filters: Optional[SearchFilters]  # Explicit filters for rebuilds
    params: QueryParams  # Result limit and budget for rebuilds
    query: Optional[StructuredQuery]  # Query for the next execution
    embedding: Optional[List[float]]  # Query vector for nearest-cached lookup
    deadline: Optional[float]  # Event-loop time by which the chain must finish

    # Fallback bookkeeping
    reason: str  # FallbackReason value that drove the last transition
    strategy: str  # FallbackStrategy value currently applied
    attempt_index: int  # Fallback strategies tried so far
    relaxations: int  # Relaxed/broadened attempts used
    history: List[str]  # States visited, in order
    next: str  # Routing decision of the last node

    # Results and errors
    outcome: Optional[SearchOutcome]  # Last successful execution
    error: Optional[str]  # Error that ended the chain
    terminal: str  # "done" or "failed"
