"""
Stub collaborators shared by the pipeline tests.
"""
import asyncio
from typing import Dict, List, Optional

from models.errors import ExecutionUnavailable
from models.query import Classification, ExpansionTerm, ModelTier, SearchOutcome

class StubModelClient:
    """Counting model client with scripted behaviour."""

    def __init__(self,
                 terms: Optional[List[ExpansionTerm]] = None,
                 vector: Optional[List[float]] = None,
                 classification: Optional[Classification] = None,
                 expand_delay: float = 0.0,
                 hang: bool = False,
                 expand_error: Optional[Exception] = None,
                 embed_error: Optional[Exception] = None,
                 classify_error: Optional[Exception] = None,
                 classify_delays: Optional[List[float]] = None):
        self.terms = terms if terms is not None else [
            ExpansionTerm(term="ultra hd", confidence=0.9),
            ExpansionTerm(term="smart tv", confidence=0.6),
        ]
        self.vector = vector if vector is not None else [0.1, 0.2, 0.3, 0.4]
        self.classification = classification or Classification()
        self.expand_delay = expand_delay
        self.hang = hang
        self.expand_error = expand_error
        self.embed_error = embed_error
        self.classify_error = classify_error
        self.classify_delays = list(classify_delays or [])
        self.call_counts: Dict[str, int] = {"classify": 0, "expand": 0, "embed": 0}
        self.expand_tiers: List[ModelTier] = []

    async def _maybe_hang(self):
        if self.hang:
            await asyncio.sleep(10)

    async def classify(self, text: str, tier: ModelTier = ModelTier.LOW_COST) -> Classification:
        self.call_counts["classify"] += 1
        await self._maybe_hang()
        if self.classify_delays:
            await asyncio.sleep(self.classify_delays.pop(0))
        if self.classify_error:
            raise self.classify_error
        return self.classification

    async def expand(self, text: str, tier: ModelTier = ModelTier.LOW_COST,
                     max_terms: int = 8) -> List[ExpansionTerm]:
        self.call_counts["expand"] += 1
        self.expand_tiers.append(tier)
        await self._maybe_hang()
        if self.expand_delay:
            await asyncio.sleep(self.expand_delay)
        if self.expand_error:
            raise self.expand_error
        return list(self.terms)

    async def embed(self, text: str, tier: ModelTier = ModelTier.LOW_COST) -> List[float]:
        self.call_counts["embed"] += 1
        await self._maybe_hang()
        if self.embed_error:
            raise self.embed_error
        return list(self.vector)

class StubSearchExecutor:
    """
    Search executor replaying a script of result counts.

    Script items are ints (result counts) or exceptions to raise; once the
    script is exhausted every call returns ``default`` results. Each call
    takes ``delay`` seconds.
    """

    def __init__(self, script=None, default: int = 60, delay: float = 0.0):
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.queries = []
        self.closed = False

    async def execute(self, query) -> SearchOutcome:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        step = self.script.pop(0) if self.script else self.default
        if isinstance(step, BaseException):
            raise step
        return SearchOutcome(
            result_count=step,
            results=[{"id": f"product-{i}"} for i in range(min(step, 5))],
            latency_ms=1.0
        )

    async def close(self):
        self.closed = True

def unavailable() -> ExecutionUnavailable:
    return ExecutionUnavailable("search cluster unreachable")
