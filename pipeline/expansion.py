"""
Query expansion component: rule-table terms joined with model terms and an embedding.
"""
import asyncio
import logging
from typing import List, Optional, Tuple

from data.rule_table import RuleTable
from models.errors import ExpansionUnavailable, ModelTimeout, ModelUnavailable
from models.query import ExpansionResult, ExpansionTerm, ModelTier

logger = logging.getLogger(__name__)

def merge_terms(rule_terms: List[str],
                model_terms: List[ExpansionTerm],
                max_terms: int = 8,
                exclude: Optional[str] = None) -> List[str]:
    """
    Union rule and model terms case-insensitively under a size cap.

    Rule terms are always kept, even beyond the cap. Model terms fill the
    remaining slots in confidence order, so the lowest-confidence ones are
    the first to be dropped.

    Args:
        rule_terms: Terms from the rule table
        model_terms: Terms from the model, any order
        max_terms: Cap on the merged size
        exclude: Query text; model terms equal to it are skipped

    Returns:
        Merged term list
    """
    merged: List[str] = []
    seen = set()
    skip = exclude.lower().strip() if exclude else None

    for term in rule_terms:
        key = term.lower().strip()
        if key and key not in seen:
            seen.add(key)
            merged.append(term.strip())

    ranked = sorted(model_terms, key=lambda t: t.confidence, reverse=True)
    for item in ranked:
        if len(merged) >= max_terms:
            break
        key = item.term.lower().strip()
        if not key or key in seen or key == skip:
            continue
        seen.add(key)
        merged.append(item.term.strip())

    return merged

class ExpansionEngine:
    """
    Produces enriched terms and a query vector for a sanitized query.

    The rule lookup, model expansion and embedding run as sibling tasks and
    are all joined before the result is returned.
    """

    def __init__(self, rule_table: RuleTable, model_client, max_terms: int = 8,
                 model_timeout_ms: int = 60, embed_timeout_ms: int = 80,
                 local_timeout_ms: int = 120):
        """
        Initialize the expansion engine.

        Args:
            rule_table: Read-only rule table
            model_client: Object exposing async expand() and embed()
            max_terms: Cap on merged terms
            model_timeout_ms: Budget for the model expansion call
            embed_timeout_ms: Budget for the embedding call
            local_timeout_ms: Budget for the local fallback model
        """
        self.rule_table = rule_table
        self.model_client = model_client
        self.max_terms = max_terms
        self.model_timeout_ms = model_timeout_ms
        self.embed_timeout_ms = embed_timeout_ms
        self.local_timeout_ms = local_timeout_ms

    @staticmethod
    async def _bounded(coro, operation: str, tier: ModelTier, timeout_ms: int):
        try:
            return await asyncio.wait_for(coro, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise ModelTimeout(operation, tier.value, timeout_ms)

    def _rule_terms(self, clean_text: str) -> Tuple[List[str], Optional[Exception]]:
        try:
            return self.rule_table.lookup(clean_text), None
        except Exception as e:
            logger.error(f"Rule lookup failed: {str(e)}")
            return [], e

    async def expand(self, clean_text: str, tier: ModelTier = ModelTier.LOW_COST) -> ExpansionResult:
        """
        Expand a sanitized query.

        Args:
            clean_text: Sanitized query text
            tier: Model tier chosen by the routing policy

        Returns:
            ExpansionResult; degraded when the model expansion failed

        Raises:
            ExpansionUnavailable: If both the rule lookup and the model failed
        """
        rule_terms, rule_error = self._rule_terms(clean_text)
        logger.info(f"Expanding query with {len(rule_terms)} rule term(s) on tier {tier.value}")

        # The embedding sees the rule terms, the part of the merged set known before the join
        embed_text = " ".join([clean_text] + rule_terms).strip()

        expand_timeout = self.local_timeout_ms if tier == ModelTier.LOCAL else self.model_timeout_ms
        expand_task = asyncio.ensure_future(self._bounded(
            self.model_client.expand(clean_text, tier=tier, max_terms=self.max_terms),
            "expand", tier, expand_timeout))
        embed_task = asyncio.ensure_future(self._bounded(
            self.model_client.embed(embed_text, tier=tier), "embed", tier, self.embed_timeout_ms))
        try:
            model_outcome, embed_outcome = await asyncio.gather(
                expand_task, embed_task, return_exceptions=True)
        except asyncio.CancelledError:
            expand_task.cancel()
            embed_task.cancel()
            raise

        degraded = False
        model_terms: List[ExpansionTerm] = []
        if isinstance(model_outcome, BaseException):
            degraded = True
            if rule_error is not None:
                raise ExpansionUnavailable(
                    f"Rule lookup and model expansion both failed: {str(model_outcome)}")
            if not isinstance(model_outcome, ModelUnavailable):
                logger.error(f"Unexpected model expansion failure: {str(model_outcome)}")
            logger.warning("Model expansion unavailable, using rule terms only")
        else:
            model_terms = model_outcome

        vector = None
        if isinstance(embed_outcome, BaseException):
            logger.warning(f"Embedding unavailable, vector clause will be omitted: {str(embed_outcome)}")
        else:
            vector = embed_outcome or None

        merged = merge_terms(rule_terms, model_terms, self.max_terms, exclude=clean_text)
        return ExpansionResult(
            original_text=clean_text,
            rule_terms=rule_terms,
            model_terms=[t.term for t in model_terms],
            merged_terms=merged,
            vector=vector,
            degraded=degraded,
            model_tier=tier,
        )

    async def expand_local(self, clean_text: str) -> ExpansionResult:
        """Best-effort expansion on the local/offline model tier."""
        return await self.expand(clean_text, tier=ModelTier.LOCAL)
