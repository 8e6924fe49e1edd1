"""
Model-tier routing policy.
"""
from models.query import ModelTier

def select_model_tier(redaction_count: int,
                      entity_count: int,
                      entity_threshold: int = 3) -> ModelTier:
    """
    Choose the model tier for a query.

    Pure function of its inputs so it can be tested without any model call.

    Args:
        redaction_count: Sequences the sanitizer removed; any redaction marks
            the query as sensitive
        entity_count: Entities found by classification
        entity_threshold: Entity count above which the query is complex

    Returns:
        The model tier to use for expansion
    """
    if redaction_count > 0:
        return ModelTier.HIGH_CAPABILITY
    if entity_count > entity_threshold:
        return ModelTier.HIGH_CAPABILITY
    return ModelTier.LOW_COST
