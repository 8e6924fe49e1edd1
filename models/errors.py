"""
Exception taxonomy for the query understanding pipeline.
"""
from typing import Optional


class QueryPipelineException(Exception):
    """Base class for all pipeline failures."""


class ModelUnavailable(QueryPipelineException):
    """A model-service call did not produce a usable answer."""

    def __init__(self, operation: str, tier: str, message: str = ""):
        self.operation = operation
        self.tier = tier
        super().__init__(message or f"Model call '{operation}' on tier '{tier}' failed")


class ModelTimeout(ModelUnavailable):
    """The model call exceeded its timeout."""

    def __init__(self, operation: str, tier: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(operation, tier, f"Model call '{operation}' on tier '{tier}' timed out after {timeout_ms}ms")


class ModelError(ModelUnavailable):
    """The model call raised or returned an unparseable answer."""


class ExpansionUnavailable(QueryPipelineException):
    """Both the rule lookup and the model expansion failed."""


class BuildError(QueryPipelineException):
    """Nothing to query on: no terms, no filters and no text."""


class InvalidFilterError(ValueError):
    """A filter clause referenced a field outside the allow-list."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Filter field not allowed: {field!r}")


class ExecutionUnavailable(QueryPipelineException):
    """The search-execution collaborator could not be reached."""


class PipelineTimeout(QueryPipelineException):
    """The overall latency budget was exceeded."""

    def __init__(self, budget_ms: int, stage: Optional[str] = None):
        self.budget_ms = budget_ms
        self.stage = stage
        where = f" during '{stage}'" if stage else ""
        super().__init__(f"Pipeline budget of {budget_ms}ms exceeded{where}")


class PipelineError(QueryPipelineException):
    """
    The single error surfaced to callers.

    Always carries the sanitized query text so the caller can render a
    "no results" response instead of an internal failure.
    """

    def __init__(self, query_text: str, reason: str, cause: Optional[BaseException] = None):
        self.query_text = query_text
        self.reason = reason
        self.cause = cause
        super().__init__(f"Query pipeline failed ({reason}) for query '{query_text}'")
