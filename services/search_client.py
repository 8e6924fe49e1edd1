"""
Client for the search-execution collaborator.
"""
import logging
import time
from typing import Any, Optional

import httpx

from config import SEARCH_CONFIG
from models.errors import ExecutionUnavailable
from models.query import SearchOutcome, StructuredQuery

logger = logging.getLogger(__name__)

class HttpSearchExecutor:
    """Executes structured queries against the hybrid index over HTTP."""

    def __init__(self,
                 url: Optional[str] = None,
                 api_key: Optional[str] = None,
                 timeout_ms: Optional[int] = None,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the search executor.

        Args:
            url: Search endpoint accepting the JSON request body
            api_key: Optional bearer token
            timeout_ms: Per-request timeout
            client: Pre-built httpx client (tests pass one with a mock transport)
        """
        self.url = url or SEARCH_CONFIG["url"]
        self.timeout_ms = timeout_ms or SEARCH_CONFIG["timeout_ms"]
        api_key = api_key if api_key is not None else SEARCH_CONFIG["api_key"]

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers=headers, timeout=self.timeout_ms / 1000.0)

    async def execute(self, query: StructuredQuery) -> SearchOutcome:
        """
        Execute a structured query.

        Args:
            query: Query to run; serialized through its request body

        Returns:
            SearchOutcome with the result count and results

        Raises:
            ExecutionUnavailable: If the collaborator cannot be reached or errors
        """
        body = query.to_request_body()
        timeout = self.timeout_ms / 1000.0
        if query.trace_budget_ms:
            timeout = min(timeout, query.trace_budget_ms / 1000.0)

        start_time = time.time()
        try:
            response = await self.client.post(self.url, json=body, timeout=timeout)
            response.raise_for_status()
            payload: Any = response.json()
        except httpx.TimeoutException as e:
            raise ExecutionUnavailable(f"Search execution timed out after {timeout * 1000:.0f}ms") from e
        except httpx.HTTPStatusError as e:
            raise ExecutionUnavailable(f"Search execution returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExecutionUnavailable(f"Search execution failed: {str(e)}") from e

        if not isinstance(payload, dict):
            raise ExecutionUnavailable(f"Search execution returned a {type(payload).__name__}, expected an object")
        results = payload.get("results") or []
        if not isinstance(results, list):
            raise ExecutionUnavailable("Search execution returned malformed results")

        result_count = payload.get("total")
        if result_count is None:
            result_count = payload.get("result_count")
        if result_count is None:
            result_count = len(results)
        try:
            result_count = int(result_count)
        except (TypeError, ValueError) as e:
            raise ExecutionUnavailable(f"Search execution returned an invalid total: {result_count!r}") from e

        latency_ms = (time.time() - start_time) * 1000
        logger.debug(f"Search returned {result_count} result(s) in {latency_ms:.1f}ms")
        return SearchOutcome(result_count=result_count, results=results, latency_ms=latency_ms)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()
