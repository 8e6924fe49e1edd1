"""
FastAPI implementation for the query understanding pipeline.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import APP_CONFIG
from models.errors import InvalidFilterError, PipelineError
from models.parameters import SearchFilters
from models.query import StructuredQuery
from services.query_orchestrator import QueryOrchestrator, build_orchestrator

# Configure logging
logging.basicConfig(
    level=getattr(logging, APP_CONFIG["log_level"].upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

# API Models
class QueryRequest(BaseModel):
    """Query request model."""
    query: str = Field(..., max_length=10000)
    filters: Optional[SearchFilters] = None
    budget_ms: Optional[int] = Field(None, ge=1, le=5000)

class UnderstandResponse(BaseModel):
    """Structured query produced for a request, without execution."""
    structured_query: StructuredQuery
    request_body: Dict[str, Any]

class SearchResultResponse(BaseModel):
    """Search response model."""
    query: str
    fingerprint: Optional[str] = None
    results: List[Dict[str, Any]] = []
    result_count: int = 0
    cache_hit: bool = False
    degraded: bool = False
    terminal_state: str = "done"
    fallback_history: List[str] = []
    stage_latency_ms: Dict[str, float] = {}
    error: Optional[str] = None

def create_app(orchestrator_factory: Callable[[], QueryOrchestrator] = build_orchestrator) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator_factory: Builds the process-wide orchestrator at startup

    Returns:
        FastAPI app
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.orchestrator = orchestrator_factory()
        logger.info("Query pipeline started")
        try:
            yield
        finally:
            await app.state.orchestrator.close()
            logger.info("Query pipeline stopped")

    app = FastAPI(
        title="Query Understanding API",
        description="API for hybrid query understanding and construction",
        version="1.0.0",
        lifespan=lifespan
    )

    @app.exception_handler(InvalidFilterError)
    async def invalid_filter_handler(request: Request, exc: InvalidFilterError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        # Callers render this as "no results", never as a server error
        return JSONResponse(
            status_code=200,
            content=SearchResultResponse(query=exc.query_text, terminal_state="failed",
                                         error=exc.reason).model_dump()
        )

    @app.post("/query/understand", response_model=UnderstandResponse)
    async def understand(request: QueryRequest, http_request: Request):
        """
        Build the structured query for a request without executing it.

        Args:
            request: Query request object

        Returns:
            Structured query and its serialized request body
        """
        orchestrator: QueryOrchestrator = http_request.app.state.orchestrator
        query = await orchestrator.understand_and_build(request.query, request.filters, request.budget_ms)
        return UnderstandResponse(structured_query=query, request_body=query.to_request_body())

    @app.post("/query/search", response_model=SearchResultResponse)
    async def search(request: QueryRequest, http_request: Request):
        """
        Execute a search query.

        Args:
            request: Query request object

        Returns:
            Search response
        """
        orchestrator: QueryOrchestrator = http_request.app.state.orchestrator
        start_time = time.time()
        response = await orchestrator.search(request.query, request.filters, request.budget_ms)
        logger.info(f"Search completed: fingerprint={response.fingerprint[:12]}, "
                    f"results={response.result_count}, time={time.time() - start_time:.3f}s")
        return SearchResultResponse(
            query=response.query_text,
            fingerprint=response.fingerprint,
            results=response.results,
            result_count=response.result_count,
            cache_hit=response.cache_hit,
            degraded=response.degraded,
            terminal_state=response.terminal_state,
            fallback_history=response.fallback_history,
            stage_latency_ms=response.stage_latency_ms
        )

    @app.delete("/cache/{fingerprint}")
    async def invalidate_cache(fingerprint: str, http_request: Request):
        """
        Invalidate a cached query.

        Args:
            fingerprint: Query fingerprint

        Returns:
            Success message
        """
        try:
            await http_request.app.state.orchestrator.invalidate(fingerprint)
        except Exception as e:
            logger.error(f"Error invalidating cache entry: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        return {"message": f"Cache entry {fingerprint} invalidated"}

    @app.get("/health")
    async def health_check(http_request: Request):
        """
        Health check endpoint.

        Returns:
            Health status
        """
        try:
            health_metrics = http_request.app.state.orchestrator.telemetry.get_system_health()
            health_metrics["status"] = "healthy"
            health_metrics["timestamp"] = time.time()
            return health_metrics
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": time.time()
            }

    @app.get("/metrics")
    async def get_metrics(http_request: Request):
        """
        Get pipeline metrics.

        Returns:
            Performance report
        """
        return http_request.app.state.orchestrator.telemetry.get_performance_report()

    return app

app = create_app()

if __name__ == "__main__":
    # Run the API using Uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
