"""
Main entry point for the query understanding pipeline.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from config import get_config
from models.errors import PipelineError
from models.parameters import SearchFilters
from services.query_orchestrator import QueryOrchestrator, build_orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

def initialize_system() -> Dict[str, Any]:
    """Initialize the query pipeline."""
    logger.info("Initializing query understanding pipeline")
    config = get_config()

    # Log configuration
    logger.info(f"System configured with: LLM={config['llm']['low_cost_model']}/"
                f"{config['llm']['high_capability_model']}, cache={config['cache']['backend']}, "
                f"Features={config['features']}")

    return {
        "orchestrator": build_orchestrator(),
        "config": config
    }

async def execute_search(orchestrator: QueryOrchestrator,
                         query: str,
                         filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
    """
    Execute a search with the given query.

    Args:
        orchestrator: The process-wide orchestrator
        query: The user search query
        filters: Optional explicit filters

    Returns:
        Dictionary with the structured query and results
    """
    start_time = time.time()
    try:
        response = await orchestrator.search(query, filters)
    except PipelineError as e:
        logger.error(f"Search failed: {e.reason}")
        return {"query": e.query_text, "results": [], "error": e.reason}

    logger.info(f"Search completed in {time.time() - start_time:.3f}s, "
                f"terminal state: {response.terminal_state}")
    return {
        "query": response.query_text,
        "structured_query": response.structured_query.to_request_body(),
        "result_count": response.result_count,
        "degraded": response.degraded,
        "fallback_history": response.fallback_history,
        "error": None
    }

async def run_demo():
    system = initialize_system()
    orchestrator = system["orchestrator"]

    test_queries = [
        "4k tv under $500",
        "gaming laptop",
        # PII is removed before anything leaves the process
        "running shoes 4111 1111 1111 1111",
    ]

    try:
        print("\n=== TESTING STANDARD QUERIES ===")
        for query in test_queries:
            print(f"\nTESTING QUERY: {query}")
            structured = await orchestrator.understand_and_build(query)
            print(json.dumps(structured.to_request_body(), indent=2)[:2000])

            result = await execute_search(orchestrator, query)
            print(f"Results: {result.get('result_count', 0)}")
            print(f"Fallback: {result.get('fallback_history', [])}")
            print(f"Error: {result.get('error', 'None')}")
            print("-" * 80)

        print("\n=== SYSTEM HEALTH METRICS ===")
        for metric, value in orchestrator.telemetry.get_system_health().items():
            print(f"{metric}: {value}")
        print("-" * 80)
    finally:
        await orchestrator.close()

if __name__ == "__main__":
    asyncio.run(run_demo())
