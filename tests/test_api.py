"""
Tests for the FastAPI surface.
"""
import unittest
import sys
import os
import logging

from fastapi.testclient import TestClient

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.main import create_app
from cache.memory_store import InMemoryQueryCache
from data.rule_table import RuleTable
from pipeline.fingerprint import compute_fingerprint
from services.query_orchestrator import QueryOrchestrator
from stubs import StubModelClient, StubSearchExecutor, unavailable

# Disable logging during tests
logging.disable(logging.CRITICAL)

class TestApi(unittest.TestCase):
    """Tests for the HTTP endpoints."""

    def setUp(self):
        self.cache = InMemoryQueryCache()
        self.executor = StubSearchExecutor()

        def factory():
            return QueryOrchestrator(self.cache, StubModelClient(), self.executor, rule_table=RuleTable(),
                                     pipeline_config={"budget_ms": 2000})

        self.client_context = TestClient(create_app(factory))
        self.client = self.client_context.__enter__()

    def tearDown(self):
        self.client_context.__exit__(None, None, None)

    def test_understand(self):
        response = self.client.post("/query/understand", json={"query": "4k tv under $500"})
        self.assertEqual(response.status_code, 200)
        body = response.json()["request_body"]
        self.assertEqual(body["filters"], [{"field": "price", "op": "<", "value": 500.0}])
        self.assertIn("knn", body)

    def test_search(self):
        response = self.client.post("/query/search", json={
            "query": "laptop",
            "filters": {"brands": ["Dell"]}
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["query"], "laptop")
        self.assertEqual(data["result_count"], 60)
        self.assertEqual(data["fallback_history"], ["primary", "done"])
        self.assertIsNone(data["error"])

    def test_pipeline_error_is_no_results(self):
        self.executor.script = [unavailable(), unavailable()]
        response = self.client.post("/query/search", json={"query": "laptop"})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["results"], [])
        self.assertEqual(data["query"], "laptop")
        self.assertEqual(data["error"], "execution_unavailable")

    def test_invalid_filters_rejected(self):
        response = self.client.post("/query/search", json={
            "query": "laptop",
            "filters": {"price_range": {"max": -5}}
        })
        self.assertEqual(response.status_code, 422)

    def test_invalidate_cache(self):
        self.client.post("/query/understand", json={"query": "laptop"})
        self.assertEqual(len(self.cache), 1)
        response = self.client.delete(f"/cache/{compute_fingerprint('laptop')}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.cache), 0)

    def test_health_and_metrics(self):
        self.client.post("/query/search", json={"query": "laptop"})
        health = self.client.get("/health").json()
        self.assertEqual(health["status"], "healthy")
        self.assertEqual(health["queries_processed"], 1)
        metrics = self.client.get("/metrics").json()
        self.assertEqual(metrics["cache"]["misses"], 1)

if __name__ == '__main__':
    unittest.main()
