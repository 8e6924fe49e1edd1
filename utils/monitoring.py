"""
Monitoring and metrics for the query pipeline.
"""
import logging
import time
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

class PipelineMonitor:
    """Aggregates pipeline telemetry into health and performance metrics."""

    def __init__(self):
        """Initialize the monitoring system."""
        logger.info("Initializing pipeline monitor")
        self.queries_processed = 0
        self.error_count = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.degraded_count = 0
        self.avg_response_time = 0

        self.fallback_distribution = {}
        self.terminal_distribution = {}
        self.redaction_count = 0

        # stage -> {"count", "avg_ms"}
        self.stage_latency = {}
        self.hourly_query_count = {}

    def record_cache(self, hit: bool):
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_stage(self, stage: str, latency_ms: float):
        """
        Fold a stage latency sample into the running average.

        Args:
            stage: Pipeline stage name
            latency_ms: Observed latency in milliseconds
        """
        stats = self.stage_latency.setdefault(stage, {"count": 0, "avg_ms": 0.0})
        stats["count"] += 1
        stats["avg_ms"] = (stats["avg_ms"] * (stats["count"] - 1) + latency_ms) / stats["count"]

    def record_fallback(self, strategy: str):
        self.fallback_distribution[strategy] = self.fallback_distribution.get(strategy, 0) + 1

    def record_redactions(self, count: int):
        self.redaction_count += count

    def log_query(self, terminal_state: str, degraded: bool, execution_time: float,
                  error: Optional[str] = None):
        """
        Log a completed query.

        Args:
            terminal_state: "done" or "failed"
            degraded: Whether expansion ran without the model
            execution_time: Total time in seconds
            error: Error message if the pipeline failed
        """
        self.queries_processed += 1
        if error:
            self.error_count += 1
        if degraded:
            self.degraded_count += 1

        self.terminal_distribution[terminal_state] = self.terminal_distribution.get(terminal_state, 0) + 1

        self.avg_response_time = (
            (self.avg_response_time * (self.queries_processed - 1) + execution_time) /
            self.queries_processed
        )

        current_hour = time.strftime("%Y-%m-%d-%H")
        self.hourly_query_count[current_hour] = self.hourly_query_count.get(current_hour, 0) + 1

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def get_system_health(self) -> Dict[str, Any]:
        """
        Get system health metrics.

        Returns:
            Dictionary of health metrics
        """
        return {
            "queries_processed": self.queries_processed,
            "error_rate": self.error_count / max(1, self.queries_processed),
            "cache_hit_rate": self.cache_hit_rate,
            "degraded_rate": self.degraded_count / max(1, self.queries_processed),
            "avg_response_time": self.avg_response_time
        }

    def get_performance_report(self) -> Dict[str, Any]:
        """
        Generate a performance report.

        Returns:
            Dictionary with performance metrics
        """
        return {
            "summary": {
                "total_queries": self.queries_processed,
                "error_rate": self.error_count / max(1, self.queries_processed),
                "avg_response_time": self.avg_response_time,
                "redactions": self.redaction_count
            },
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": self.cache_hit_rate
            },
            "fallback": {
                "by_strategy": self.fallback_distribution,
                "by_terminal_state": self.terminal_distribution,
                "degraded_rate": self.degraded_count / max(1, self.queries_processed)
            },
            "performance": {
                "stage_latency_ms": self.stage_latency,
                "hourly_distribution": self.hourly_query_count
            }
        }
