"""
Service for collecting pipeline telemetry.
"""
import logging
import time
from typing import Dict, Any, List, Optional
from utils.monitoring import PipelineMonitor

logger = logging.getLogger(__name__)

CACHE_HIT = "cache_hit"
CACHE_MISS = "cache_miss"
DEGRADED = "degraded"
FALLBACK = "fallback"
STAGE_LATENCY = "stage_latency"
REDACTION = "redaction"
QUERY_COMPLETE = "query_complete"

class TelemetryService:
    """
    Collects structured pipeline events.

    Emitting never blocks the request path and never raises; events are
    kept in memory and folded into the monitor aggregates.
    """

    def __init__(self, enabled: bool = True, max_events: int = 10000):
        """
        Initialize the telemetry service.

        Args:
            enabled: When False, events are dropped
            max_events: Size of the in-memory event buffer
        """
        logger.info("Initializing telemetry service")
        self.enabled = enabled
        self.max_events = max_events
        self.monitor = PipelineMonitor()

        # In-memory storage for events - would be replaced with proper time series DB
        self._events: List[Dict[str, Any]] = []

    def emit(self, event_type: str, **fields):
        """
        Record a structured event.

        Args:
            event_type: One of the module-level event type names
            **fields: Event payload; must not contain raw query text
        """
        if not self.enabled:
            return
        try:
            event = {"timestamp": time.time(), "type": event_type, **fields}
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[:len(self._events) - self.max_events]
            self._update_monitor(event_type, fields)
        except Exception as e:
            logger.warning(f"Dropped telemetry event {event_type}: {str(e)}")

    def _update_monitor(self, event_type: str, fields: Dict[str, Any]):
        if event_type == CACHE_HIT:
            self.monitor.record_cache(True)
        elif event_type == CACHE_MISS:
            self.monitor.record_cache(False)
        elif event_type == STAGE_LATENCY:
            self.monitor.record_stage(fields["stage"], fields["latency_ms"])
        elif event_type == FALLBACK:
            self.monitor.record_fallback(fields["strategy"])
        elif event_type == REDACTION:
            self.monitor.record_redactions(fields.get("count", 0))
        elif event_type == QUERY_COMPLETE:
            self.monitor.log_query(
                fields.get("terminal_state", "done"),
                fields.get("degraded", False),
                fields.get("execution_time", 0.0),
                fields.get("error")
            )

    def stage(self, stage: str, latency_ms: float):
        self.emit(STAGE_LATENCY, stage=stage, latency_ms=latency_ms)

    def get_events(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get recent events, newest first.

        Args:
            event_type: Optional filter on the event type
            limit: Maximum number of events to return

        Returns:
            List of events
        """
        events = [e for e in self._events if event_type is None or e["type"] == event_type]
        return list(reversed(events))[:limit]

    def get_system_health(self) -> Dict[str, Any]:
        return self.monitor.get_system_health()

    def get_performance_report(self) -> Dict[str, Any]:
        return self.monitor.get_performance_report()
