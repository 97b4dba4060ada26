"""
Telemetry and monitoring utilities.
"""
import logging
import time

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import FastAPI, Response

logger = logging.getLogger(__name__)

# Metrics definitions
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

status_transitions = Counter(
    'task_status_transitions_total',
    'Task status transitions',
    ['status_from', 'status_to']
)

sessions_opened = Counter(
    'task_sessions_opened_total',
    'Task time segments opened'
)

sessions_closed = Counter(
    'task_sessions_closed_total',
    'Task time segments closed'
)

session_duration = Histogram(
    'task_session_duration_seconds',
    'Duration of closed task time segments',
    buckets=(30, 60, 120, 300, 600, 1200, 1800, 3600, 7200, 14400)
)

completion_requests = Counter(
    'completion_requests_total',
    'Completion API calls',
    ['endpoint', 'outcome']
)

completion_latency = Histogram(
    'completion_request_duration_seconds',
    'Completion API call latency',
    ['endpoint']
)

envelope_results = Counter(
    'dialog_envelope_results_total',
    'Parsed assistant replies by result kind',
    ['kind', 'heuristic']
)

duration_cache_operations = Counter(
    'duration_cache_operations_total',
    'Task duration cache operations',
    ['operation', 'hit']
)

websocket_connections = Gauge(
    'websocket_connections_active',
    'Active WebSocket connections'
)


def setup_telemetry(app: FastAPI) -> None:
    """
    Setup telemetry and monitoring for the application.

    Args:
        app: FastAPI application instance
    """
    logger.info("Setting up telemetry...")

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def track_requests(request, call_next):
        """Track HTTP request metrics."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        request_count.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        request_duration.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response

    logger.info("Telemetry setup complete")


def track_status_transition(status_from: str, status_to: str) -> None:
    """Track a task status change."""
    status_transitions.labels(
        status_from=status_from or "none",
        status_to=status_to
    ).inc()


def track_session_opened() -> None:
    sessions_opened.inc()


def track_session_closed(duration_seconds: int) -> None:
    sessions_closed.inc()
    session_duration.observe(duration_seconds)


def track_completion_request(endpoint: str, outcome: str, duration: float) -> None:
    """Track a completion API call (outcome: success, rate_limited, error)."""
    completion_requests.labels(endpoint=endpoint, outcome=outcome).inc()
    completion_latency.labels(endpoint=endpoint).observe(duration)


def track_envelope_result(kind: str, heuristic: str = "none") -> None:
    """Track how an assistant reply was normalized."""
    envelope_results.labels(kind=kind, heuristic=heuristic).inc()


def track_duration_cache(operation: str, hit: bool = False) -> None:
    duration_cache_operations.labels(operation=operation, hit=str(hit)).inc()


def update_websocket_connections(count: int) -> None:
    """Update WebSocket connections gauge."""
    websocket_connections.set(count)


class MetricsCollector:
    """Collects and manages application metrics."""

    def __init__(self):
        self.start_time = time.time()
        self.transition_count = 0
        self.dialog_turns = 0
        self.error_count = 0

    def record_transition(self, status_from: str, status_to: str) -> None:
        self.transition_count += 1
        track_status_transition(status_from, status_to)

    def record_dialog_turn(self) -> None:
        self.dialog_turns += 1

    def record_error(self) -> None:
        self.error_count += 1

    def get_stats(self) -> dict:
        """Get current statistics."""
        uptime = time.time() - self.start_time

        return {
            "uptime_seconds": uptime,
            "status_transitions": self.transition_count,
            "dialog_turns": self.dialog_turns,
            "errors": self.error_count
        }


# Global metrics collector
metrics_collector = MetricsCollector()
