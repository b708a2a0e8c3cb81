"""
Prometheus metrics for the dashboard core.

Tracks:
- Outbound API requests by method and outcome
- Retries and credential refreshes
- Local rate limit rejections
- Entity store mutations and push events
- Workflow runs by outcome
"""
from prometheus_client import Counter, Gauge, Histogram

# API client metrics
api_requests_total = Counter(
    "paylo_api_requests_total",
    "Total outbound API requests",
    ["method", "outcome"],  # outcome: success, auth_expired, exhausted, validation, unknown
)

api_request_duration_seconds = Histogram(
    "paylo_api_request_duration_seconds",
    "Outbound API request duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

api_retries_total = Counter(
    "paylo_api_retries_total",
    "Total request retries",
    ["reason"],  # rate_limited, transport
)

token_refreshes_total = Counter(
    "paylo_token_refreshes_total",
    "Total credential refresh attempts",
    ["status"],  # success, failed
)

rate_limit_rejections_total = Counter(
    "paylo_rate_limit_rejections_total",
    "Requests rejected by the local rate limiter",
)

# Entity store metrics
entity_mutations_total = Counter(
    "paylo_entity_mutations_total",
    "Total entity store mutations",
    ["kind", "operation"],  # upsert, remove, clear, snapshot
)

push_events_total = Counter(
    "paylo_push_events_total",
    "Total push events received",
    ["kind", "status"],  # applied, deferred, stale, malformed
)

realtime_connected = Gauge(
    "paylo_realtime_connected",
    "Push transport connection state (1=connected)",
)

# Workflow metrics
workflow_runs_total = Counter(
    "paylo_workflow_runs_total",
    "Total workflow runs",
    ["workflow", "status"],  # succeeded, failed
)

scheduled_actions_pending = Gauge(
    "paylo_scheduled_actions_pending",
    "Deferred actions waiting to fire",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_api_request(method: str, outcome: str, duration_seconds: float) -> None:
        """Record an outbound API request."""
        api_requests_total.labels(method=method, outcome=outcome).inc()
        api_request_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_retry(reason: str) -> None:
        """Record a retry."""
        api_retries_total.labels(reason=reason).inc()

    @staticmethod
    def record_token_refresh(status: str) -> None:
        """Record a credential refresh."""
        token_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_rate_limit_rejection() -> None:
        rate_limit_rejections_total.inc()

    @staticmethod
    def record_entity_mutation(kind: str, operation: str) -> None:
        entity_mutations_total.labels(kind=kind, operation=operation).inc()

    @staticmethod
    def record_push_event(kind: str, status: str) -> None:
        push_events_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def set_realtime_connected(connected: bool) -> None:
        realtime_connected.set(1 if connected else 0)

    @staticmethod
    def record_workflow_run(workflow: str, status: str) -> None:
        """Record a settled workflow run."""
        workflow_runs_total.labels(workflow=workflow, status=status).inc()

    @staticmethod
    def set_scheduled_actions(count: int) -> None:
        scheduled_actions_pending.set(count)


metrics = MetricsCollector()
