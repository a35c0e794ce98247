"""
Prometheus metrics for Redpanda Reconciler.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.responses import Response

# =============================================================================
# METRICS DEFINITIONS
# =============================================================================

reconcile_total = Counter(
    "redpanda_reconciler_reconcile_total",
    "Total reconcile invocations",
    ["controller", "result"],
)

reconcile_duration_seconds = Histogram(
    "redpanda_reconciler_reconcile_duration_seconds",
    "Duration of reconcile invocations in seconds",
    ["controller"],
)

workqueue_depth = Gauge(
    "redpanda_reconciler_workqueue_depth",
    "Keys waiting in a controller's work queue",
    ["controller"],
)

pvc_unbinder_actions_total = Counter(
    "redpanda_reconciler_pvc_unbinder_actions_total",
    "Mutations performed by the PVC unbinder",
    ["action"],
)

gc_deleted_total = Counter(
    "redpanda_reconciler_gc_deleted_total",
    "Orphaned child objects deleted by garbage collection",
)

watch_restarts_total = Counter(
    "redpanda_reconciler_watch_restarts_total",
    "Watch streams restarted after expiry or error",
    ["source", "reason"],
)

reconciler_info = Info(
    "redpanda_reconciler",
    "Redpanda Reconciler instance metadata",
)


# =============================================================================
# RESPONSE HELPER
# =============================================================================

def get_metrics_response() -> Response:
    """Return Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
