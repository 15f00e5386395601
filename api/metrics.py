"""
Prometheus metrics for the streamsync API and reconciliation engine.

Metrics are exposed at /metrics in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("streamsync", "streamsync application information")

# =============================================================================
# Reconciliation Metrics
# =============================================================================

RECONCILE_TOTAL = Counter(
    "streamsync_reconcile_total",
    "Total reconciliation attempts",
    ["source", "outcome"],  # source: engine, webhook, client, operator
)

RECONCILE_DURATION_SECONDS = Histogram(
    "streamsync_reconcile_duration_seconds",
    "Reconciliation attempt duration in seconds",
    ["source"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

WATCHED_ASSETS = Gauge(
    "streamsync_watched_assets",
    "Number of assets in the engine's watched set",
)

RETRY_CEILING_EXCEEDED_TOTAL = Counter(
    "streamsync_retry_ceiling_exceeded_total",
    "Assets escalated to error after repeated failed status checks",
)

# =============================================================================
# Stream Host Metrics
# =============================================================================

GATEWAY_REQUESTS_TOTAL = Counter(
    "streamsync_gateway_requests_total",
    "Total stream host API calls",
    ["operation", "result"],  # result: success, transient, not_found, validation
)

# =============================================================================
# Webhook Metrics
# =============================================================================

WEBHOOK_EVENTS_TOTAL = Counter(
    "streamsync_webhook_events_total",
    "Total stream host webhook deliveries",
    ["result"],  # applied, unknown_asset, invalid_signature, invalid_payload, error
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "streamsync"})
