"""Prometheus metrics for preview-plane.

Counters and histograms for branch acquisition, preview provisioning and
the HTTP command surface. Metric names follow Prometheus conventions.

Usage::

    from preview_plane.app.observability.metrics import PREVIEW_TRANSITIONS_TOTAL

    PREVIEW_TRANSITIONS_TOTAL.labels(state="running").inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "preview_plane_http_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "preview_plane_http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Branch acquisition
# ---------------------------------------------------------------------------

BRANCH_TRANSITIONS_TOTAL = Counter(
    "preview_plane_branch_transitions_total",
    "Branch acquisition state transitions.",
    labelnames=["state"],
    registry=REGISTRY,
)

BRANCH_SLOW_TOTAL = Counter(
    "preview_plane_branch_slow_total",
    "Branch creates still pending when the grace timer fired.",
    registry=REGISTRY,
)

STALE_RESULTS_DROPPED_TOTAL = Counter(
    "preview_plane_stale_results_dropped_total",
    "Async results discarded because their generation was superseded.",
    labelnames=["operation"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Preview provisioning
# ---------------------------------------------------------------------------

PREVIEW_TRANSITIONS_TOTAL = Counter(
    "preview_plane_preview_transitions_total",
    "Preview session state transitions.",
    labelnames=["state"],
    registry=REGISTRY,
)

PREVIEW_POLL_TICKS_TOTAL = Counter(
    "preview_plane_preview_poll_ticks_total",
    "Status poll ticks by normalized result.",
    labelnames=["result"],
    registry=REGISTRY,
)

PREVIEW_DESTROY_FAILURES_TOTAL = Counter(
    "preview_plane_preview_destroy_failures_total",
    "Best-effort sandbox destroy calls that failed.",
    registry=REGISTRY,
)

PREVIEW_TIME_TO_READY_SECONDS = Histogram(
    "preview_plane_preview_time_to_ready_seconds",
    "Seconds from start_preview to a running preview.",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 900),
    registry=REGISTRY,
)

LIVE_SESSIONS = Gauge(
    "preview_plane_live_sessions",
    "Session entries currently held by the orchestrator.",
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
