"""Prometheus metrics for the sync engine.

Provides:
- Sync run counters and duration histogram
- Retry attempt counter
- Circuit breaker state gauge
- Client cache hit/miss counter
- get_metrics_response(): exposition payload for a host's /metrics route
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

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Total CRM sync runs",
    ["system", "outcome"],
)

sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "CRM sync run duration in seconds",
    ["system"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

sync_in_flight = Gauge(
    "crm_sync_in_flight",
    "Number of CRM sync runs currently in flight",
)

conflicts_detected_total = Counter(
    "crm_conflicts_detected_total",
    "Conflicts raised by bidirectional sync",
    ["system"],
)

# ── Resilience Metrics ───────────────────────────────────────────────────────

retry_attempts_total = Counter(
    "crm_retry_attempts_total",
    "Attempts made by the retry executor",
    ["label", "outcome"],
)

circuit_breaker_state = Gauge(
    "crm_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    ["name"],
)

# ── Cache Metrics ────────────────────────────────────────────────────────────

client_cache_requests_total = Counter(
    "crm_client_cache_requests_total",
    "Cached client lookups",
    ["result"],
)


def get_metrics_response() -> tuple[bytes, str]:
    """Return the Prometheus exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
