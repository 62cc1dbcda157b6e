"""Prometheus metrics for CRM API traffic and sync runs.

Provides:
- API request counters and latency histograms (recorded by the HTTP transport)
- Retry attempt counter (recorded by retry_with_backoff)
- Per-record sync outcome counter and run duration histogram (SyncEngine)
- get_metrics_text(): Prometheus exposition payload for a host app to serve
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── API Metrics ──────────────────────────────────────────────────────────────

crm_api_requests_total = Counter(
    "crm_api_requests_total",
    "Total CRM provider API requests",
    ["provider", "method", "status"],
)

crm_api_request_duration_seconds = Histogram(
    "crm_api_request_duration_seconds",
    "CRM provider API request duration in seconds",
    ["provider", "method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

crm_retry_attempts_total = Counter(
    "crm_retry_attempts_total",
    "Retries scheduled after a failed attempt",
    ["operation"],
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "Records processed by sync runs, by outcome",
    ["provider", "object_type", "direction", "outcome"],
)

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Completed sync runs",
    ["provider", "status"],
)

crm_sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "Sync run duration in seconds",
    ["provider"],
    buckets=(0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0),
)


def get_metrics_text() -> bytes:
    """Generate Prometheus exposition format payload."""
    return generate_latest(REGISTRY)
