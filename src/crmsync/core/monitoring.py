"""Prometheus metrics for sync runs and provider calls.

Provides:
- Counters/histograms for sync runs, per-record outcomes and provider requests
- track_provider_call(): Context manager for provider request metrics
- get_metrics_payload(): Prometheus exposition bytes for a scrape endpoint
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Total CRM sync runs by mode and terminal state",
    ["mode", "state"],
)

crm_sync_run_duration_seconds = Histogram(
    "crm_sync_run_duration_seconds",
    "CRM sync run duration in seconds",
    ["mode"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "Per-record sync outcomes",
    ["direction", "action", "status"],
)

crm_sync_runs_in_progress = Gauge(
    "crm_sync_runs_in_progress",
    "Sync runs currently executing in this process",
)

# ── Provider Metrics ─────────────────────────────────────────────────────────

crm_provider_requests_total = Counter(
    "crm_provider_requests_total",
    "Total CRM provider API requests",
    ["provider", "operation", "status"],
)

crm_provider_request_duration_seconds = Histogram(
    "crm_provider_request_duration_seconds",
    "CRM provider API request duration in seconds",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ── Provider Metrics Helper ─────────────────────────────────────────────────


@asynccontextmanager
async def track_provider_call(
    provider: str,
    operation: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks provider call metrics.

    Usage:
        async with track_provider_call("hubspot", "upsert") as tracker:
            response = await client.post(...)
            tracker["status_code"] = response.status_code

    Automatically records:
    - Duration in histogram
    - Request count labelled success/error
    """
    tracker: dict[str, Any] = {"status_code": None}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        crm_provider_requests_total.labels(
            provider=provider,
            operation=operation,
            status=status,
        ).inc()

        crm_provider_request_duration_seconds.labels(
            provider=provider,
            operation=operation,
        ).observe(duration)


def record_sync_outcome(direction: str, action: str, status: str) -> None:
    """Count one per-record sync outcome."""
    crm_sync_records_total.labels(
        direction=direction,
        action=action,
        status=status,
    ).inc()


def record_sync_run(mode: str, state: str, duration_seconds: float) -> None:
    """Count a finished sync run and observe its duration."""
    crm_sync_runs_total.labels(mode=mode, state=state).inc()
    crm_sync_run_duration_seconds.labels(mode=mode).observe(duration_seconds)


# ── Exposition ───────────────────────────────────────────────────────────────


def get_metrics_payload() -> tuple[bytes, str]:
    """Return (body, content_type) in Prometheus exposition format."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
