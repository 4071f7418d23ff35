"""
Prometheus Metrics for the Price Collector

Exposes operational metrics for monitoring and alerting.

Metrics:
- Run counters and durations (per run kind)
- Per-asset collection outcomes
- Upstream call / retry counters, rate-limit waits
- Store writes, roll-ups and retention deletions per granularity
- Gap queue depth and permanent failures
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()


# =============================================================================
# Run Metrics
# =============================================================================

RUNS_TOTAL = Counter(
    "collector_runs_total",
    "Total runs finalized",
    ["kind", "status"],
    registry=REGISTRY,
)

RUN_DURATION = Histogram(
    "collector_run_duration_seconds",
    "Wall-clock duration of a run",
    ["kind"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
    registry=REGISTRY,
)

ASSETS_TOTAL = Counter(
    "collector_assets_total",
    "Per-asset collection outcomes",
    ["outcome"],  # outcome: succeeded, failed
    registry=REGISTRY,
)


# =============================================================================
# Upstream Metrics
# =============================================================================

UPSTREAM_CALLS_TOTAL = Counter(
    "collector_upstream_calls_total",
    "Upstream API calls",
    ["endpoint", "outcome"],
    registry=REGISTRY,
)

UPSTREAM_RETRIES_TOTAL = Counter(
    "collector_upstream_retries_total",
    "Upstream call retries by error class",
    ["error_class"],
    registry=REGISTRY,
)

RATE_LIMIT_WAIT = Histogram(
    "collector_rate_limit_wait_seconds",
    "Time spent waiting for the upstream call budget",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
    registry=REGISTRY,
)


# =============================================================================
# Store Metrics
# =============================================================================

SNAPSHOTS_WRITTEN = Counter(
    "collector_snapshots_written_total",
    "Snapshot rows upserted",
    ["granularity"],
    registry=REGISTRY,
)

ROLLUP_ROWS = Counter(
    "collector_rollup_rows_total",
    "Rows derived by the aggregation cascade",
    ["granularity"],
    registry=REGISTRY,
)

RETENTION_DELETED = Counter(
    "collector_retention_deleted_total",
    "Rows removed by retention sweeps",
    ["granularity"],
    registry=REGISTRY,
)

DB_WRITE_LATENCY = Histogram(
    "collector_db_write_latency_seconds",
    "Database write latency in seconds",
    ["table"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)


# =============================================================================
# Gap / Priority Metrics
# =============================================================================

GAP_QUEUE_DEPTH = Gauge(
    "collector_gap_queue_depth",
    "Pending gap queue entries",
    registry=REGISTRY,
)

GAP_PERMANENT_FAILURES = Counter(
    "collector_gap_permanent_failures_total",
    "Gap entries that exhausted their recovery attempts",
    registry=REGISTRY,
)

PRIORITY_STALE = Gauge(
    "collector_priority_stale",
    "1 if the cached ranking is stale",
    registry=REGISTRY,
)

SERVICE_INFO = Gauge(
    "collector_service_info",
    "Service information",
    ["version", "environment"],
    registry=REGISTRY,
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_run(kind: str, status: str, duration_seconds: float, succeeded: int, failed: int) -> None:
    """Record metrics for a finalized run."""
    RUNS_TOTAL.labels(kind=kind, status=status).inc()
    RUN_DURATION.labels(kind=kind).observe(max(0.0, duration_seconds))
    if succeeded:
        ASSETS_TOTAL.labels(outcome="succeeded").inc(succeeded)
    if failed:
        ASSETS_TOTAL.labels(outcome="failed").inc(failed)


def record_upstream_call(endpoint: str, outcome: str) -> None:
    UPSTREAM_CALLS_TOTAL.labels(endpoint=endpoint, outcome=outcome).inc()


def record_retry(error_class: str) -> None:
    UPSTREAM_RETRIES_TOTAL.labels(error_class=error_class).inc()


def record_rate_limit_wait(seconds: float) -> None:
    RATE_LIMIT_WAIT.observe(seconds)


def record_snapshots_written(granularity: str, count: int, latency_seconds: float) -> None:
    SNAPSHOTS_WRITTEN.labels(granularity=granularity).inc(count)
    DB_WRITE_LATENCY.labels(table=f"price_snapshots_{granularity}").observe(latency_seconds)


def record_rollup(granularity: str, count: int) -> None:
    ROLLUP_ROWS.labels(granularity=granularity).inc(count)


def record_retention(granularity: str, deleted: int) -> None:
    RETENTION_DELETED.labels(granularity=granularity).inc(deleted)


def set_gap_queue_depth(depth: int) -> None:
    GAP_QUEUE_DEPTH.set(depth)


def increment_gap_permanent_failures() -> None:
    GAP_PERMANENT_FAILURES.inc()


def set_priority_stale(stale: bool) -> None:
    PRIORITY_STALE.set(1 if stale else 0)


def set_service_info(version: str, environment: str) -> None:
    """Set service info gauge."""
    SERVICE_INFO.labels(version=version, environment=environment).set(1)
