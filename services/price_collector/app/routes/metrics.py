"""
Prometheus Metrics Endpoint

Exposes /metrics endpoint in Prometheus text format.
"""

import logging

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ...core.metrics import REGISTRY, set_priority_stale, set_service_info
from ..config import settings


logger = logging.getLogger(__name__)
router = APIRouter()


def _update_live_metrics(request: Request) -> None:
    """
    Refresh gauges that depend on wall-clock age on each scrape.

    The ranking goes stale by ageing, with no event to update the gauge.
    """
    priorities = getattr(request.app.state, "priorities", None)
    if priorities is not None:
        set_priority_stale(priorities.is_stale)


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Metrics exposed:
    - collector_runs_total{kind, status}
    - collector_run_duration_seconds{kind}
    - collector_assets_total{outcome}
    - collector_upstream_calls_total{endpoint, outcome}
    - collector_upstream_retries_total{error_class}
    - collector_rate_limit_wait_seconds
    - collector_snapshots_written_total{granularity}
    - collector_rollup_rows_total{granularity}
    - collector_retention_deleted_total{granularity}
    - collector_db_write_latency_seconds{table}
    - collector_gap_queue_depth
    - collector_gap_permanent_failures_total
    - collector_priority_stale
    - collector_service_info{version, environment}
    """
    set_service_info(settings.service_version, settings.environment)
    _update_live_metrics(request)

    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
    )
