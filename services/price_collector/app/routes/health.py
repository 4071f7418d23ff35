"""
Health Check Endpoint

Liveness, readiness and per-component health for container probes.
Component checks (database, scheduler, priorities) are registered by the
app lifespan and run concurrently, each under a timeout.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import settings


router = APIRouter()

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

# Worst status wins
_SEVERITY = {"healthy": 0, "degraded": 1, "unhealthy": 2}

HealthCheck = Callable[[], Awaitable[dict]]


class ComponentHealth(BaseModel):
    """Health status of a component."""
    status: str  # "healthy", "degraded", "unhealthy"
    message: Optional[str] = None
    last_check: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    service: str
    version: str
    environment: str
    timestamp: str
    components: dict[str, ComponentHealth]


_component_checks: dict[str, HealthCheck] = {}


def register_health_check(name: str, check_fn: HealthCheck) -> None:
    """Register a component health check returning {"status": ..., "message": ...}."""
    _component_checks[name] = check_fn


def clear_health_checks() -> None:
    _component_checks.clear()


async def _run_one(check_fn: HealthCheck) -> dict:
    try:
        return await asyncio.wait_for(check_fn(), timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return {"status": "unhealthy", "message": f"check timed out after {HEALTH_CHECK_TIMEOUT_SECONDS}s"}
    except Exception as e:
        return {"status": "unhealthy", "message": str(e)}


async def _run_checks() -> tuple[str, dict[str, ComponentHealth]]:
    now = datetime.now(timezone.utc).isoformat()
    names = list(_component_checks)
    results = await asyncio.gather(*(_run_one(_component_checks[n]) for n in names))

    components: dict[str, ComponentHealth] = {}
    overall_status = "healthy"
    for name, result in zip(names, results):
        status = result.get("status", "healthy")
        components[name] = ComponentHealth(status=status, message=result.get("message"), last_check=now)
        if _SEVERITY.get(status, 2) > _SEVERITY[overall_status]:
            overall_status = status if status in _SEVERITY else "unhealthy"

    return overall_status, components


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Service health check endpoint.

    Returns overall health status and per-component breakdown.
    """
    overall_status, components = await _run_checks()
    now = datetime.now(timezone.utc).isoformat()

    if not components:
        components["service"] = ComponentHealth(
            status="healthy",
            message="No components registered",
            last_check=now,
        )

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        timestamp=now,
        components=components,
    )


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness probe: the process answers HTTP."""
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """
    Readiness probe.

    Ready once the scheduler is running and no component is unhealthy.
    A degraded component (stale ranking, in-memory stores) is still ready.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None or not scheduler.is_running:
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "scheduler not running"})

    overall_status, _ = await _run_checks()
    if overall_status == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "component unhealthy"})
    return {"status": "ready"}
