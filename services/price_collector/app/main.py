"""
Price Collector Service

Always-on service that snapshots ranked asset prices every minute,
cascades them into hourly/daily/weekly/monthly stores, and recovers
missed minutes.

API Endpoints:
- GET /health - Service health check
- GET /v0/status - Scheduler, ranking and gap-queue status
- GET /v0/runs - Recent run records
- GET /v0/gaps - Gap queue entries
- GET /v0/priorities - Current ranking
- GET /v0/snapshots - Stored snapshots
- GET /metrics - Prometheus metrics endpoint
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from ..core.metrics import set_service_info
from .components import Components, build_components, open_repositories
from .config import settings
from .routes import health, metrics, v0

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_components: Optional[Components] = None


def _register_health_checks(components: Components) -> None:
    async def check_database() -> dict:
        if components.db_pool is None:
            return {"status": "degraded", "message": "in-memory stores (no DATABASE_URL)"}
        if await components.db_pool.check_health():
            return {"status": "healthy"}
        return {"status": "unhealthy", "message": "database unreachable"}

    async def check_scheduler() -> dict:
        scheduler = components.scheduler
        if not scheduler.is_running:
            return {"status": "unhealthy", "message": "scheduler not running"}
        last = scheduler.last_run
        message = f"state={scheduler.state.value}"
        if last is not None:
            message += f", last run {last.terminal_status.value} for {last.bucket_timestamp.isoformat()}"
        return {"status": "healthy", "message": message}

    async def check_priorities() -> dict:
        state = components.priorities.state
        if not state.entries:
            return {"status": "unhealthy", "message": "no ranking available"}
        if components.priorities.is_stale:
            return {"status": "degraded", "message": state.reason}
        return {"status": "healthy", "message": f"{len(state.entries)} ranked assets"}

    health.clear_health_checks()
    health.register_health_check("database", check_database)
    health.register_health_check("scheduler", check_scheduler)
    health.register_health_check("priorities", check_priorities)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection pool (or in-memory stores)
    - Upstream client and rate limiter
    - Scheduler (minute tick + daily priority refresh)
    """
    global _components

    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(
        f"Collection mode: {settings.collection_mode}, batch size: {settings.effective_batch_size}, "
        f"{settings.calls_per_minute} calls/min"
    )
    logger.info(f"Pinned assets: {settings.pinned_asset_list}")

    repositories, db_pool = await open_repositories(settings)
    _components = build_components(settings, repositories, db_pool=db_pool)
    set_service_info(settings.service_version, settings.environment)
    _register_health_checks(_components)

    await _components.scheduler.start()
    logger.info("Service startup complete")

    # Store references on app.state for route access
    app.state.components = _components
    app.state.scheduler = _components.scheduler
    app.state.priorities = _components.priorities
    app.state.snapshot_repo = repositories.snapshots
    app.state.run_repo = repositories.runs
    app.state.queue_repo = repositories.gaps
    app.state.db_pool = db_pool

    yield

    # Shutdown
    logger.info("Shutting down service...")
    await _components.scheduler.stop()
    await _components.close()
    _components = None
    logger.info("Service shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Price Collector",
    description="Rate-limited multi-granularity price snapshot collector",
    version=settings.service_version,
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(v0.router, tags=["v0-api"])
app.include_router(metrics.router, tags=["metrics"])


@app.get("/")
async def root() -> dict:
    """Root endpoint - service info."""
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "environment": settings.environment,
        "collection_mode": settings.collection_mode,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.price_collector.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "local",
    )
