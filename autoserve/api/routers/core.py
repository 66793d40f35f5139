"""
Health, metrics and autoscaler statistics endpoints.
"""

import time
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from ..dependencies import get_engine
from ..schemas import APIResponse, HealthResponse
from ... import __version__
from ...core.serving_engine import ServingEngine

router = APIRouter(tags=["core"])
logger = logging.getLogger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Server health, healthy once the serving engine is running."""
    engine = getattr(request.app.state, "engine", None)
    running = bool(engine and engine.is_running)
    checks = {"engine": "running" if running else "stopped"}
    if running:
        checks["controller"] = engine.controller.state.value
        checks["apis"] = len(engine.pool_manager.api_names())

    return HealthResponse(
        healthy=running,
        checks=checks,
        timestamp=time.time(),
        version=__version__,
        uptime=time.time() - engine.started_at if running and engine.started_at else None
    )


@router.get("/metrics")
async def metrics(engine: ServingEngine = Depends(get_engine)) -> Response:
    """Prometheus exposition of per-API load, replicas and queue depth."""
    return Response(content=engine.render_metrics(), media_type=engine.exporter.content_type)


@router.get("/autoscaler/stats")
async def autoscaler_stats(engine: ServingEngine = Depends(get_engine)) -> APIResponse:
    """Controller decisions, cold starts and routing counters."""
    return APIResponse(success=True, data=engine.get_stats(), message="Autoscaler statistics retrieved")
