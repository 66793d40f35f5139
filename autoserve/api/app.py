"""
FastAPI application for autoserve.
"""

import math
import logging
from typing import Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .lifespan import lifespan
from .middleware import RequestLoggingMiddleware
from .routers import apis_router, core_router, predict_router
from .schemas import ErrorResponse
from .. import __version__
from ..core.config import APISpec, ServingConfig
from ..core.exceptions import ServingError
from ..core.serving_engine import ServingEngine

logger = logging.getLogger(__name__)


def create_app(engine: Optional[ServingEngine] = None,
               config: Optional[ServingConfig] = None,
               apis: Optional[Iterable[APISpec]] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Serving engine to expose. A new one is built from ``config`` when omitted.
        config: Runtime configuration for a new engine.
        apis: APIs deployed at startup.
    """
    app = FastAPI(
        title="autoserve",
        description="Real-time model serving with traffic-driven autoscaling and scale-to-zero",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine or ServingEngine(config)
    app.state.initial_apis = list(apis or [])

    _setup_middleware(app)
    _setup_routers(app)
    _setup_exception_handlers(app)

    logger.info("[APP] FastAPI application created and configured")
    return app


def _setup_middleware(app: FastAPI):
    """Setup application middleware."""
    logger.debug("[APP] Setting up middleware...")
    app.add_middleware(RequestLoggingMiddleware)


def _setup_routers(app: FastAPI):
    """Setup application routers."""
    logger.debug("[APP] Setting up routers...")
    app.include_router(core_router)
    app.include_router(apis_router)
    app.include_router(predict_router)


def _setup_exception_handlers(app: FastAPI):
    """Map serving errors to HTTP responses."""

    @app.exception_handler(ServingError)
    async def serving_error_handler(request: Request, exc: ServingError):
        body = ErrorResponse(
            error=exc.message,
            error_code=exc.error_code,
            details=exc.context,
            suggestions=exc.suggestions,
            retry_after=exc.retry_after,
        )
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)
