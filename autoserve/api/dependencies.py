"""
Dependency injection for the HTTP layer.
"""

import logging

from fastapi import HTTPException, Request, status

from ..core.serving_engine import ServingEngine

logger = logging.getLogger(__name__)


def get_engine(request: Request) -> ServingEngine:
    """Serving engine attached to the application."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None or not engine.is_running:
        logger.warning("Request received while the serving engine is not running")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Serving engine is not running",
            headers={"Retry-After": "5"}
        )
    return engine
