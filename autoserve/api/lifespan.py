"""
Application lifespan management.
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    """
    Start the serving engine, deploy the configured APIs, and stop the engine
    on shutdown.
    """
    startup_time = datetime.now()
    engine = app.state.engine

    logger.info("[SERVER] Starting autoserve API server...")
    await engine.start()

    try:
        for spec in getattr(app.state, "initial_apis", []):
            await engine.deploy(spec)

        startup_duration = (datetime.now() - startup_time).total_seconds()
        logger.info(f"[SERVER] Deployed {len(engine.pool_manager.api_names())} APIs")
        logger.info(f"[SERVER] Startup duration: {startup_duration:.2f} seconds")
        logger.info("[SERVER] Ready to accept requests")
        logger.info("=" * 60)

        yield

    finally:
        shutdown_time = datetime.now()
        logger.info("=" * 60)
        logger.info("[SERVER] Shutting down autoserve API server...")
        try:
            await engine.stop()
        except Exception as e:
            logger.error(f"[SERVER] Error during cleanup: {e}")
        shutdown_duration = (datetime.now() - shutdown_time).total_seconds()
        logger.info(f"[SERVER] Shutdown duration: {shutdown_duration:.2f} seconds")
