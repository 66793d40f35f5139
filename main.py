"""
autoserve server entry point.

Reads ``config.yaml`` and ``.env`` from the working directory, sets up
logging and runs the FastAPI application with uvicorn.
"""

import logging

import uvicorn

from autoserve.api import create_app
from autoserve.core.config_manager import get_config_manager
from autoserve.core.logging import setup_logging


def build_app():
    """Create the application from the configuration files."""
    config_manager = get_config_manager()
    serving_config = config_manager.get_serving_config()
    setup_logging(serving_config.server, environment=serving_config.environment)
    return create_app(config=serving_config, apis=config_manager.get_api_specs()), serving_config


if __name__ == "__main__":
    app, serving_config = build_app()
    logger = logging.getLogger(__name__)
    logger.info(f"Starting server on {serving_config.server.host}:{serving_config.server.port}")

    uvicorn.run(
        app,
        host=serving_config.server.host,
        port=serving_config.server.port,
        log_level=serving_config.server.log_level.lower()
    )
