"""
Centralized logging configuration for autoserve.
"""

import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Optional
from datetime import datetime

from .config import ServerConfig


def setup_logging(server_config: Optional[ServerConfig] = None, environment: str = "development") -> None:
    """Setup console and rotating file logging."""
    config = server_config or ServerConfig()

    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    logging.getLogger().handlers.clear()

    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
    )
    simple_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    api_logger = logging.getLogger("api_requests")
    api_logger.setLevel(logging.INFO)

    log_dir = Path(config.log_dir)
    if config.file_logging:
        log_dir.mkdir(parents=True, exist_ok=True)

        main_handler = logging.handlers.RotatingFileHandler(
            log_dir / "server.log",
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
            encoding='utf-8'
        )
        main_handler.setLevel(log_level)
        main_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(main_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / "server_errors.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(error_handler)

        api_handler = logging.handlers.RotatingFileHandler(
            log_dir / "api_requests.log",
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=3,
            encoding='utf-8'
        )
        api_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
        api_logger.addHandler(api_handler)
        api_logger.propagate = False

    logger = logging.getLogger(__name__)
    logger.info("=" * 80)
    logger.info("AUTOSERVE SERVER STARTUP")
    logger.info("=" * 80)
    logger.info(f"Startup time: {datetime.now().isoformat()}")
    logger.info(f"Environment: {environment}")
    logger.info(f"Log level: {config.log_level}")
    if config.file_logging:
        logger.info(f"Log files directory: {log_dir.absolute()}")


def get_api_logger() -> logging.Logger:
    """Get the API requests logger."""
    return logging.getLogger("api_requests")
