"""
Request logging middleware.
"""

import time
import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.logging import get_api_logger

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every API request and response."""

    def __init__(self, app, enable_detailed_logging: bool = True):
        super().__init__(app)
        self.enable_detailed_logging = enable_detailed_logging
        self.api_logger = get_api_logger()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        path = request.url.path

        if self.enable_detailed_logging:
            logger.debug(f"[API REQUEST] {method} {path} - Client: {client_ip}")
            self.api_logger.info(f"REQUEST: {method} {path} | Client: {client_ip}")

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(f"[API ERROR] {method} {path} - Error: {e} - Time: {process_time:.3f}s - Client: {client_ip}")
            self.api_logger.error(f"ERROR: {method} {path} | Error: {e} | Time: {process_time:.3f}s | Client: {client_ip}")
            raise

        process_time = time.time() - start_time
        if self.enable_detailed_logging:
            logger.debug(f"[API RESPONSE] {method} {path} - Status: {response.status_code} - Time: {process_time:.3f}s")
            self.api_logger.info(
                f"RESPONSE: {method} {path} | Status: {response.status_code} | "
                f"Time: {process_time:.3f}s | Client: {client_ip}"
            )

        response.headers["X-Process-Time"] = f"{process_time:.6f}"
        return response
