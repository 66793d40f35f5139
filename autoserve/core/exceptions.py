"""
Exceptions for the autoserve model serving runtime.

Every error carries a machine readable code, a context dictionary and a list
of suggestions so that the HTTP layer can turn it into a structured response.
Request-level errors additionally carry the HTTP status code they map to and,
for 503 responses, a retry hint in seconds.
"""

import logging
from typing import Any, Optional, Dict, List
from datetime import datetime


logger = logging.getLogger(__name__)


class ServingError(Exception):
    """
    Base exception for autoserve.

    Provides error context, automatic logging and a dictionary form for API
    responses.
    """

    status_code: int = 500
    log_level: int = logging.ERROR

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.cause = cause
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        self.timestamp = datetime.now()

        self._log_error()

    def _log_error(self):
        """Log the error with its class level and context."""
        log_data = {
            "error_code": self.error_code,
            "error_message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)

        if self.suggestions:
            log_data["suggestions"] = self.suggestions

        logger.log(self.log_level, f"[{self.error_code}] {self.message}", extra={"error_details": log_data})

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        data = {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
            "suggestions": self.suggestions,
            "timestamp": self.timestamp.isoformat()
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class ConfigurationError(ServingError):
    """Raised when a deployment or runtime configuration is invalid."""

    status_code = 400

    def __init__(self, config_field: str, details: str, **kwargs):
        context = {"config_field": config_field}
        context.update(kwargs.get("context", {}))

        super().__init__(
            f"Configuration error in '{config_field}': {details}",
            error_code="CONFIGURATION_ERROR",
            context=context,
            cause=kwargs.get("cause"),
            suggestions=[
                f"Check the '{config_field}' configuration parameter",
                "Verify configuration file syntax and values"
            ]
        )


class APINotFoundError(ServingError):
    """Raised when a request names an API that is not deployed."""

    status_code = 404
    log_level = logging.WARNING

    def __init__(self, api_name: str):
        super().__init__(
            f"API '{api_name}' is not deployed",
            error_code="API_NOT_FOUND",
            context={"api_name": api_name},
            suggestions=["List deployed APIs with GET /apis"]
        )


class ReplicaCreationFailure(ServingError):
    """Raised when the execution substrate cannot start a replica or it never becomes healthy."""

    log_level = logging.WARNING

    def __init__(self, api_name: str, replica_id: str, details: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Replica {replica_id} of '{api_name}' failed to start: {details}",
            error_code="REPLICA_CREATION_FAILURE",
            context={"api_name": api_name, "replica_id": replica_id},
            cause=cause,
            suggestions=[
                "Check the predictor path and configuration",
                "Verify compute resources are available"
            ]
        )


class AdmissionRejected(ServingError):
    """Raised when an API's request queue is full."""

    status_code = 503
    log_level = logging.WARNING

    def __init__(self, api_name: str, queue_size: int, retry_after: float = 1.0):
        super().__init__(
            f"Request queue for '{api_name}' is full ({queue_size} requests waiting)",
            error_code="ADMISSION_REJECTED",
            context={"api_name": api_name, "queue_size": queue_size},
            suggestions=["Retry the request after a short delay"],
            retry_after=retry_after
        )


class RequestTimeout(ServingError):
    """Raised when a queued request passes its deadline before being dispatched."""

    status_code = 503
    log_level = logging.WARNING

    def __init__(self, api_name: str, waited: float, retry_after: float = 1.0, **kwargs):
        context = {"api_name": api_name, "waited_seconds": round(waited, 3)}
        context.update(kwargs.get("context", {}))

        super().__init__(
            kwargs.get("message") or f"Request to '{api_name}' timed out after {waited:.2f}s in queue",
            error_code=kwargs.get("error_code", "REQUEST_TIMEOUT"),
            context=context,
            suggestions=["Retry the request", "Increase max_queue_wait for this API"],
            retry_after=retry_after
        )


class ColdStartTimeout(RequestTimeout):
    """Raised when no replica became ready before a cold-start deadline."""

    def __init__(self, api_name: str, waited: float, retry_after: float = 5.0):
        super().__init__(
            api_name,
            waited,
            retry_after=retry_after,
            message=f"No replica of '{api_name}' became ready within {waited:.2f}s",
            error_code="COLD_START_TIMEOUT"
        )
        self.suggestions = ["Retry the request once the API has warmed up", "Increase cold_start_timeout"]


class InferenceError(ServingError):
    """Raised when a predictor fails on a specific payload."""

    status_code = 500

    def __init__(self, details: str, cause: Optional[Exception] = None, **kwargs):
        super().__init__(
            f"Inference failed: {details}",
            error_code="INFERENCE_ERROR",
            context=kwargs.get("context", {}),
            cause=cause,
            suggestions=["Check the request payload format"]
        )


class InitializationError(ServingError):
    """Raised when a predictor cannot be initialized."""

    def __init__(self, predictor_path: str, cause: Optional[Exception] = None, **kwargs):
        context = {"predictor_path": predictor_path}
        context.update(kwargs.get("context", {}))

        super().__init__(
            f"Failed to initialize predictor from {predictor_path}",
            error_code="INITIALIZATION_ERROR",
            context=context,
            cause=cause,
            suggestions=[
                "Verify the predictor path exists and is accessible",
                "Check that the predictor type matches the file format"
            ]
        )


class AggregatorUnavailable(ServingError):
    """Raised when the metrics aggregator cannot provide a load value for an API."""

    log_level = logging.DEBUG

    def __init__(self, api_name: str, details: str = "no metric series registered"):
        super().__init__(
            f"Metrics unavailable for '{api_name}': {details}",
            error_code="AGGREGATOR_UNAVAILABLE",
            context={"api_name": api_name}
        )


class ServiceUnavailableError(ServingError):
    """Raised to callers still waiting when an API is undeployed or the server shuts down."""

    status_code = 503
    log_level = logging.WARNING

    def __init__(self, api_name: str, reason: str, retry_after: float = 5.0):
        super().__init__(
            f"API '{api_name}' is unavailable: {reason}",
            error_code="SERVICE_UNAVAILABLE",
            context={"api_name": api_name, "reason": reason},
            retry_after=retry_after
        )
