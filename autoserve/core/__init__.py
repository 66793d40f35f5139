"""Configuration, errors, logging and the serving engine."""

from .config import (
    APISpec, PredictorSpec, PredictorType, ComputeSpec,
    ServingConfig, MetricsConfig, ControllerConfig, ReplicaConfig, ServerConfig
)
from .exceptions import (
    ServingError, ConfigurationError, APINotFoundError, ReplicaCreationFailure,
    AdmissionRejected, RequestTimeout, ColdStartTimeout, InferenceError,
    InitializationError, AggregatorUnavailable, ServiceUnavailableError
)

__all__ = [
    "APISpec", "PredictorSpec", "PredictorType", "ComputeSpec",
    "ServingConfig", "MetricsConfig", "ControllerConfig", "ReplicaConfig", "ServerConfig",
    "ServingError", "ConfigurationError", "APINotFoundError", "ReplicaCreationFailure",
    "AdmissionRejected", "RequestTimeout", "ColdStartTimeout", "InferenceError",
    "InitializationError", "AggregatorUnavailable", "ServiceUnavailableError",
]
