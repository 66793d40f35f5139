"""
autoserve: serve ML models as real-time APIs with traffic-driven autoscaling.

Replicas of each deployed API are scaled between ``min_replicas`` and
``max_replicas`` (down to zero when idle) by a periodic control loop, while a
per-API admission queue caps the concurrency of every replica exactly.
"""

from .core.config import APISpec, PredictorSpec, PredictorType, ComputeSpec, ServingConfig
from .core.serving_engine import ServingEngine

__version__ = "0.1.0"

__all__ = [
    "APISpec",
    "PredictorSpec",
    "PredictorType",
    "ComputeSpec",
    "ServingConfig",
    "ServingEngine",
    "__version__",
]
