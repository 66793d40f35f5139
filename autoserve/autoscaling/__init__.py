"""
Autoscaling and request routing for autoserve.

This package provides:
- Sliding-window concurrency metrics
- Per-API replica pools with an exact admission cap
- Bounded per-API request queues
- Scale-to-zero activation on the first request
- The periodic autoscaler control loop
"""

from .metrics import MetricsAggregator, MetricSample
from .pool_manager import (
    ReplicaPoolManager,
    ReplicaPool,
    ReplicaState,
    ReplicaInfo,
    ReplicaEvent,
    ReplicaEventType
)
from .router import RequestRouter, QueuedRequest, APIQueue
from .zero_scaler import ScaleToZeroActivator, ColdStart
from .autoscaler import AutoscalerController, ScalingAction, ScalingDecision, compute_desired

__all__ = [
    "MetricsAggregator",
    "MetricSample",
    "ReplicaPoolManager",
    "ReplicaPool",
    "ReplicaState",
    "ReplicaInfo",
    "ReplicaEvent",
    "ReplicaEventType",
    "RequestRouter",
    "QueuedRequest",
    "APIQueue",
    "ScaleToZeroActivator",
    "ColdStart",
    "AutoscalerController",
    "ScalingAction",
    "ScalingDecision",
    "compute_desired"
]
