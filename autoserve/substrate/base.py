"""
Execution substrate interface.

The substrate starts and stops replica processes, reports their health and
forwards requests to them. The pool manager only talks to replicas through
this interface and treats the returned handle as opaque.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..core.config import APISpec


class ExecutionSubstrate(ABC):
    """Start/stop replicas, observe their health, forward requests."""

    @abstractmethod
    async def create_replica(self, spec: APISpec, replica_id: str) -> Any:
        """
        Request a new replica and return its handle without waiting for readiness.

        Raises:
            ReplicaCreationFailure: If the substrate rejects the request.
        """

    @abstractmethod
    async def health_check(self, handle: Any) -> bool:
        """
        True once the replica can serve, False while it is still starting.

        Raises:
            ReplicaCreationFailure: If the replica failed and will never become healthy.
        """

    @abstractmethod
    async def forward(self, handle: Any, payload: Any) -> Any:
        """
        Run one request on the replica.

        Raises:
            InferenceError: If the predictor fails on this payload.
        """

    @abstractmethod
    async def terminate(self, handle: Any) -> None:
        """Stop the replica and release its resources."""

    async def shutdown(self) -> None:
        """Release substrate-wide resources."""
