"""
In-process execution substrate.

Each replica is a predictor instance living in the serving process. Predictor
initialization and inference run on a shared thread pool so they never block
the event loop.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .base import ExecutionSubstrate
from ..core.config import APISpec, ComputeSpec
from ..core.exceptions import InferenceError, ReplicaCreationFailure, ServingError
from ..predictors import BasePredictor, create_predictor


logger = logging.getLogger(__name__)


@dataclass
class LocalReplicaHandle:
    """Handle to an in-process replica."""
    replica_id: str
    api_name: str
    predictor: BasePredictor
    compute: ComputeSpec = field(default_factory=ComputeSpec)
    init_task: Optional[asyncio.Task] = None
    terminated: bool = False


class LocalSubstrate(ExecutionSubstrate):
    """Runs predictors inside the current process on a thread pool."""

    def __init__(self, max_workers: int = 8):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="autoserve-replica")
        self._handles: Dict[str, LocalReplicaHandle] = {}
        self.logger = logging.getLogger(f"{__name__}.LocalSubstrate")

    async def create_replica(self, spec: APISpec, replica_id: str) -> LocalReplicaHandle:
        try:
            predictor = create_predictor(spec.predictor)
        except ServingError as e:
            raise ReplicaCreationFailure(spec.name, replica_id, e.message, cause=e)

        handle = LocalReplicaHandle(
            replica_id=replica_id,
            api_name=spec.name,
            predictor=predictor,
            compute=spec.compute
        )
        loop = asyncio.get_running_loop()
        handle.init_task = asyncio.ensure_future(
            loop.run_in_executor(self._executor, predictor.init, dict(spec.predictor.config))
        )
        self._handles[replica_id] = handle
        self.logger.debug(f"Starting replica {replica_id} for {spec.name} (compute={spec.compute})")
        return handle

    async def health_check(self, handle: LocalReplicaHandle) -> bool:
        if handle.terminated:
            raise ReplicaCreationFailure(handle.api_name, handle.replica_id, "replica was terminated")
        task = handle.init_task
        if task is None or not task.done():
            return False
        if task.cancelled():
            raise ReplicaCreationFailure(handle.api_name, handle.replica_id, "initialization was cancelled")
        error = task.exception()
        if error is not None:
            details = error.message if isinstance(error, ServingError) else str(error)
            raise ReplicaCreationFailure(handle.api_name, handle.replica_id, details, cause=error)
        return True

    async def forward(self, handle: LocalReplicaHandle, payload: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, handle.predictor.predict, payload)
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(str(e) or e.__class__.__name__, cause=e,
                                 context={"api_name": handle.api_name, "replica_id": handle.replica_id})

    async def terminate(self, handle: LocalReplicaHandle) -> None:
        if handle.terminated:
            return
        handle.terminated = True
        self._handles.pop(handle.replica_id, None)

        if handle.init_task is not None and not handle.init_task.done():
            # Detaches the future only; an init already running in a worker thread still completes
            handle.init_task.cancel()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, handle.predictor.cleanup)
        except Exception as e:
            self.logger.warning(f"Cleanup of replica {handle.replica_id} failed: {e}")
        self.logger.debug(f"Replica {handle.replica_id} of {handle.api_name} terminated")

    async def shutdown(self) -> None:
        for handle in list(self._handles.values()):
            await self.terminate(handle)
        self._executor.shutdown(wait=False)
        self.logger.info("Local substrate shut down")
