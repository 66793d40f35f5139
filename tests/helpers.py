"""Test doubles for the execution substrate and the clock."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from autoserve.core.config import APISpec, PredictorSpec, PredictorType
from autoserve.core.exceptions import InferenceError, ReplicaCreationFailure
from autoserve.substrate.base import ExecutionSubstrate


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@dataclass
class FakeHandle:
    replica_id: str
    api_name: str
    ready: bool = False
    failure: Optional[str] = None
    terminated: bool = False
    requests: List[Any] = field(default_factory=list)


class FakeSubstrate(ExecutionSubstrate):
    """
    In-memory substrate whose replicas become healthy on demand.

    With ``auto_ready`` replicas are healthy on the first health check.
    ``hold()`` makes every forwarded request block until ``resume()``.
    """

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.fail_create: Optional[str] = None
        self.handles: Dict[str, FakeHandle] = {}
        self.created: List[str] = []
        self.terminated: List[str] = []
        self._gate: Optional[asyncio.Event] = None

    async def create_replica(self, spec: APISpec, replica_id: str) -> FakeHandle:
        if self.fail_create:
            raise ReplicaCreationFailure(spec.name, replica_id, self.fail_create)
        handle = FakeHandle(replica_id=replica_id, api_name=spec.name, ready=self.auto_ready)
        self.handles[replica_id] = handle
        self.created.append(replica_id)
        return handle

    async def health_check(self, handle: FakeHandle) -> bool:
        if handle.failure:
            raise ReplicaCreationFailure(handle.api_name, handle.replica_id, handle.failure)
        return handle.ready

    async def forward(self, handle: FakeHandle, payload: Any) -> Any:
        handle.requests.append(payload)
        if self._gate is not None:
            await self._gate.wait()
        if isinstance(payload, dict) and payload.get("fail"):
            raise InferenceError("requested failure")
        return {"echo": payload, "replica_id": handle.replica_id}

    async def terminate(self, handle: FakeHandle) -> None:
        handle.terminated = True
        self.terminated.append(handle.replica_id)

    def make_ready(self, replica_id: Optional[str] = None):
        for rid, handle in self.handles.items():
            if replica_id is None or rid == replica_id:
                handle.ready = True

    def fail(self, replica_id: str, reason: str = "crashed during startup"):
        self.handles[replica_id].failure = reason

    def hold(self):
        self._gate = asyncio.Event()

    def resume(self):
        if self._gate is not None:
            self._gate.set()
            self._gate = None


def make_spec(name: str = "test-api", **overrides) -> APISpec:
    """APISpec with fast timeouts suitable for tests."""
    values = dict(
        target_replica_concurrency=2,
        min_replicas=0,
        max_replicas=4,
        stabilization_window=0.0,
        cold_start_timeout=2.0,
        max_queue_size=10,
        max_queue_wait=2.0,
        drain_timeout=5.0,
        startup_timeout=5.0,
    )
    values.update(overrides)
    return APISpec(
        name=name,
        predictor=PredictorSpec(type=PredictorType.PYTHON, path="tests.fake_predictors:EchoPredictor"),
        **values
    )


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
