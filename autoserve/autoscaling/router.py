"""
Request admission and routing.

Every inbound request for an API either takes a free slot on the least-loaded
ready replica straight away or waits in the API's bounded FIFO queue. A slot
is free when the replica's in-flight count is below the API's
``target_replica_concurrency``; the pool manager enforces that cap atomically.

Queued requests are admitted in arrival order whenever a replica becomes
ready or finishes a request. A full queue rejects new requests immediately,
and a request whose deadline passes is failed with a timeout. Each caller
gets exactly one outcome.
"""

import time
import uuid
import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, Optional

from .metrics import MetricsAggregator
from .pool_manager import ReplicaEvent, ReplicaEventType, ReplicaInfo, ReplicaPoolManager
from .zero_scaler import ScaleToZeroActivator
from ..core.config import APISpec
from ..core.exceptions import (
    APINotFoundError, AdmissionRejected, ColdStartTimeout, InferenceError,
    RequestTimeout, ServiceUnavailableError
)


logger = logging.getLogger(__name__)


@dataclass(eq=False)
class QueuedRequest:
    """A request waiting for a replica slot."""
    request_id: str
    api_name: str
    payload: Any
    arrival: float
    deadline: float
    cold_start: bool
    future: asyncio.Future = field(repr=False)

    @property
    def waiting(self) -> bool:
        return not self.future.done()


class APIQueue:
    """Bounded FIFO of requests for one API."""

    def __init__(self, api_name: str):
        self.api_name = api_name
        self._items: Deque[QueuedRequest] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QueuedRequest]:
        return iter(self._items)

    def append(self, request: QueuedRequest):
        self._items.append(request)

    def head(self) -> Optional[QueuedRequest]:
        return self._items[0] if self._items else None

    def popleft(self) -> QueuedRequest:
        return self._items.popleft()

    def remove(self, request: QueuedRequest) -> bool:
        try:
            self._items.remove(request)
            return True
        except ValueError:
            return False

    def depth(self) -> int:
        """Requests still waiting for a slot."""
        return sum(1 for r in self._items if r.waiting)

    def drain(self) -> Iterator[QueuedRequest]:
        while self._items:
            yield self._items.popleft()


class RequestRouter:
    """Per-API queues in front of the replica pools."""

    def __init__(self,
                 pool_manager: ReplicaPoolManager,
                 aggregator: MetricsAggregator,
                 activator: ScaleToZeroActivator,
                 clock: Callable[[], float] = time.monotonic):
        self.pool_manager = pool_manager
        self.aggregator = aggregator
        self.activator = activator
        self._clock = clock
        self._queues: Dict[str, APIQueue] = {}
        self._stats: Dict[str, Dict[str, int]] = {}
        self.logger = logging.getLogger(f"{__name__}.RequestRouter")

        pool_manager.subscribe(self._on_replica_event)

    def open_api(self, api_name: str):
        if api_name not in self._queues:
            self._queues[api_name] = APIQueue(api_name)
            self._stats[api_name] = defaultdict(int)

    def close_api(self, api_name: str, reason: str = "API undeployed") -> int:
        """Fail every queued request of an API and forget its queue. Returns how many were failed."""
        queue = self._queues.pop(api_name, None)
        self._stats.pop(api_name, None)
        if queue is None:
            return 0
        failed = 0
        for request in queue.drain():
            if request.waiting:
                request.future.set_exception(ServiceUnavailableError(api_name, reason))
                failed += 1
        if failed:
            self.logger.warning(f"Failed {failed} queued requests of {api_name}: {reason}")
        return failed

    def queue_depth(self, api_name: str) -> int:
        queue = self._queues.get(api_name)
        return queue.depth() if queue is not None else 0

    async def route(self, api_name: str, payload: Any) -> Any:
        """
        Run one request on a replica of ``api_name`` and return the predictor's response.

        Raises:
            APINotFoundError: Unknown API.
            AdmissionRejected: The API's queue is full.
            RequestTimeout: Waited longer than ``max_queue_wait``.
            ColdStartTimeout: No replica became ready within ``cold_start_timeout``.
            InferenceError: The predictor failed on this payload.
            ServiceUnavailableError: The API was undeployed while waiting.
        """
        queue = self._get_queue(api_name)
        counts = self.pool_manager.counts(api_name)
        if counts["ready"] == 0:
            # Triggers a scale-up only when nothing is pending either
            await self.activator.ensure_capacity(api_name)
            queue = self._get_queue(api_name)

        spec = self.pool_manager.get_spec(api_name)
        replica = None
        if not queue.depth():
            replica = self.pool_manager.try_acquire(api_name, spec.target_replica_concurrency)
        if replica is None:
            replica = await self._wait_for_slot(api_name, queue, spec, payload)

        return await self._dispatch(api_name, replica, payload)

    def _get_queue(self, api_name: str) -> APIQueue:
        queue = self._queues.get(api_name)
        if queue is None:
            raise APINotFoundError(api_name)
        return queue

    async def _wait_for_slot(self, api_name: str, queue: APIQueue, spec: APISpec, payload: Any) -> ReplicaInfo:
        depth = queue.depth()
        if depth >= spec.max_queue_size:
            self._count(api_name, "rejected")
            raise AdmissionRejected(api_name, depth, retry_after=min(spec.max_queue_wait, 5.0))

        cold_start = self.pool_manager.counts(api_name)["ready"] == 0
        timeout = spec.cold_start_timeout if cold_start else spec.max_queue_wait
        now = self._clock()
        request = QueuedRequest(
            request_id=uuid.uuid4().hex[:12],
            api_name=api_name,
            payload=payload,
            arrival=now,
            deadline=now + timeout,
            cold_start=cold_start,
            future=asyncio.get_running_loop().create_future(),
        )
        queue.append(request)
        self._count(api_name, "queued")
        self._record_depth(api_name, queue)
        self._pump(api_name)

        try:
            await asyncio.wait({request.future}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(queue, request)
            self._count(api_name, "cancelled")
            self.logger.debug(f"Request {request.request_id} for {api_name} cancelled while queued")
            raise

        if request.future.done():
            return request.future.result()

        self._abandon(queue, request)
        waited = self._clock() - request.arrival
        if request.cold_start:
            self._count(api_name, "cold_start_timeout")
            raise ColdStartTimeout(api_name, waited, retry_after=spec.cold_start_timeout)
        self._count(api_name, "timed_out")
        raise RequestTimeout(api_name, waited, retry_after=min(spec.max_queue_wait, 5.0))

    def _abandon(self, queue: APIQueue, request: QueuedRequest):
        """Take a request out of its queue; give back a slot it was granted meanwhile."""
        if queue.remove(request):
            self._record_depth(request.api_name, queue)
        future = request.future
        if not future.done():
            future.cancel()
        elif not future.cancelled() and future.exception() is None:
            replica = future.result()
            self.pool_manager.release(request.api_name, replica.replica_id)

    async def _dispatch(self, api_name: str, replica: ReplicaInfo, payload: Any) -> Any:
        self._count(api_name, "dispatched")
        self.aggregator.record_sample(api_name, replica.replica_id, replica.in_flight)
        try:
            result = await self.pool_manager.invoke(api_name, replica.replica_id, payload)
        except InferenceError:
            self._count(api_name, "failed")
            raise
        except ServiceUnavailableError:
            self._count(api_name, "unavailable")
            raise
        finally:
            remaining = self.pool_manager.release(api_name, replica.replica_id)
            self.aggregator.record_sample(api_name, replica.replica_id, remaining)

        self._count(api_name, "succeeded")
        return result

    def _pump(self, api_name: str):
        """Admit queued requests from the head while slots are free."""
        queue = self._queues.get(api_name)
        if queue is None or not len(queue):
            return
        try:
            spec = self.pool_manager.get_spec(api_name)
        except APINotFoundError:
            return

        before = len(queue)
        while len(queue):
            head = queue.head()
            if not head.waiting:
                queue.popleft()
                continue
            replica = self.pool_manager.try_acquire(api_name, spec.target_replica_concurrency)
            if replica is None:
                break
            queue.popleft()
            head.future.set_result(replica)
        if len(queue) != before:
            self._record_depth(api_name, queue)

    def _record_depth(self, api_name: str, queue: APIQueue):
        self.aggregator.record_queue_depth(api_name, queue.depth())

    def _on_replica_event(self, event: ReplicaEvent):
        if event.kind in (ReplicaEventType.READY, ReplicaEventType.RELEASED):
            self._pump(event.api_name)

    def _count(self, api_name: str, key: str):
        stats = self._stats.get(api_name)
        if stats is not None:
            stats[key] += 1

    def get_stats(self, api_name: Optional[str] = None) -> Dict[str, Any]:
        if api_name is not None:
            stats = dict(self._stats.get(api_name, {}))
            stats["queue_depth"] = self.queue_depth(api_name)
            return stats
        return {name: self.get_stats(name) for name in list(self._queues)}
