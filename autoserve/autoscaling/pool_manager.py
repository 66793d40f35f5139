"""
Replica pool management.

One ``ReplicaPool`` per deployed API holds the authoritative state of that
API's replicas. The ``ReplicaPoolManager`` is the only component that changes
a replica: it creates replicas through the execution substrate, promotes them
to ready once healthy, drains and terminates them, and enforces the exact
per-replica admission cap used by the router.

Replica lifecycle::

    PENDING -> READY -> DRAINING -> TERMINATED
       \\______________________________/

Each pool has its own lock, so operations on different APIs never contend.
Substrate calls run on background tasks and never block the caller.
"""

import time
import asyncio
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from ..core.config import APISpec, ReplicaConfig
from ..core.exceptions import APINotFoundError, ReplicaCreationFailure, ServiceUnavailableError
from ..substrate.base import ExecutionSubstrate


logger = logging.getLogger(__name__)


class ReplicaState(Enum):
    """Replica lifecycle state."""
    PENDING = "pending"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


_ALLOWED_TRANSITIONS = {
    ReplicaState.PENDING: {ReplicaState.READY, ReplicaState.TERMINATED},
    ReplicaState.READY: {ReplicaState.DRAINING},
    ReplicaState.DRAINING: {ReplicaState.TERMINATED},
    ReplicaState.TERMINATED: set(),
}


class ReplicaEventType(Enum):
    """Notifications emitted by the pool manager."""
    READY = "ready"
    FAILED = "failed"
    RELEASED = "released"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ReplicaEvent:
    kind: ReplicaEventType
    api_name: str
    replica_id: str
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ReplicaInfo:
    """Read-only snapshot of a replica."""
    replica_id: str
    api_name: str
    state: ReplicaState
    in_flight: int
    created_at: float
    generation: int
    ready_at: Optional[float] = None
    terminated_at: Optional[float] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replica_id": self.replica_id,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "created_at": self.created_at,
            "generation": self.generation,
            "ready_at": self.ready_at,
            "terminated_at": self.terminated_at,
            "failure_reason": self.failure_reason,
        }


@dataclass
class Replica:
    """Mutable replica record, only touched by the pool manager under the pool lock."""
    replica_id: str
    api_name: str
    seq: int
    spec: APISpec
    generation: int
    state: ReplicaState = ReplicaState.PENDING
    in_flight: int = 0
    created_at: float = field(default_factory=time.time)
    ready_at: Optional[float] = None
    terminated_at: Optional[float] = None
    failure_reason: Optional[str] = None
    handle: Any = None
    lifecycle_task: Optional[asyncio.Task] = None
    drain_task: Optional[asyncio.Task] = None

    def transition(self, new_state: ReplicaState):
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid replica transition {self.state.value} -> {new_state.value} for {self.replica_id}"
            )
        self.state = new_state
        if new_state == ReplicaState.READY:
            self.ready_at = time.time()
        elif new_state == ReplicaState.TERMINATED:
            self.terminated_at = time.time()

    def snapshot(self) -> ReplicaInfo:
        return ReplicaInfo(
            replica_id=self.replica_id,
            api_name=self.api_name,
            state=self.state,
            in_flight=self.in_flight,
            created_at=self.created_at,
            generation=self.generation,
            ready_at=self.ready_at,
            terminated_at=self.terminated_at,
            failure_reason=self.failure_reason,
        )


class ReplicaPool:
    """Replicas of one API plus the lock guarding them."""

    def __init__(self, spec: APISpec, history_size: int = 50):
        self.spec = spec
        self.generation = 1
        self.lock = threading.Lock()
        self.replicas: "OrderedDict[str, Replica]" = OrderedDict()
        self.history: Deque[ReplicaInfo] = deque(maxlen=history_size)
        self.closed = False
        self._next_seq = 0

    @property
    def name(self) -> str:
        return self.spec.name

    def new_replica(self) -> Replica:
        self._next_seq += 1
        replica = Replica(
            replica_id=f"{self.spec.name}-r{self._next_seq:05d}",
            api_name=self.spec.name,
            seq=self._next_seq,
            spec=self.spec,
            generation=self.generation,
        )
        self.replicas[replica.replica_id] = replica
        return replica

    def in_state(self, *states: ReplicaState) -> List[Replica]:
        return [r for r in self.replicas.values() if r.state in states]

    def active(self) -> List[Replica]:
        return self.in_state(ReplicaState.PENDING, ReplicaState.READY)

    def retire(self, replica: Replica):
        """Move a terminated replica out of the live set into history."""
        self.replicas.pop(replica.replica_id, None)
        self.history.append(replica.snapshot())


EventListener = Callable[[ReplicaEvent], None]


class ReplicaPoolManager:
    """Owns replica state for every deployed API."""

    def __init__(self,
                 substrate: ExecutionSubstrate,
                 config: Optional[ReplicaConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.substrate = substrate
        self.config = config or ReplicaConfig()
        self._clock = clock
        self._pools: Dict[str, ReplicaPool] = {}
        # Undeployed pools whose replicas are still draining
        self._retiring: List[ReplicaPool] = []
        self._pools_lock = threading.Lock()
        self._listeners: List[EventListener] = []
        self._tasks: Set[asyncio.Task] = set()

        self.logger = logging.getLogger(f"{__name__}.ReplicaPoolManager")

    # Pools

    def create_pool(self, spec: APISpec) -> ReplicaPool:
        with self._pools_lock:
            if spec.name in self._pools:
                raise ValueError(f"Pool for '{spec.name}' already exists")
            pool = ReplicaPool(spec, history_size=self.config.terminated_history)
            for retiring in self._retiring:
                if retiring.name == spec.name:
                    # Replica ids stay unique while the previous deployment drains
                    pool._next_seq = max(pool._next_seq, retiring._next_seq)
            self._pools[spec.name] = pool
        self.logger.info(f"Created replica pool for {spec.name}")
        return pool

    def has_pool(self, api_name: str) -> bool:
        with self._pools_lock:
            return api_name in self._pools

    def api_names(self) -> List[str]:
        with self._pools_lock:
            return list(self._pools)

    def get_spec(self, api_name: str) -> APISpec:
        return self._get_pool(api_name).spec

    def _get_pool(self, api_name: str) -> ReplicaPool:
        with self._pools_lock:
            pool = self._pools.get(api_name)
        if pool is None:
            raise APINotFoundError(api_name)
        return pool

    async def replace_spec(self, spec: APISpec) -> int:
        """
        Redeploy: swap the spec, drain every ready replica of the previous
        generation, cancel its pending ones and start a new generation of the
        same size clamped to the new bounds. Returns the new replica count.
        """
        pool = self._get_pool(spec.name)
        with pool.lock:
            previous = len(pool.active())
            pool.spec = spec
            pool.generation += 1
            to_drain = pool.in_state(ReplicaState.READY)
            to_cancel = pool.in_state(ReplicaState.PENDING)
            for replica in to_drain:
                replica.transition(ReplicaState.DRAINING)
            for replica in to_cancel:
                self._mark_cancelled(pool, replica, "superseded by redeploy")
            target = max(spec.min_replicas, min(previous, spec.max_replicas))
            created = [pool.new_replica() for _ in range(target)]

        self._after_scale(pool, created, to_drain, to_cancel)
        self.logger.info(
            f"Redeployed {spec.name} as generation {pool.generation}: "
            f"draining {len(to_drain)}, cancelled {len(to_cancel)}, starting {len(created)}"
        )
        return target

    async def remove_pool(self, api_name: str):
        """Undeploy: drain ready replicas, cancel pending ones and forget the pool."""
        pool = self._get_pool(api_name)
        with pool.lock:
            pool.closed = True
            to_drain = pool.in_state(ReplicaState.READY)
            to_cancel = pool.in_state(ReplicaState.PENDING)
            for replica in to_drain:
                replica.transition(ReplicaState.DRAINING)
            for replica in to_cancel:
                self._mark_cancelled(pool, replica, "API undeployed")
            draining = bool(pool.in_state(ReplicaState.DRAINING))

        with self._pools_lock:
            self._pools.pop(api_name, None)
            if draining:
                self._retiring.append(pool)

        self._after_scale(pool, [], to_drain, to_cancel)
        self.logger.info(f"Removed replica pool for {api_name}")

    # Scaling

    async def scale_to(self, api_name: str, desired: int) -> int:
        """
        Converge the number of pending plus ready replicas toward ``desired``.

        ``desired`` is clamped into ``[0, max_replicas]``. Missing replicas are
        created in PENDING; surplus is removed by draining the oldest ready
        replicas first, then cancelling the newest pending ones. Calling this
        again with the same value is a no-op.

        Returns:
            The change applied to the active replica count.
        """
        pool = self._get_pool(api_name)
        with pool.lock:
            if pool.closed:
                return 0
            target = max(0, min(int(desired), pool.spec.max_replicas))
            active = pool.active()
            current = len(active)
            created: List[Replica] = []
            to_drain: List[Replica] = []
            to_cancel: List[Replica] = []

            if target > current:
                created = [pool.new_replica() for _ in range(target - current)]
            elif target < current:
                excess = current - target
                ready = sorted(pool.in_state(ReplicaState.READY), key=lambda r: r.seq)
                to_drain = ready[:excess]
                pending = sorted(pool.in_state(ReplicaState.PENDING), key=lambda r: r.seq, reverse=True)
                to_cancel = pending[:excess - len(to_drain)]
                for replica in to_drain:
                    replica.transition(ReplicaState.DRAINING)
                for replica in to_cancel:
                    self._mark_cancelled(pool, replica, "cancelled by scale-down")

        if target != current:
            self.logger.info(f"Scaling {api_name}: {current} -> {target} active replicas")
        self._after_scale(pool, created, to_drain, to_cancel)
        return target - current

    def _mark_cancelled(self, pool: ReplicaPool, replica: Replica, reason: str):
        # Caller holds pool.lock
        replica.transition(ReplicaState.TERMINATED)
        replica.failure_reason = reason
        pool.retire(replica)

    def _after_scale(self, pool: ReplicaPool, created: List[Replica],
                     to_drain: List[Replica], to_cancel: List[Replica]):
        for replica in created:
            replica.lifecycle_task = self._spawn(self._start_replica(pool, replica))
        for replica in to_cancel:
            if replica.lifecycle_task is not None:
                replica.lifecycle_task.cancel()
            self._emit(ReplicaEvent(ReplicaEventType.TERMINATED, pool.name, replica.replica_id, replica.failure_reason))
        for replica in to_drain:
            self._start_drain(pool, replica)

    async def _start_replica(self, pool: ReplicaPool, replica: Replica):
        """Create a replica through the substrate and poll it until ready or failed."""
        spec = replica.spec
        handle = None
        try:
            try:
                handle = await self.substrate.create_replica(spec, replica.replica_id)
            except ReplicaCreationFailure as e:
                self._fail(pool, replica, e.message)
                return
            except Exception as e:
                failure = ReplicaCreationFailure(spec.name, replica.replica_id, str(e), cause=e)
                self._fail(pool, replica, failure.message)
                return

            with pool.lock:
                replica.handle = handle
                cancelled = replica.state == ReplicaState.TERMINATED
            if cancelled:
                await self._terminate_handle(replica)
                return

            deadline = self._clock() + spec.startup_timeout
            while True:
                try:
                    healthy = await self.substrate.health_check(handle)
                except ReplicaCreationFailure as e:
                    self._fail(pool, replica, e.message)
                    await self._terminate_handle(replica)
                    return
                except Exception as e:
                    self._fail(pool, replica, f"health check error: {e}")
                    await self._terminate_handle(replica)
                    return

                if healthy:
                    self._mark_ready(pool, replica)
                    return

                if self._clock() >= deadline:
                    failure = ReplicaCreationFailure(
                        spec.name, replica.replica_id,
                        f"not healthy within startup timeout of {spec.startup_timeout}s"
                    )
                    self._fail(pool, replica, failure.message)
                    await self._terminate_handle(replica)
                    return

                await asyncio.sleep(self.config.health_check_interval)

        except asyncio.CancelledError:
            if replica.handle is not None:
                self._spawn(self._terminate_handle(replica))
            raise

    def _mark_ready(self, pool: ReplicaPool, replica: Replica):
        with pool.lock:
            if replica.state != ReplicaState.PENDING:
                return
            replica.transition(ReplicaState.READY)
        self.logger.info(f"Replica {replica.replica_id} of {pool.name} is ready")
        self._emit(ReplicaEvent(ReplicaEventType.READY, pool.name, replica.replica_id))

    def _fail(self, pool: ReplicaPool, replica: Replica, reason: str):
        with pool.lock:
            if replica.state != ReplicaState.PENDING:
                return
            replica.transition(ReplicaState.TERMINATED)
            replica.failure_reason = reason
            pool.retire(replica)
        self.logger.warning(f"Replica {replica.replica_id} of {pool.name} failed: {reason}")
        self._emit(ReplicaEvent(ReplicaEventType.FAILED, pool.name, replica.replica_id, reason))

    # Draining

    def _start_drain(self, pool: ReplicaPool, replica: Replica):
        with pool.lock:
            in_flight = replica.in_flight
        if in_flight == 0:
            self._finish_drain(pool, replica, forced=False)
            return
        self.logger.info(f"Draining replica {replica.replica_id} of {pool.name} ({in_flight} in flight)")
        replica.drain_task = self._spawn(self._drain_timer(pool, replica))

    async def _drain_timer(self, pool: ReplicaPool, replica: Replica):
        await asyncio.sleep(replica.spec.drain_timeout)
        self._finish_drain(pool, replica, forced=True)

    def _finish_drain(self, pool: ReplicaPool, replica: Replica, forced: bool):
        with pool.lock:
            if replica.state != ReplicaState.DRAINING:
                return
            replica.transition(ReplicaState.TERMINATED)
            if forced:
                replica.failure_reason = f"drain timeout with {replica.in_flight} requests in flight"
            pool.retire(replica)
            drain_task = replica.drain_task
            emptied = pool.closed and not pool.replicas

        if emptied:
            with self._pools_lock:
                if pool in self._retiring:
                    self._retiring.remove(pool)

        if drain_task is not None and drain_task is not asyncio.current_task():
            drain_task.cancel()
        if forced:
            self.logger.warning(f"Force-terminated replica {replica.replica_id} of {pool.name}: {replica.failure_reason}")
        else:
            self.logger.info(f"Replica {replica.replica_id} of {pool.name} drained")
        self._spawn(self._terminate_handle(replica))
        self._emit(ReplicaEvent(ReplicaEventType.TERMINATED, pool.name, replica.replica_id, replica.failure_reason))

    async def _terminate_handle(self, replica: Replica):
        if replica.handle is None:
            return
        try:
            await self.substrate.terminate(replica.handle)
        except Exception as e:
            self.logger.error(f"Failed to terminate replica {replica.replica_id}: {e}")

    # Admission

    def try_acquire(self, api_name: str, max_in_flight: int) -> Optional[ReplicaInfo]:
        """
        Reserve one request slot on the least-loaded ready replica.

        Only replicas with fewer than ``max_in_flight`` requests qualify. Ties
        go to the oldest replica (lowest sequence number). Returns the chosen
        replica after its in-flight count was incremented, or None when every
        ready replica is at the cap.
        """
        pool = self._get_pool(api_name)
        with pool.lock:
            candidates = [
                r for r in pool.replicas.values()
                if r.state == ReplicaState.READY and r.in_flight < max_in_flight
            ]
            if not candidates:
                return None
            replica = min(candidates, key=lambda r: (r.in_flight, r.seq))
            replica.in_flight += 1
            return replica.snapshot()

    def _owner(self, api_name: str, replica_id: str) -> Optional[ReplicaPool]:
        """Pool holding a replica, including undeployed pools still draining."""
        with self._pools_lock:
            candidates = [self._pools.get(api_name)] + [p for p in self._retiring if p.name == api_name]
        for pool in candidates:
            if pool is None:
                continue
            with pool.lock:
                if replica_id in pool.replicas:
                    return pool
        return None

    def release(self, api_name: str, replica_id: str) -> int:
        """Give back a slot taken with ``try_acquire``. Returns the remaining in-flight count."""
        pool = self._owner(api_name, replica_id)
        drained = False
        remaining = 0
        replica = None
        if pool is not None:
            with pool.lock:
                replica = pool.replicas.get(replica_id)
                if replica is not None and replica.in_flight > 0:
                    replica.in_flight -= 1
                    remaining = replica.in_flight
                    drained = replica.state == ReplicaState.DRAINING and remaining == 0

        if replica is None:
            # Replica was already terminated; nothing to account for
            self.logger.debug(f"Release for unknown replica {replica_id} of {api_name}")
        if pool is None:
            return 0
        if drained:
            self._finish_drain(pool, replica, forced=False)
        self._emit(ReplicaEvent(ReplicaEventType.RELEASED, api_name, replica_id))
        return remaining

    async def invoke(self, api_name: str, replica_id: str, payload: Any) -> Any:
        """Forward a request to a replica previously acquired with ``try_acquire``."""
        pool = self._owner(api_name, replica_id)
        replica = None
        if pool is not None:
            with pool.lock:
                replica = pool.replicas.get(replica_id)
        if replica is None or replica.handle is None:
            raise ServiceUnavailableError(api_name, f"replica {replica_id} is no longer available")
        return await self.substrate.forward(replica.handle, payload)

    # Read path

    def list_ready(self, api_name: str) -> Tuple[ReplicaInfo, ...]:
        """Consistent snapshot of ready replicas, oldest first."""
        pool = self._get_pool(api_name)
        with pool.lock:
            return tuple(r.snapshot() for r in sorted(pool.in_state(ReplicaState.READY), key=lambda r: r.seq))

    def list_replicas(self, api_name: str) -> Tuple[ReplicaInfo, ...]:
        """Snapshot of every live (not yet terminated) replica, oldest first."""
        pool = self._get_pool(api_name)
        with pool.lock:
            return tuple(r.snapshot() for r in sorted(pool.replicas.values(), key=lambda r: r.seq))

    def recent_terminated(self, api_name: str) -> Tuple[ReplicaInfo, ...]:
        pool = self._get_pool(api_name)
        with pool.lock:
            return tuple(pool.history)

    def counts(self, api_name: str) -> Dict[str, int]:
        pool = self._get_pool(api_name)
        with pool.lock:
            counts = {state.value: 0 for state in ReplicaState if state != ReplicaState.TERMINATED}
            for replica in pool.replicas.values():
                counts[replica.state.value] += 1
            return counts

    def active_count(self, api_name: str) -> int:
        """Pending plus ready replicas."""
        pool = self._get_pool(api_name)
        with pool.lock:
            return len(pool.active())

    # Events

    def subscribe(self, listener: EventListener):
        self._listeners.append(listener)

    def _emit(self, event: ReplicaEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Replica event listener failed on {event.kind.value}: {e}")

    # Tasks

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self):
        """Stop every replica immediately, without draining."""
        with self._pools_lock:
            pools = list(self._pools.values()) + self._retiring
        for pool in pools:
            with pool.lock:
                pool.closed = True
                replicas = list(pool.replicas.values())
                for replica in replicas:
                    if replica.state == ReplicaState.READY:
                        replica.transition(ReplicaState.DRAINING)
                    if replica.state != ReplicaState.TERMINATED:
                        replica.transition(ReplicaState.TERMINATED)
                        replica.failure_reason = "shutdown"
                    pool.retire(replica)
            for replica in replicas:
                for task in (replica.lifecycle_task, replica.drain_task):
                    if task is not None and not task.done():
                        task.cancel()
                await self._terminate_handle(replica)

        with self._pools_lock:
            self._pools.clear()
            self._retiring.clear()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Replica pool manager shut down")

    def get_stats(self) -> Dict[str, Any]:
        stats = {}
        for api_name in self.api_names():
            try:
                pool = self._get_pool(api_name)
            except APINotFoundError:
                continue
            with pool.lock:
                stats[api_name] = {
                    "generation": pool.generation,
                    "replicas": [r.snapshot().to_dict() for r in pool.replicas.values()],
                    "terminated": len(pool.history),
                }
        return stats
