"""
Autoscaler control loop.

Every ``control_interval`` seconds the controller samples the in-flight count
of each ready replica and the API's queue depth, reads the windowed load
(in-flight plus queued) from the metrics aggregator and converges each API's
replica count toward::

    desired = ceil(load / target_replica_concurrency)   clamped to [min, max]

Scale-up is applied at once. Scale-down waits until a lower value has been
computed continuously for the API's stabilization window and then applies the
highest value seen during that period. Scale-up after replica creation
failures is held back with capped exponential backoff.
"""

import math
import time
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from .metrics import MetricsAggregator
from .pool_manager import ReplicaEvent, ReplicaEventType, ReplicaPoolManager
from .router import RequestRouter
from ..core.config import APISpec, ControllerConfig
from ..core.exceptions import APINotFoundError, AggregatorUnavailable
from ..reliability.retry import BackoffPolicy, BackoffTracker


logger = logging.getLogger(__name__)


class ScalingAction(Enum):
    """Scaling actions."""
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_ACTION = "no_action"


@dataclass
class ScalingDecision:
    """Outcome of one control cycle for one API."""
    api_name: str
    current: int
    desired: int
    target: int
    load: float
    queue_depth: int
    action: ScalingAction
    reason: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "api_name": self.api_name,
            "current": self.current,
            "desired": self.desired,
            "target": self.target,
            "load": round(self.load, 4),
            "queue_depth": self.queue_depth,
            "action": self.action.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


@dataclass
class _DownscaleStreak:
    since: float
    peak: int


class ControllerState(Enum):
    """Controller states."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


def compute_desired(load: float, spec: APISpec, queue_depth: int = 0) -> int:
    """Replica count the load calls for, clamped to the API's bounds."""
    desired = math.ceil(max(load, 0.0) / spec.target_replica_concurrency)
    if desired == 0 and queue_depth > 0:
        # Queued requests need at least one replica even before the window reflects them
        desired = 1
    return max(spec.min_replicas, min(desired, spec.max_replicas))


class AutoscalerController:
    """Periodic closed-loop controller over all deployed APIs."""

    def __init__(self,
                 pool_manager: ReplicaPoolManager,
                 aggregator: MetricsAggregator,
                 router: RequestRouter,
                 config: Optional[ControllerConfig] = None,
                 backoff: Optional[BackoffTracker] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.pool_manager = pool_manager
        self.aggregator = aggregator
        self.router = router
        self.config = config or ControllerConfig()
        self._clock = clock
        self.backoff = backoff or BackoffTracker(
            BackoffPolicy(
                base_delay=self.config.backoff_base,
                max_delay=self.config.backoff_max,
                exponential_base=self.config.backoff_multiplier,
                jitter=self.config.backoff_jitter,
            ),
            clock=clock,
        )

        self.state = ControllerState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self.scaling_locks: Dict[str, asyncio.Lock] = {}
        self._streaks: Dict[str, _DownscaleStreak] = {}
        self.last_decisions: Dict[str, ScalingDecision] = {}
        self.scaling_events: Deque[Dict[str, Any]] = deque(maxlen=self.config.max_history)
        self.cycles = 0

        self.logger = logging.getLogger(f"{__name__}.AutoscalerController")
        pool_manager.subscribe(self._on_replica_event)

    @property
    def is_running(self) -> bool:
        return self.state == ControllerState.RUNNING

    async def start(self):
        """Start the control loop."""
        if self.state != ControllerState.STOPPED:
            self.logger.warning("Autoscaler controller is already running")
            return
        self.state = ControllerState.RUNNING
        self._task = asyncio.create_task(self._control_loop())
        self.logger.info(f"Autoscaler controller started (interval={self.config.control_interval}s)")

    async def stop(self):
        """Stop the control loop."""
        if self.state == ControllerState.STOPPED:
            return
        self.state = ControllerState.STOPPING
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state = ControllerState.STOPPED
        self.logger.info("Autoscaler controller stopped")

    async def _control_loop(self):
        while self.state == ControllerState.RUNNING:
            try:
                await asyncio.sleep(self.config.control_interval)
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in control loop: {e}")

    async def run_cycle(self) -> Dict[str, ScalingDecision]:
        """Evaluate every deployed API once. One API's failure never affects the others."""
        api_names = self.pool_manager.api_names()
        results = await asyncio.gather(*(self._evaluate_safely(name) for name in api_names))
        self.cycles += 1
        return {name: decision for name, decision in zip(api_names, results) if decision is not None}

    async def _evaluate_safely(self, api_name: str) -> Optional[ScalingDecision]:
        try:
            return await self.evaluate_api(api_name)
        except AggregatorUnavailable as e:
            self.logger.warning(f"Skipping {api_name} this cycle: {e.message}")
        except APINotFoundError:
            self.logger.debug(f"Skipping {api_name}: undeployed during cycle")
        except Exception as e:
            self.logger.error(f"Error evaluating {api_name}: {e}", exc_info=True)
        return None

    async def evaluate_api(self, api_name: str) -> ScalingDecision:
        """Run one control step for an API and apply its decision."""
        if not self.pool_manager.has_pool(api_name):
            raise APINotFoundError(api_name)
        lock = self.scaling_locks.setdefault(api_name, asyncio.Lock())
        async with lock:
            spec = self.pool_manager.get_spec(api_name)
            ready = self.pool_manager.list_ready(api_name)
            for replica in ready:
                self.aggregator.record_sample(api_name, replica.replica_id, replica.in_flight)
            queue_depth = self.router.queue_depth(api_name)
            self.aggregator.record_queue_depth(api_name, queue_depth)

            load = self.aggregator.current_load(api_name, [r.replica_id for r in ready])
            desired = compute_desired(load, spec, queue_depth)
            current = self.pool_manager.active_count(api_name)
            target, reason = self._stabilize(api_name, spec, current, desired)

            action = ScalingAction.NO_ACTION
            if target > current and self.backoff.is_blocked(api_name):
                reason = f"scale-up held back for {self.backoff.remaining(api_name):.1f}s after failures"
                target = current
            elif target != current:
                action = ScalingAction.SCALE_UP if target > current else ScalingAction.SCALE_DOWN
                await self.pool_manager.scale_to(api_name, target)
                self._record_scaling_event(api_name, current, target, load, reason)

            decision = ScalingDecision(
                api_name=api_name,
                current=current,
                desired=desired,
                target=target,
                load=load,
                queue_depth=queue_depth,
                action=action,
                reason=reason,
            )
            self.last_decisions[api_name] = decision
            self.logger.debug(
                f"{api_name}: load={load:.2f} queue={queue_depth} current={current} "
                f"desired={desired} target={target} ({action.value})"
            )
            return decision

    def _stabilize(self, api_name: str, spec: APISpec, current: int, desired: int):
        """Return the replica count to apply and why."""
        if desired >= current:
            self._streaks.pop(api_name, None)
            if desired > current:
                return desired, "load above capacity"
            return current, "steady"

        now = self._clock()
        streak = self._streaks.get(api_name)
        if streak is None:
            streak = self._streaks[api_name] = _DownscaleStreak(since=now, peak=desired)
        else:
            streak.peak = max(streak.peak, desired)

        elapsed = now - streak.since
        if elapsed >= spec.stabilization_window:
            del self._streaks[api_name]
            return streak.peak, f"below capacity for {elapsed:.1f}s"
        return current, f"scale-down to {streak.peak} pending stabilization ({elapsed:.1f}/{spec.stabilization_window}s)"

    def forget(self, api_name: str):
        """Drop controller state of an undeployed API."""
        self._streaks.pop(api_name, None)
        self.last_decisions.pop(api_name, None)
        self.scaling_locks.pop(api_name, None)
        self.backoff.forget(api_name)

    def reset_stabilization(self, api_name: str):
        """Restart the scale-down window, used after a redeploy."""
        self._streaks.pop(api_name, None)

    def _on_replica_event(self, event: ReplicaEvent):
        if event.kind == ReplicaEventType.FAILED:
            self.backoff.record_failure(event.api_name, event.reason)
        elif event.kind == ReplicaEventType.READY:
            self.backoff.record_success(event.api_name)

    def _record_scaling_event(self, api_name: str, from_replicas: int, to_replicas: int, load: float, reason: str):
        """Record a scaling event."""
        self.scaling_events.append({
            'timestamp': time.time(),
            'api_name': api_name,
            'from_replicas': from_replicas,
            'to_replicas': to_replicas,
            'load': load,
            'reason': reason,
            'scale_direction': 'up' if to_replicas > from_replicas else 'down'
        })
        self.logger.info(f"Scaled {api_name} {from_replicas} -> {to_replicas} ({reason})")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cycles": self.cycles,
            "control_interval": self.config.control_interval,
            "decisions": {name: d.to_dict() for name, d in self.last_decisions.items()},
            "backoff": self.backoff.get_stats(),
            "recent_events": list(self.scaling_events)[-20:],
        }
