"""
Scale-to-zero activation.

An API scaled down to zero replicas has nothing for the router to dispatch
to. The activator sits in front of the router: the first request that finds
no ready and no pending replica triggers exactly one scale-up, and every
request arriving during that cold start simply joins the same wait in the
API's queue.
"""

import time
import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from .pool_manager import ReplicaEvent, ReplicaEventType, ReplicaPoolManager
from ..reliability.retry import BackoffTracker


logger = logging.getLogger(__name__)


@dataclass
class ColdStart:
    """One activation of an idle API."""
    api_name: str
    started_at: float
    target_replicas: int
    waiters: int = 1
    ready_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.ready_at is None:
            return None
        return self.ready_at - self.started_at


class ScaleToZeroActivator:
    """Triggers one scale-up per cold start of an idle API."""

    def __init__(self, pool_manager: ReplicaPoolManager,
                 backoff: Optional[BackoffTracker] = None,
                 clock: Callable[[], float] = time.monotonic,
                 history_size: int = 100):
        self.pool_manager = pool_manager
        self.backoff = backoff
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._active: Dict[str, ColdStart] = {}
        self._history: Deque[ColdStart] = deque(maxlen=history_size)
        self.logger = logging.getLogger(f"{__name__}.ScaleToZeroActivator")

        pool_manager.subscribe(self._on_replica_event)

    async def ensure_capacity(self, api_name: str) -> bool:
        """
        Start a cold start if the API has no ready and no pending replica.

        Returns:
            True if a replica is being started for this API (whether by this
            call or by an earlier one still in progress), False if the API
            already had capacity.
        """
        async with self._locks[api_name]:
            counts = self.pool_manager.counts(api_name)
            if counts["ready"] > 0:
                return False

            if counts["pending"] > 0:
                cold_start = self._active.get(api_name)
                if cold_start is not None:
                    cold_start.waiters += 1
                return cold_start is not None

            if self.backoff is not None and self.backoff.is_blocked(api_name):
                # Replica creation keeps failing; the controller retries once the backoff expires
                self.logger.debug(f"Cold start of {api_name} deferred by backoff")
                return False

            spec = self.pool_manager.get_spec(api_name)
            target = max(spec.min_replicas, 1)
            previous = self._active.pop(api_name, None)
            if previous is not None:
                # Every replica of the previous attempt failed; this is a fresh activation
                self._history.append(previous)

            self._active[api_name] = ColdStart(api_name=api_name, started_at=self._clock(), target_replicas=target)
            await self.pool_manager.scale_to(api_name, target)
            self.logger.info(f"Cold start of {api_name}: scaling from zero to {target}")
            return True

    def in_cold_start(self, api_name: str) -> bool:
        return api_name in self._active

    def forget(self, api_name: str):
        """Drop state of an undeployed API."""
        self._active.pop(api_name, None)
        self._locks.pop(api_name, None)

    def _on_replica_event(self, event: ReplicaEvent):
        if event.kind != ReplicaEventType.READY:
            return
        cold_start = self._active.pop(event.api_name, None)
        if cold_start is None:
            return
        cold_start.ready_at = self._clock()
        self._history.append(cold_start)
        self.logger.info(
            f"Cold start of {event.api_name} completed in {cold_start.duration:.2f}s "
            f"({cold_start.waiters} waiting requests)"
        )

    def get_stats(self) -> Dict[str, Any]:
        completed = [c for c in self._history if c.duration is not None]
        durations = [c.duration for c in completed]
        return {
            "in_progress": {
                name: {"elapsed": self._clock() - c.started_at, "waiters": c.waiters}
                for name, c in self._active.items()
            },
            "total_cold_starts": len(completed),
            "average_cold_start_time": sum(durations) / len(durations) if durations else 0.0,
            "last_cold_start_time": durations[-1] if durations else None,
        }
