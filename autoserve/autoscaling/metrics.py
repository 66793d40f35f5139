"""
Sliding-window concurrency metrics for autoscaling.

The aggregator keeps a short series of ``(timestamp, in_flight)`` samples per
replica, plus one series of queue depths per API, and turns them into one
scalar per API: the time-weighted average of in-flight requests over the
window, summed across the API's ready replicas, plus the time-weighted average
queue depth. Requests waiting for a slot count as demand just like running
ones. This is the advisory signal the autoscaler controller scales on.
"""

import time
import logging
import asyncio
import threading
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Tuple
from dataclasses import dataclass
from collections import deque

import numpy as np

from ..core.config import MetricsConfig
from ..core.exceptions import AggregatorUnavailable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    """In-flight request count of one replica at one instant."""
    timestamp: float
    in_flight: int


class MetricsAggregator:
    """
    Per-API, per-replica concurrency samples over a sliding window.

    All methods are safe to call from any thread. Samples are pruned by a
    background task while the aggregator is running, and lazily on write.
    """

    def __init__(self, config: Optional[MetricsConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or MetricsConfig()
        self._clock = clock
        self._series: Dict[str, Dict[str, Deque[MetricSample]]] = {}
        self._queued: Dict[str, Deque[MetricSample]] = {}
        self._lock = threading.Lock()
        self._prune_task: Optional[asyncio.Task] = None
        self.is_running = False

        self.logger = logging.getLogger(f"{__name__}.MetricsAggregator")

    @property
    def window(self) -> float:
        return self.config.window_seconds

    async def start(self):
        """Start the background prune loop."""
        if self.is_running:
            return
        self.is_running = True
        self._prune_task = asyncio.create_task(self._prune_loop())
        self.logger.info(f"Metrics aggregator started (window={self.window}s)")

    async def stop(self):
        """Stop the background prune loop."""
        if not self.is_running:
            return
        self.is_running = False
        if self._prune_task:
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
            self._prune_task = None
        self.logger.info("Metrics aggregator stopped")

    def register_api(self, api_name: str):
        with self._lock:
            self._series.setdefault(api_name, {})
            self._queued.setdefault(api_name, deque())

    def unregister_api(self, api_name: str):
        with self._lock:
            self._series.pop(api_name, None)
            self._queued.pop(api_name, None)

    def is_registered(self, api_name: str) -> bool:
        with self._lock:
            return api_name in self._series

    def forget_replica(self, api_name: str, replica_id: str):
        """Drop the series of a replica that no longer exists."""
        with self._lock:
            replicas = self._series.get(api_name)
            if replicas is not None:
                replicas.pop(replica_id, None)

    def record_sample(self, api_name: str, replica_id: str, in_flight: int, timestamp: Optional[float] = None):
        """
        Append a sample for a replica.

        Unknown APIs are ignored: the sample is dropped and logged, nothing is
        raised to the caller.
        """
        ts = self._clock() if timestamp is None else timestamp
        with self._lock:
            replicas = self._series.get(api_name)
            if replicas is None:
                self.logger.debug(f"Dropping sample for unknown API '{api_name}' (replica {replica_id})")
                return

            self._append(replicas.setdefault(replica_id, deque()), ts, in_flight)

    def record_queue_depth(self, api_name: str, depth: int, timestamp: Optional[float] = None):
        """Append a queue depth sample for an API. Unknown APIs are ignored."""
        ts = self._clock() if timestamp is None else timestamp
        with self._lock:
            series = self._queued.get(api_name)
            if series is None:
                return
            self._append(series, ts, depth)

    def _append(self, series: Deque[MetricSample], ts: float, value: int):
        if series and ts < series[-1].timestamp:
            # Out-of-order samples would make the step function ambiguous
            ts = series[-1].timestamp
        series.append(MetricSample(ts, max(0, int(value))))
        self._prune_series(series, ts - self.window)

    def current_load(self, api_name: str, replica_ids: Optional[Iterable[str]] = None) -> float:
        """
        Time-weighted average demand over the window: in-flight plus queued.

        Args:
            api_name: API to aggregate.
            replica_ids: Ready replicas to include. ``None`` includes every
                replica with samples.

        Returns:
            The summed per-replica averages plus the average queue depth,
            0.0 when there are no samples.

        Raises:
            AggregatorUnavailable: If the API has no registered series.
        """
        now = self._clock()
        with self._lock:
            replicas = self._series.get(api_name)
            if replicas is None:
                raise AggregatorUnavailable(api_name)

            ids = list(replicas) if replica_ids is None else list(replica_ids)
            snapshots = [tuple(replicas[rid]) for rid in ids if rid in replicas and replicas[rid]]
            queued = self._queued.get(api_name)
            if queued:
                snapshots.append(tuple(queued))

        return float(sum(self._weighted_average(samples, now) for samples in snapshots))

    def _weighted_average(self, samples: Tuple[MetricSample, ...], now: float) -> float:
        """
        Average of a step function over the part of the window it covers.

        Each sample holds its value until the next one; the last one holds
        until ``now``. A sample older than the window start contributes from
        the window start.
        """
        window_start = now - self.window
        timestamps = np.array([s.timestamp for s in samples], dtype=float)
        values = np.array([s.in_flight for s in samples], dtype=float)

        starts = np.maximum(timestamps, window_start)
        ends = np.append(timestamps[1:], now)
        ends = np.maximum(np.minimum(ends, now), starts)
        durations = ends - starts

        total = durations.sum()
        if total <= 0:
            return float(values[-1])
        return float(np.dot(values, durations) / total)

    def _prune_series(self, series: Deque[MetricSample], cutoff: float):
        # Keep the newest sample older than the cutoff: it defines the value at the window start
        while len(series) > 1 and series[1].timestamp <= cutoff:
            series.popleft()

    def prune(self, now: Optional[float] = None) -> int:
        """Evict samples that fell out of the window. Returns the number removed."""
        cutoff = (self._clock() if now is None else now) - self.window
        removed = 0
        with self._lock:
            for replicas in self._series.values():
                for replica_id in list(replicas):
                    series = replicas[replica_id]
                    before = len(series)
                    self._prune_series(series, cutoff)
                    if series and series[-1].timestamp < cutoff and series[-1].in_flight == 0:
                        # Idle for a full window: nothing left to average
                        series.clear()
                    removed += before - len(series)
                    if not series:
                        del replicas[replica_id]
            for series in self._queued.values():
                before = len(series)
                self._prune_series(series, cutoff)
                if series and series[-1].timestamp < cutoff and series[-1].in_flight == 0:
                    series.clear()
                removed += before - len(series)
        return removed

    async def _prune_loop(self):
        while self.is_running:
            try:
                await asyncio.sleep(self.config.prune_interval)
                removed = self.prune()
                if removed:
                    self.logger.debug(f"Pruned {removed} expired samples")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error pruning metric samples: {e}")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                api_name: {
                    "replicas": len(replicas),
                    "samples": sum(len(series) for series in replicas.values())
                }
                for api_name, replicas in self._series.items()
            }
