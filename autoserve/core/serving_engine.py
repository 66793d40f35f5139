"""
Serving engine.

Composes the metrics aggregator, replica pool manager, request router,
scale-to-zero activator and autoscaler controller into one object that the
HTTP layer talks to. Each deployed API gets its own pool and queue; deploying
an existing name redeploys it with the new spec.
"""

import time
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .config import APISpec, ServingConfig
from .exceptions import (
    APINotFoundError, AdmissionRejected, AggregatorUnavailable, ColdStartTimeout,
    InferenceError, RequestTimeout, ServiceUnavailableError
)
from ..autoscaling.autoscaler import AutoscalerController
from ..autoscaling.metrics import MetricsAggregator
from ..autoscaling.pool_manager import ReplicaEvent, ReplicaEventType, ReplicaPoolManager
from ..autoscaling.router import RequestRouter
from ..autoscaling.zero_scaler import ScaleToZeroActivator
from ..observability.prometheus import PrometheusExporter
from ..reliability.retry import BackoffPolicy, BackoffTracker
from ..substrate.base import ExecutionSubstrate
from ..substrate.local import LocalSubstrate


logger = logging.getLogger(__name__)

_OUTCOMES = (
    (AdmissionRejected, "rejected"),
    (ColdStartTimeout, "cold_start_timeout"),
    (RequestTimeout, "timed_out"),
    (InferenceError, "failed"),
    (ServiceUnavailableError, "unavailable"),
)


class ServingEngine:
    """Deployed APIs plus the control loop that scales them."""

    def __init__(self,
                 config: Optional[ServingConfig] = None,
                 substrate: Optional[ExecutionSubstrate] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or ServingConfig()
        self.substrate = substrate or LocalSubstrate(max_workers=self.config.replica.executor_workers)
        self._clock = clock

        controller_config = self.config.controller
        self.backoff = BackoffTracker(
            BackoffPolicy(
                base_delay=controller_config.backoff_base,
                max_delay=controller_config.backoff_max,
                exponential_base=controller_config.backoff_multiplier,
                jitter=controller_config.backoff_jitter,
            ),
            clock=clock,
        )
        self.aggregator = MetricsAggregator(self.config.metrics, clock=clock)
        self.pool_manager = ReplicaPoolManager(self.substrate, self.config.replica, clock=clock)
        self.activator = ScaleToZeroActivator(self.pool_manager, backoff=self.backoff, clock=clock)
        self.router = RequestRouter(self.pool_manager, self.aggregator, self.activator, clock=clock)
        self.controller = AutoscalerController(
            self.pool_manager, self.aggregator, self.router,
            config=controller_config, backoff=self.backoff, clock=clock
        )
        self.exporter = PrometheusExporter()
        self.pool_manager.subscribe(self._on_replica_event)

        self._deploy_lock = asyncio.Lock()
        self.is_running = False
        self.started_at: Optional[float] = None

        self.logger = logging.getLogger(f"{__name__}.ServingEngine")

    async def start(self):
        """Start the background loops."""
        if self.is_running:
            return
        await self.aggregator.start()
        await self.controller.start()
        self.is_running = True
        self.started_at = time.time()
        self.logger.info("Serving engine started")

    async def stop(self):
        """Fail waiting requests, stop every replica and the background loops."""
        if not self.is_running:
            return
        self.is_running = False
        self.logger.info("Stopping serving engine...")

        await self.controller.stop()
        for api_name in self.pool_manager.api_names():
            self.router.close_api(api_name, "server shutting down")
        await self.pool_manager.shutdown()
        await self.aggregator.stop()
        await self.substrate.shutdown()
        self.logger.info("Serving engine stopped")

    async def deploy(self, spec: APISpec) -> Dict[str, Any]:
        """Deploy a new API or redeploy an existing one with a replacement spec."""
        async with self._deploy_lock:
            if self.pool_manager.has_pool(spec.name):
                await self.pool_manager.replace_spec(spec)
                self.controller.reset_stabilization(spec.name)
                self.logger.info(f"Redeployed API {spec.name}")
            else:
                self.aggregator.register_api(spec.name)
                self.pool_manager.create_pool(spec)
                self.router.open_api(spec.name)
                if spec.min_replicas > 0:
                    await self.pool_manager.scale_to(spec.name, spec.min_replicas)
                self.logger.info(
                    f"Deployed API {spec.name} ({spec.predictor.type.value}, "
                    f"replicas {spec.min_replicas}-{spec.max_replicas}, "
                    f"target concurrency {spec.target_replica_concurrency})"
                )
        return self.get_status(spec.name)

    async def undeploy(self, api_name: str):
        """Remove an API; queued requests fail and replicas drain."""
        async with self._deploy_lock:
            if not self.pool_manager.has_pool(api_name):
                raise APINotFoundError(api_name)
            self.router.close_api(api_name, "API undeployed")
            self.activator.forget(api_name)
            self.controller.forget(api_name)
            await self.pool_manager.remove_pool(api_name)
            self.aggregator.unregister_api(api_name)
        self.logger.info(f"Undeployed API {api_name}")

    async def predict(self, api_name: str, payload: Any) -> Any:
        """Route one request to the API and return the predictor's response."""
        start = self._clock()
        outcome = "succeeded"
        try:
            return await self.router.route(api_name, payload)
        except APINotFoundError:
            outcome = None
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception as e:
            outcome = next((name for error_type, name in _OUTCOMES if isinstance(e, error_type)), "error")
            raise
        finally:
            if outcome is not None:
                self.exporter.record_request(api_name, self._clock() - start, outcome)

    def _on_replica_event(self, event: ReplicaEvent):
        if event.kind in (ReplicaEventType.TERMINATED, ReplicaEventType.FAILED):
            self.aggregator.forget_replica(event.api_name, event.replica_id)

    def has_api(self, api_name: str) -> bool:
        return self.pool_manager.has_pool(api_name)

    def get_spec(self, api_name: str) -> APISpec:
        return self.pool_manager.get_spec(api_name)

    def current_load(self, api_name: str) -> float:
        ready = self.pool_manager.list_ready(api_name)
        try:
            return self.aggregator.current_load(api_name, [r.replica_id for r in ready])
        except AggregatorUnavailable:
            return 0.0

    def get_status(self, api_name: str) -> Dict[str, Any]:
        """Load, replica counts and queue depth of one API."""
        spec = self.pool_manager.get_spec(api_name)
        decision = self.controller.last_decisions.get(api_name)
        return {
            "name": api_name,
            "spec": spec.to_dict(),
            "current_load": self.current_load(api_name),
            "replicas": self.pool_manager.counts(api_name),
            "replica_details": [r.to_dict() for r in self.pool_manager.list_replicas(api_name)],
            "queue_depth": self.router.queue_depth(api_name),
            "cold_start_in_progress": self.activator.in_cold_start(api_name),
            "last_decision": decision.to_dict() if decision else None,
        }

    def list_apis(self) -> List[Dict[str, Any]]:
        statuses = []
        for api_name in self.pool_manager.api_names():
            try:
                statuses.append(self.get_status(api_name))
            except APINotFoundError:
                continue
        return statuses

    def render_metrics(self) -> bytes:
        """Prometheus exposition of the current state."""
        self.exporter.update_api_status(self.list_apis())
        return self.exporter.render()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "uptime": time.time() - self.started_at if self.started_at else 0.0,
            "controller": self.controller.get_stats(),
            "router": self.router.get_stats(),
            "cold_starts": self.activator.get_stats(),
            "metrics": self.aggregator.get_stats(),
        }
