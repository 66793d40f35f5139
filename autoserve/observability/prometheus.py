"""
Prometheus metrics exporter.

Request outcomes and latencies are recorded as they happen; per-API load,
replica counts and queue depth are refreshed from the engine status right
before each scrape.
"""

import logging
from typing import Any, Dict, Iterable, Set

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


logger = logging.getLogger(__name__)

REPLICA_STATES = ("pending", "ready", "draining")


class PrometheusExporter:
    """Prometheus metrics for deployed APIs, kept in a private registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, namespace: str = "autoserve"):
        self.namespace = namespace
        self.registry = CollectorRegistry()
        self._known_apis: Set[str] = set()
        self._setup_metrics()

    def _setup_metrics(self):
        self.request_counter = Counter(
            "requests_total",
            "Requests handled, by outcome",
            ["api_name", "outcome"],
            namespace=self.namespace,
            registry=self.registry,
        )

        self.request_latency = Histogram(
            "request_duration_seconds",
            "End-to-end request latency including queue wait",
            ["api_name"],
            namespace=self.namespace,
            registry=self.registry,
        )

        self.load_gauge = Gauge(
            "current_load",
            "Time-weighted average in-flight requests over the metrics window",
            ["api_name"],
            namespace=self.namespace,
            registry=self.registry,
        )

        self.replicas_gauge = Gauge(
            "replicas",
            "Live replicas by lifecycle state",
            ["api_name", "state"],
            namespace=self.namespace,
            registry=self.registry,
        )

        self.queue_gauge = Gauge(
            "queue_depth",
            "Requests waiting for a replica slot",
            ["api_name"],
            namespace=self.namespace,
            registry=self.registry,
        )

    def record_request(self, api_name: str, duration: float, outcome: str):
        """Record one finished request."""
        self.request_counter.labels(api_name=api_name, outcome=outcome).inc()
        self.request_latency.labels(api_name=api_name).observe(duration)

    def update_api_status(self, statuses: Iterable[Dict[str, Any]]):
        """Refresh gauges from ``ServingEngine.get_status`` entries."""
        seen = set()
        for status in statuses:
            api_name = status["name"]
            seen.add(api_name)
            self.load_gauge.labels(api_name=api_name).set(status["current_load"])
            self.queue_gauge.labels(api_name=api_name).set(status["queue_depth"])
            for state in REPLICA_STATES:
                self.replicas_gauge.labels(api_name=api_name, state=state).set(status["replicas"].get(state, 0))

        for api_name in self._known_apis - seen:
            self._remove_api(api_name)
        self._known_apis = seen

    def _remove_api(self, api_name: str):
        for gauge in (self.load_gauge, self.queue_gauge):
            try:
                gauge.remove(api_name)
            except KeyError:
                pass
        for state in REPLICA_STATES:
            try:
                self.replicas_gauge.remove(api_name, state)
            except KeyError:
                pass
        logger.debug(f"Removed gauges of undeployed API {api_name}")

    def render(self) -> bytes:
        """Exposition text of every metric in the registry."""
        return generate_latest(self.registry)
