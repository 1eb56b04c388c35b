"""Prometheus metrics for the site agent.

All metrics live on an injectable CollectorRegistry so that several agents
(or several tests) can coexist in one process.
"""

from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from .health import ComponentState, HealthStatus

logger = logging.getLogger(__name__)

METRICS_NAMESPACE = "site_agent"

RPC_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class SiteAgentMetrics:
    """Counters and gauges for activities, publishes, inventory and connectivity."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self._component_health = Gauge(
            "health_status",
            "Connectivity state per component (0=not known, 1=healthy, 2=unhealthy)",
            ["component"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._resource_health = Gauge(
            "resource_health_status",
            "Site Controller connectivity as observed by each resource type",
            ["resource_type"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._activities = Counter(
            "workflow_activities_total",
            "Activities run against the Site Controller",
            ["resource_type", "outcome"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._publishes = Counter(
            "workflow_publishes_total",
            "Results published to the cloud",
            ["resource_type", "outcome"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._inventory_cycles = Counter(
            "inventory_cycles_total",
            "Inventory discovery cycles",
            ["resource_type", "outcome"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._inventory_pages = Counter(
            "inventory_pages_published_total",
            "Inventory pages published to the cloud",
            ["resource_type"],
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._client_swaps = Counter(
            "site_controller_client_swaps_total",
            "Times the Site Controller client was replaced",
            namespace=METRICS_NAMESPACE,
            registry=self.registry,
        )
        self._rpc_latency = Histogram(
            "site_controller_rpc_duration_seconds",
            "Site Controller RPC latency",
            ["method", "code"],
            namespace=METRICS_NAMESPACE,
            buckets=RPC_LATENCY_BUCKETS,
            registry=self.registry,
        )

    def track_component(self, state: ComponentState) -> None:
        """Export a component's health as a live gauge."""
        self._component_health.labels(component=state.name).set_function(
            lambda: float(state.health)
        )

    def set_resource_health(self, resource_type: str, status: HealthStatus) -> None:
        self._resource_health.labels(resource_type=resource_type).set(float(status))

    def record_activity(self, resource_type: str, outcome: str) -> None:
        self._activities.labels(resource_type=resource_type, outcome=outcome).inc()

    def record_publish(self, resource_type: str, outcome: str) -> None:
        self._publishes.labels(resource_type=resource_type, outcome=outcome).inc()

    def record_inventory_cycle(self, resource_type: str, outcome: str) -> None:
        self._inventory_cycles.labels(resource_type=resource_type, outcome=outcome).inc()

    def record_inventory_page(self, resource_type: str) -> None:
        self._inventory_pages.labels(resource_type=resource_type).inc()

    def record_client_swap(self) -> None:
        self._client_swaps.inc()

    def observe_rpc(self, method: str, code: str, duration_seconds: float) -> None:
        self._rpc_latency.labels(method=method, code=code).observe(duration_seconds)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Read the current value of a sample, mainly for status output and tests."""
        return self.registry.get_sample_value(name, labels or {})

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP on ``port``."""
        start_http_server(port, registry=self.registry)
        logger.info("Metrics server started", extra={"port": port})
