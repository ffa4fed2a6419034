"""Prometheus metrics for the service watcher.

Metrics are built once per cycle from an explicit accumulator filled while
services are evaluated, rendered in the Prometheus text exposition format
and written to a textfile (node_exporter textfile collector) and/or pushed
to an HTTP import endpoint such as VictoriaMetrics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

import httpx
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, write_to_textfile
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from .config import MetricsSettings
from .errors import MetricsSinkError
from .logging import get_logger
from .types import CycleOutcome, ServiceRuntimeState

LOGGER = get_logger(__name__)


@dataclass
class ServiceMetrics:
    """Counters and gauges for one service."""

    restarts_total: int = 0
    health_failures_total: int = 0
    up: int = 1
    rate_limited: int = 0


@dataclass
class MetricsSnapshot:
    """Per-cycle view of all services' metrics."""

    services: Dict[str, ServiceMetrics] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


class CycleAccumulator:
    """Collects per-service results while a cycle runs."""

    def __init__(self) -> None:
        self._services: Dict[str, ServiceMetrics] = {}

    def record(self, outcome: CycleOutcome, state: ServiceRuntimeState) -> None:
        """Record one service's outcome and its post-cycle state."""
        self._services[outcome.service_name] = ServiceMetrics(
            restarts_total=len(state.restart_ledger),
            health_failures_total=outcome.health_failures,
            up=1 if outcome.is_up else 0,
            rate_limited=1 if outcome.rate_limited else 0,
        )

    def snapshot(self, labels: Optional[Dict[str, str]] = None) -> MetricsSnapshot:
        return MetricsSnapshot(services=dict(self._services), labels=dict(labels or {}))

    def __len__(self) -> int:
        return len(self._services)


class SnapshotCollector(Collector):
    """Exposes a MetricsSnapshot to a prometheus_client registry."""

    def __init__(self, snapshot: MetricsSnapshot) -> None:
        self._snapshot = snapshot

    def collect(self) -> Iterable[Metric]:
        extra_names = sorted(self._snapshot.labels)
        extra_values = [self._snapshot.labels[k] for k in extra_names]
        label_names = ["service", *extra_names]

        restarts = CounterMetricFamily(
            "watcher_service_restarts",
            "Total number of service restarts triggered by watcher",
            labels=label_names,
        )
        health_failures = CounterMetricFamily(
            "watcher_service_health_failures",
            "Total health check failures",
            labels=label_names,
        )
        up = GaugeMetricFamily(
            "watcher_service_up",
            "Service health status (1=healthy, 0=unhealthy)",
            labels=label_names,
        )
        rate_limited = GaugeMetricFamily(
            "watcher_rate_limited",
            "Whether service is rate limited (1=yes, 0=no)",
            labels=label_names,
        )

        for name in sorted(self._snapshot.services):
            metrics = self._snapshot.services[name]
            values = [name, *extra_values]
            restarts.add_metric(values, metrics.restarts_total)
            health_failures.add_metric(values, metrics.health_failures_total)
            up.add_metric(values, metrics.up)
            rate_limited.add_metric(values, metrics.rate_limited)

        yield restarts
        yield health_failures
        yield up
        yield rate_limited


def build_registry(snapshot: MetricsSnapshot) -> CollectorRegistry:
    """Fresh registry holding only this cycle's snapshot."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(snapshot))
    return registry


def render(snapshot: MetricsSnapshot) -> bytes:
    """Render a snapshot in the Prometheus text exposition format."""
    return generate_latest(build_registry(snapshot))


class MetricsAggregator:
    """Renders the cycle's metrics and forwards them to the configured sinks.

    Sink failures are logged and never propagate into the cycle.
    """

    def __init__(
        self,
        settings: MetricsSettings,
        textfile_path: Path,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            settings: Metrics section of the configuration document.
            textfile_path: Where the textfile sink writes.
            client: Optional HTTP client for the push sink (tests inject one).
        """
        self._settings = settings
        self._textfile_path = Path(textfile_path)
        self._client = client

    def snapshot(self, accumulator: CycleAccumulator) -> MetricsSnapshot:
        return accumulator.snapshot(self._settings.push.labels)

    def write_textfile(self, snapshot: MetricsSnapshot) -> None:
        """Write the snapshot to the textfile, replacing it atomically.

        Raises:
            MetricsSinkError: If rendering or writing fails
        """
        try:
            self._textfile_path.parent.mkdir(parents=True, exist_ok=True)
            write_to_textfile(str(self._textfile_path), build_registry(snapshot))
        except (OSError, ValueError) as e:
            raise MetricsSinkError(f"Cannot write metrics to {self._textfile_path}: {e}")
        LOGGER.info("Wrote metrics", path=str(self._textfile_path))

    async def push(self, body: bytes) -> None:
        """POST the rendered body to the push endpoint.

        Raises:
            MetricsSinkError: If the endpoint is unreachable or rejects the body
        """
        push = self._settings.push
        headers = {"Content-Type": CONTENT_TYPE_LATEST}
        try:
            if self._client is not None:
                response = await self._client.post(
                    push.endpoint, content=body, headers=headers, timeout=push.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=push.timeout) as client:
                    response = await client.post(push.endpoint, content=body, headers=headers)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MetricsSinkError(f"Failed to push metrics to {push.endpoint}: {e}")
        LOGGER.info("Pushed metrics", endpoint=push.endpoint)

    async def emit(self, accumulator: CycleAccumulator) -> Optional[bytes]:
        """Render and forward this cycle's metrics.

        Returns:
            The rendered exposition body, or None when metrics are disabled
            or rendering failed.
        """
        if not self._settings.enabled:
            return None

        snapshot = self.snapshot(accumulator)
        try:
            body = render(snapshot)
        except ValueError as e:
            LOGGER.error("Cannot render metrics", error=str(e))
            return None

        if self._settings.textfile.enabled:
            try:
                self.write_textfile(snapshot)
            except MetricsSinkError as e:
                LOGGER.warning("Metrics textfile sink failed", error=str(e))

        push = self._settings.push
        if push.enabled and push.endpoint:
            try:
                await self.push(body)
            except MetricsSinkError as e:
                LOGGER.warning("Metrics push sink failed", error=str(e))

        return body


__all__ = [
    "ServiceMetrics",
    "MetricsSnapshot",
    "CycleAccumulator",
    "SnapshotCollector",
    "MetricsAggregator",
    "build_registry",
    "render",
]
