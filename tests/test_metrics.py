"""Unit tests for metrics aggregation and sinks."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families

from service_watcher.config import MetricsSettings
from service_watcher.errors import MetricsSinkError
from service_watcher.metrics import CycleAccumulator, MetricsAggregator, render
from service_watcher.types import CycleOutcome, ServiceRuntimeState, ServiceState
from tests.conftest import T0

PUSH_ENDPOINT = "http://vm.local:8428/api/v1/import/prometheus"


def _settings(**overrides) -> MetricsSettings:
    data = {"enable": True, "textfile": {"enable": False}}
    data.update(overrides)
    return MetricsSettings.model_validate(data)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _accumulator() -> CycleAccumulator:
    accumulator = CycleAccumulator()

    nginx_state = ServiceRuntimeState()
    for _ in range(5):
        nginx_state.record_restart(T0)
    accumulator.record(
        CycleOutcome(
            service_name="nginx",
            observed_state=ServiceState.FAILED,
            restart_triggered=True,
            rate_limited=True,
        ),
        nginx_state,
    )
    accumulator.record(
        CycleOutcome(
            service_name="api",
            observed_state=ServiceState.ACTIVE,
            healthy=False,
            health_failures=2,
        ),
        ServiceRuntimeState(health_failure_count=2),
    )
    return accumulator


class TestRender:
    """Test the exposition format."""

    def test_one_sample_per_service(self) -> None:
        body = render(_accumulator().snapshot()).decode()

        assert 'watcher_service_restarts_total{service="nginx"} 5.0' in body
        assert 'watcher_service_restarts_total{service="api"} 0.0' in body
        assert 'watcher_service_health_failures_total{service="api"} 2.0' in body
        assert 'watcher_service_up{service="nginx"} 0.0' in body
        assert 'watcher_service_up{service="api"} 0.0' in body
        assert 'watcher_rate_limited{service="nginx"} 1.0' in body
        assert 'watcher_rate_limited{service="api"} 0.0' in body
        assert "# TYPE watcher_service_restarts_total counter" in body
        assert "# TYPE watcher_service_up gauge" in body

    def test_extra_labels_follow_service(self) -> None:
        body = render(_accumulator().snapshot({"env": "production"})).decode()

        samples = {
            (sample.name, sample.labels["service"]): sample
            for family in text_string_to_metric_families(body)
            for sample in family.samples
        }

        rate_limited = samples[("watcher_rate_limited", "nginx")]
        assert rate_limited.labels == {"service": "nginx", "env": "production"}
        assert rate_limited.value == 1.0
        assert samples[("watcher_service_restarts_total", "nginx")].value == 5.0
        assert all(s.labels.get("env") == "production" for s in samples.values())

    def test_empty_cycle_renders_headers_only(self) -> None:
        body = render(CycleAccumulator().snapshot()).decode()

        assert "# HELP watcher_service_up" in body
        assert "{service=" not in body


class TestMetricsAggregator:
    """Test sink dispatch."""

    @pytest.mark.asyncio
    async def test_disabled_emits_nothing(self, tmp_path: Path) -> None:
        aggregator = MetricsAggregator(
            MetricsSettings(), tmp_path / "metrics.prom"
        )
        assert await aggregator.emit(_accumulator()) is None
        assert not (tmp_path / "metrics.prom").exists()

    @pytest.mark.asyncio
    async def test_textfile_sink(self, tmp_path: Path) -> None:
        path = tmp_path / "textfile" / "watcher.prom"
        aggregator = MetricsAggregator(_settings(textfile={"enable": True}), path)

        body = await aggregator.emit(_accumulator())

        assert path.read_bytes() == body
        assert not list(path.parent.glob("*.tmp*"))

    @pytest.mark.asyncio
    async def test_textfile_failure_is_not_fatal(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        aggregator = MetricsAggregator(
            _settings(textfile={"enable": True}), blocker / "watcher.prom"
        )

        body = await aggregator.emit(_accumulator())

        assert body is not None

    @pytest.mark.asyncio
    async def test_push_sink(self, tmp_path: Path) -> None:
        requests = []

        def accept(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        aggregator = MetricsAggregator(
            _settings(
                victoriametrics={
                    "enable": True,
                    "endpoint": PUSH_ENDPOINT,
                    "labels": {"env": "production"},
                }
            ),
            tmp_path / "metrics.prom",
            client=_client(accept),
        )

        body = await aggregator.emit(_accumulator())

        assert len(requests) == 1
        assert str(requests[0].url) == PUSH_ENDPOINT
        assert requests[0].method == "POST"
        assert requests[0].content == body
        assert requests[0].headers["Content-Type"].startswith("text/plain")
        assert b'env="production"' in body

    @pytest.mark.asyncio
    async def test_push_failure_is_not_fatal(self, tmp_path: Path) -> None:
        path = tmp_path / "metrics.prom"
        aggregator = MetricsAggregator(
            _settings(
                textfile={"enable": True},
                victoriametrics={"enable": True, "endpoint": PUSH_ENDPOINT},
            ),
            path,
            client=_client(lambda request: httpx.Response(500)),
        )

        body = await aggregator.emit(_accumulator())

        assert body is not None
        assert path.exists()

    @pytest.mark.asyncio
    async def test_push_error_raises_sink_error(self, tmp_path: Path) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        aggregator = MetricsAggregator(
            _settings(victoriametrics={"enable": True, "endpoint": PUSH_ENDPOINT}),
            tmp_path / "metrics.prom",
            client=_client(refuse),
        )

        with pytest.raises(MetricsSinkError):
            await aggregator.push(b"")

    @pytest.mark.asyncio
    async def test_malformed_push_endpoint_raises_sink_error(self, tmp_path: Path) -> None:
        aggregator = MetricsAggregator(
            _settings(victoriametrics={"enable": True, "endpoint": "http://vm:notaport/api"}),
            tmp_path / "metrics.prom",
        )

        with pytest.raises(MetricsSinkError):
            await aggregator.push(b"")

    @pytest.mark.asyncio
    async def test_malformed_push_endpoint_is_not_fatal(self, tmp_path: Path) -> None:
        path = tmp_path / "metrics.prom"
        aggregator = MetricsAggregator(
            _settings(
                textfile={"enable": True},
                victoriametrics={"enable": True, "endpoint": "http://vm:notaport/api"},
            ),
            path,
        )

        body = await aggregator.emit(_accumulator())

        assert body is not None
        assert path.read_bytes() == body

    @pytest.mark.asyncio
    async def test_push_without_endpoint_is_skipped(self, tmp_path: Path) -> None:
        aggregator = MetricsAggregator(
            _settings(victoriametrics={"enable": True, "endpoint": ""}),
            tmp_path / "metrics.prom",
        )
        assert await aggregator.emit(_accumulator()) is not None


def test_service_label_cannot_be_overridden() -> None:
    with pytest.raises(ValueError, match="service"):
        _settings(victoriametrics={"enable": True, "labels": {"service": "x"}})
