"""Unit tests for the health prober."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import pytest_asyncio

from service_watcher.config import HealthCheckSpec
from service_watcher.errors import ProbeError
from service_watcher.health_checker import HealthProber, parse_host_port
from service_watcher.types import HealthResult

HEALTH_URL = "http://localhost:8080/health"


def _check(type_: str, target: str, timeout: str = "2s") -> HealthCheckSpec:
    return HealthCheckSpec.model_validate(
        {"enable": True, "type": type_, "target": target, "timeout": timeout}
    )


@pytest_asyncio.fixture
async def health_prober():
    prober = HealthProber()
    yield prober
    await prober.close()


class TestParseHostPort:
    """Test tcp target parsing."""

    def test_host_port(self) -> None:
        assert parse_host_port("localhost:5432") == ("localhost", 5432)

    def test_ipv6(self) -> None:
        assert parse_host_port("[::1]:6379") == ("::1", 6379)

    @pytest.mark.parametrize("target", ["localhost", ":80", "host:http", ""])
    def test_invalid(self, target: str) -> None:
        with pytest.raises(ProbeError):
            parse_host_port(target)


class TestHttpCheck:
    """Test HTTP health checks."""

    @staticmethod
    def _prober(handler) -> HealthProber:
        return HealthProber(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    @pytest.mark.asyncio
    async def test_2xx_is_healthy(self) -> None:
        prober = self._prober(lambda request: httpx.Response(204))

        status = await prober.probe("api", _check("http", HEALTH_URL))

        assert status.result is HealthResult.HEALTHY
        assert status.status_code == 204
        assert status.latency_ms is not None

    @pytest.mark.asyncio
    async def test_5xx_is_unhealthy(self) -> None:
        prober = self._prober(lambda request: httpx.Response(503))

        status = await prober.probe("api", _check("http", HEALTH_URL))

        assert status.result is HealthResult.UNHEALTHY
        assert status.status_code == 503
        assert status.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_connection_error_is_unhealthy(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        status = await self._prober(refuse).probe("api", _check("http", HEALTH_URL))

        assert status.result is HealthResult.UNHEALTHY
        assert "Connection refused" in status.error

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self) -> None:
        def stall(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        status = await self._prober(stall).probe("api", _check("http", HEALTH_URL))

        assert status.result is HealthResult.UNHEALTHY
        assert "Timeout" in status.error

    @pytest.mark.asyncio
    async def test_requests_target_url(self) -> None:
        seen = []

        def record(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200)

        prober = self._prober(record)
        assert prober.get_last_health("api") is None

        await prober.probe("api", _check("http", HEALTH_URL))

        assert seen == [HEALTH_URL]
        assert prober.get_last_health("api").is_healthy is True

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        prober = HealthProber(client=client)

        await prober.close()

        assert client.is_closed is False
        await client.aclose()


class TestTcpCheck:
    """Test TCP health checks."""

    @pytest.mark.asyncio
    async def test_open_port_is_healthy(self, health_prober: HealthProber) -> None:
        async def handle(reader, writer):
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            status = await health_prober.probe("db", _check("tcp", f"127.0.0.1:{port}"))
        finally:
            server.close()
            await server.wait_closed()

        assert status.result is HealthResult.HEALTHY

    @pytest.mark.asyncio
    async def test_closed_port_is_unhealthy(self, health_prober: HealthProber) -> None:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        status = await health_prober.probe("db", _check("tcp", f"127.0.0.1:{port}"))

        assert status.result is HealthResult.UNHEALTHY

    @pytest.mark.asyncio
    async def test_malformed_target_is_unhealthy(self, health_prober: HealthProber) -> None:
        status = await health_prober.probe("db", _check("tcp", "no-port-here"))

        assert status.result is HealthResult.UNHEALTHY
        assert "host:port" in status.error


class TestExecCheck:
    """Test command health checks."""

    @pytest.mark.asyncio
    async def test_exit_zero_is_healthy(self, health_prober: HealthProber) -> None:
        status = await health_prober.probe("worker", _check("exec", "true"))
        assert status.result is HealthResult.HEALTHY

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_unhealthy(self, health_prober: HealthProber) -> None:
        status = await health_prober.probe("worker", _check("exec", "echo broken; exit 3"))

        assert status.result is HealthResult.UNHEALTHY
        assert status.error == "exit 3"

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self, health_prober: HealthProber) -> None:
        status = await health_prober.probe("worker", _check("exec", "exec sleep 5", timeout="1s"))

        assert status.result is HealthResult.UNHEALTHY
        assert "timed out" in status.error
