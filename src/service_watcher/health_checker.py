"""Health prober for the service watcher.

Runs a single HTTP, TCP or exec health check against a target with a
timeout. Every failure mode degrades to an unhealthy result; a probe never
raises into the cycle.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .config import HealthCheckSpec
from .errors import ProbeError
from .logging import get_logger
from .types import HealthCheckType, HealthResult, HealthStatus, utcnow

LOGGER = get_logger(__name__)

# Captured exec output is truncated to this many characters in logs
_MAX_OUTPUT_CHARS = 500

EXEC_SHELL = "/bin/sh"


def parse_host_port(target: str) -> Tuple[str, int]:
    """Split a ``host:port`` (or ``[v6addr]:port``) target.

    Raises:
        ProbeError: If the target is malformed
    """
    host, sep, port = target.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ProbeError(f"Invalid tcp target {target!r}, expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


class HealthProber:
    """Async health prober with one evaluator per check type.

    Uses httpx for HTTP checks with connection pooling across the services
    probed in one cycle.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize the prober.

        Args:
            client: Optional pre-configured HTTP client (tests inject one).
        """
        self._client = client
        self._owns_client = client is None
        self._last_health: Dict[str, HealthStatus] = {}
        self._evaluators: Dict[
            HealthCheckType, Callable[[str, HealthCheckSpec], Awaitable[HealthStatus]]
        ] = {
            HealthCheckType.HTTP: self._check_http,
            HealthCheckType.TCP: self._check_tcp,
            HealthCheckType.EXEC: self._check_exec,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def probe(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        """Run one health check.

        Args:
            service_name: Name of the service being probed (for logging).
            check: The service's health check settings.

        Returns:
            HealthStatus; transport errors and timeouts yield UNHEALTHY.
        """
        started = time.monotonic()
        checked_at = utcnow()
        try:
            status = await self._evaluators[check.type](service_name, check)
        except ProbeError as e:
            status = HealthStatus(
                service_name=service_name,
                result=HealthResult.UNHEALTHY,
                checked_at=checked_at,
                error=str(e),
            )
        except Exception as e:
            LOGGER.warning(
                "Health probe raised unexpectedly",
                service=service_name,
                check_type=check.type.value,
                error=str(e),
            )
            status = HealthStatus(
                service_name=service_name,
                result=HealthResult.UNHEALTHY,
                checked_at=checked_at,
                error=str(e),
            )

        status.checked_at = checked_at
        if status.latency_ms is None:
            status.latency_ms = (time.monotonic() - started) * 1000

        self._log_state_change(service_name, check.type, status)
        self._last_health[service_name] = status
        return status

    async def _check_http(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        """GET the target; healthy on a 2xx within the timeout."""
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.get(check.target, timeout=check.timeout),
                timeout=check.timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            raise ProbeError(f"Timeout after {check.timeout}s: {check.target}")
        except httpx.ConnectError:
            raise ProbeError(f"Connection refused: {check.target}")
        except httpx.HTTPError as e:
            raise ProbeError(f"HTTP error for {check.target}: {e}")

        healthy = response.is_success
        return HealthStatus(
            service_name=service_name,
            result=HealthResult.HEALTHY if healthy else HealthResult.UNHEALTHY,
            status_code=response.status_code,
            error=None if healthy else f"HTTP {response.status_code}",
        )

    async def _check_tcp(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        """Open a TCP connection to host:port within the timeout."""
        host, port = parse_host_port(check.target)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=check.timeout,
            )
        except asyncio.TimeoutError:
            raise ProbeError(f"Timeout connecting to {host}:{port} after {check.timeout}s")
        except OSError as e:
            raise ProbeError(f"Cannot connect to {host}:{port}: {e}")

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return HealthStatus(service_name=service_name, result=HealthResult.HEALTHY)

    async def _check_exec(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        """Run the target command; healthy on exit 0 before the timeout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                EXEC_SHELL,
                "-c",
                check.target,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ProbeError(f"Cannot run health command: {e}")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=check.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProbeError(f"Health command timed out after {check.timeout}s")

        if proc.returncode != 0:
            output = (stdout or b"").decode(errors="replace").strip()[:_MAX_OUTPUT_CHARS]
            LOGGER.warning(
                "Exec check failed",
                service=service_name,
                exit_code=proc.returncode,
                output=output,
            )
            return HealthStatus(
                service_name=service_name,
                result=HealthResult.UNHEALTHY,
                error=f"exit {proc.returncode}",
            )

        return HealthStatus(service_name=service_name, result=HealthResult.HEALTHY)

    def _log_state_change(
        self, service_name: str, check_type: HealthCheckType, new_status: HealthStatus
    ) -> None:
        """Log health transitions."""
        old_status = self._last_health.get(service_name)
        if old_status is None or old_status.is_healthy != new_status.is_healthy:
            if new_status.is_healthy:
                LOGGER.info("Service is healthy", service=service_name, check_type=check_type.value)
            else:
                LOGGER.warning(
                    "Service is unhealthy",
                    service=service_name,
                    check_type=check_type.value,
                    error=new_status.error,
                )

    def get_last_health(self, service_name: str) -> Optional[HealthStatus]:
        """Last probe result for a service, None if never probed."""
        return self._last_health.get(service_name)


__all__ = ["HealthProber", "parse_host_port", "EXEC_SHELL"]
