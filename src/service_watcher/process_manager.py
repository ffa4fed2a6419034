"""Process manager interface and its systemd implementation.

The watcher never owns processes. It asks the process manager for a
unit's lifecycle state and per-start invocation id, and asks it to
restart units.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, Tuple

from .errors import DependencyQueryError, RestartCommandError
from .logging import get_logger
from .types import ServiceState

LOGGER = get_logger(__name__)


class ProcessManager(Protocol):
    """What the watcher needs from a process manager."""

    async def get_state(self, name: str) -> ServiceState:
        """Current lifecycle state; UNKNOWN when it cannot be determined."""
        ...

    async def get_instance_id(self, name: str) -> str:
        """Opaque id assigned on each start; empty if the unit never started.

        Raises:
            DependencyQueryError: If the id cannot be read
        """
        ...

    async def restart(self, name: str) -> None:
        """Restart a unit.

        Raises:
            RestartCommandError: If the restart was refused or failed
        """
        ...


def unit_name(name: str) -> str:
    """Service name to systemd unit name (``nginx`` -> ``nginx.service``)."""
    return name if "." in name else f"{name}.service"


class SystemdProcessManager:
    """Drives systemd through the systemctl CLI.

    Every call is bounded by ``command_timeout``; a hung systemctl is
    killed rather than allowed to stall the cycle.
    """

    def __init__(self, systemctl: str = "systemctl", command_timeout: float = 30.0) -> None:
        """Initialize the systemd process manager.

        Args:
            systemctl: systemctl binary to invoke.
            command_timeout: Upper bound in seconds for each systemctl call.
        """
        self._systemctl = systemctl
        self._command_timeout = command_timeout

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        """Run systemctl and return (returncode, stdout, stderr).

        Raises:
            asyncio.TimeoutError: If the call exceeded the timeout
            OSError: If systemctl could not be executed
        """
        proc = await asyncio.create_subprocess_exec(
            self._systemctl,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self._command_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return proc.returncode, stdout.decode().strip(), stderr.decode().strip()

    async def _show(self, name: str, prop: str) -> str:
        rc, stdout, stderr = await self._run(
            "show", unit_name(name), f"--property={prop}", "--value"
        )
        if rc != 0:
            raise OSError(f"systemctl show failed (rc={rc}): {stderr}")
        return stdout

    async def get_state(self, name: str) -> ServiceState:
        try:
            value = await self._show(name, "ActiveState")
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out reading service state", service=name)
            return ServiceState.UNKNOWN
        except OSError as e:
            LOGGER.warning("Cannot read service state", service=name, error=str(e))
            return ServiceState.UNKNOWN
        return ServiceState.parse(value)

    async def get_instance_id(self, name: str) -> str:
        try:
            return await self._show(name, "InvocationID")
        except asyncio.TimeoutError:
            raise DependencyQueryError(f"Timed out reading invocation id of {name}")
        except OSError as e:
            raise DependencyQueryError(f"Cannot read invocation id of {name}: {e}")

    async def restart(self, name: str) -> None:
        try:
            rc, _, stderr = await self._run("restart", unit_name(name))
        except asyncio.TimeoutError:
            raise RestartCommandError(name, f"timed out after {self._command_timeout}s")
        except OSError as e:
            raise RestartCommandError(name, str(e))
        if rc != 0:
            raise RestartCommandError(name, f"systemctl restart rc={rc}: {stderr}")


__all__ = ["ProcessManager", "SystemdProcessManager", "unit_name"]
