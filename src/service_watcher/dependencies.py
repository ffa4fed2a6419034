"""Dependency restart propagation.

A dependent service is restarted when one of its dependencies has been
restarted since the previous cycle. Restarts are detected through the
process manager's per-start instance id rather than wall-clock timing.
"""

from __future__ import annotations

from typing import Sequence

from .errors import DependencyQueryError
from .logging import get_logger
from .process_manager import ProcessManager
from .types import ServiceRuntimeState

LOGGER = get_logger(__name__)


class DependencyPropagator:
    """Tracks dependency instance ids and signals dependency restarts."""

    def __init__(self, process_manager: ProcessManager) -> None:
        self._process_manager = process_manager

    async def check(
        self,
        service_name: str,
        dependencies: Sequence[str],
        state: ServiceRuntimeState,
    ) -> bool:
        """Refresh stored instance ids and report whether any dependency restarted.

        Runs for every dependency on every cycle, whatever the restart decision
        ends up being. A dependency seen for the first time never triggers. An
        empty or unreadable id is treated as unknown: it never triggers and
        leaves the stored id untouched.

        Args:
            service_name: The dependent service (logging only).
            dependencies: Names of the services it depends on.
            state: The dependent's runtime state; ids are updated in place.

        Returns:
            True if at least one dependency's instance id changed.
        """
        changed = False

        for dep in dependencies:
            try:
                current_id = await self._process_manager.get_instance_id(dep)
            except DependencyQueryError as e:
                LOGGER.warning(
                    "Cannot read dependency instance id",
                    service=service_name,
                    dependency=dep,
                    error=str(e),
                )
                continue

            if not current_id:
                continue

            stored_id = state.dependency_instance_ids.get(dep)
            state.dependency_instance_ids[dep] = current_id

            if stored_id and stored_id != current_id:
                LOGGER.info(
                    "Dependency has restarted (instance id changed)",
                    service=service_name,
                    dependency=dep,
                )
                changed = True

        return changed


__all__ = ["DependencyPropagator"]
