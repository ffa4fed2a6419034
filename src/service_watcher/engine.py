"""Restart decision engine.

Combines process state, health probe result and the dependency signal
into one restart-or-not verdict. Rules are evaluated in priority order
and the first match wins:

1. ``on_failed`` and the service is failed
2. ``on_inactive`` and the service is inactive
3. the service is active and its health check reached the failure threshold
4. a dependency restarted since the last cycle

A restart decided here still has to pass the rate limiter.
"""

from __future__ import annotations

from typing import Protocol

from .config import HealthCheckSpec, ServiceSpec
from .logging import get_logger
from .types import (
    HealthStatus,
    RestartDecision,
    RestartReason,
    ServiceRuntimeState,
    ServiceState,
)

LOGGER = get_logger(__name__)


class Prober(Protocol):
    async def probe(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        ...


class RestartDecisionEngine:
    """Per-service state machine evaluated once per cycle."""

    def __init__(self, prober: Prober) -> None:
        self._prober = prober

    async def decide(
        self,
        spec: ServiceSpec,
        observed_state: ServiceState,
        state: ServiceRuntimeState,
        dependency_changed: bool,
    ) -> RestartDecision:
        """Decide whether ``spec`` needs a restart this cycle.

        The health failure counter in ``state`` is updated in place. The probe
        only runs for active services, so it never runs in a cycle where the
        failed/inactive rules fire and the counter is left as it was.
        """
        if spec.on_failed and observed_state is ServiceState.FAILED:
            return RestartDecision(
                restart=True,
                reason=RestartReason.FAILED,
                health_failures=state.health_failure_count,
            )

        if spec.on_inactive and observed_state is ServiceState.INACTIVE:
            return RestartDecision(
                restart=True,
                reason=RestartReason.INACTIVE,
                health_failures=state.health_failure_count,
            )

        healthy = None
        health_failures = state.health_failure_count
        check = spec.health_check

        if observed_state is ServiceState.ACTIVE and check.enabled:
            status = await self._prober.probe(spec.name, check)
            healthy = status.is_healthy

            if healthy:
                state.health_failure_count = 0
                health_failures = 0
            else:
                state.health_failure_count += 1
                health_failures = state.health_failure_count
                LOGGER.warning(
                    "Health check failed",
                    service=spec.name,
                    failures=health_failures,
                    threshold=check.failures_before_restart,
                )
                if health_failures >= check.failures_before_restart:
                    state.health_failure_count = 0
                    return RestartDecision(
                        restart=True,
                        reason=RestartReason.HEALTH,
                        healthy=False,
                        health_failures=health_failures,
                    )

        if dependency_changed:
            return RestartDecision(
                restart=True,
                reason=RestartReason.DEPENDENCY,
                healthy=healthy,
                health_failures=health_failures,
            )

        return RestartDecision(
            restart=False,
            reason=RestartReason.NONE,
            healthy=healthy,
            health_failures=health_failures,
        )


__all__ = ["RestartDecisionEngine", "Prober"]
