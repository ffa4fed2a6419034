"""Cycle orchestration for the service watcher.

One cycle evaluates every enabled service to completion:

    process state -> health probe -> dependency check -> restart decision
    -> rate limiter -> restart command -> state update -> metrics

Services are evaluated concurrently. Each one reads and writes only its
own state record, and any failure while evaluating one service is logged
and recorded on its outcome without affecting the others.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .config import WatcherConfig, WatcherSettings, get_settings
from .dependencies import DependencyPropagator
from .engine import Prober, RestartDecisionEngine
from .errors import RestartCommandError
from .health_checker import HealthProber
from .logging import get_logger
from .metrics import CycleAccumulator, MetricsAggregator
from .process_manager import ProcessManager, SystemdProcessManager
from .rate_limiter import RateLimiter, RateLimitPolicy
from .state_store import FileStateStore, StateStore
from .types import Admission, CycleOutcome, ServiceRuntimeState, ServiceState, utcnow

LOGGER = get_logger(__name__)


@dataclass
class CycleReport:
    """Summary of one completed cycle."""

    started_at: datetime
    finished_at: datetime
    outcomes: List[CycleOutcome] = field(default_factory=list)
    metrics_body: Optional[bytes] = None

    @property
    def checked(self) -> int:
        return len(self.outcomes)

    @property
    def healthy(self) -> int:
        return sum(
            1
            for o in self.outcomes
            if o.observed_state is ServiceState.ACTIVE and o.healthy is not False
        )

    @property
    def restarted(self) -> int:
        return sum(1 for o in self.outcomes if o.restarted)

    @property
    def rate_limited(self) -> int:
        return sum(1 for o in self.outcomes if o.rate_limited)

    def outcome(self, service_name: str) -> Optional[CycleOutcome]:
        for o in self.outcomes:
            if o.service_name == service_name:
                return o
        return None


class Watcher:
    """Runs watcher cycles against a validated configuration."""

    def __init__(
        self,
        config: WatcherConfig,
        process_manager: ProcessManager,
        state_store: StateStore,
        prober: Optional[Prober] = None,
        metrics: Optional[MetricsAggregator] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the watcher.

        Args:
            config: Merged and validated configuration document.
            process_manager: Reads unit state and issues restarts.
            state_store: Persistent per-service state.
            prober: Health prober (defaults to HealthProber).
            metrics: Metrics aggregator; metrics are skipped when None.
            rate_limiter: Rate limiter (defaults to RateLimiter).
            clock: Source of the cycle timestamp.
        """
        self._config = config
        self._process_manager = process_manager
        self._state_store = state_store
        self._prober = prober or HealthProber()
        self._metrics = metrics
        self._rate_limiter = rate_limiter or RateLimiter()
        self._clock = clock

        self._engine = RestartDecisionEngine(self._prober)
        self._propagator = DependencyPropagator(process_manager)

    @property
    def config(self) -> WatcherConfig:
        return self._config

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Evaluate every enabled service once and emit metrics.

        Args:
            now: Cycle timestamp (defaults to the clock).

        Returns:
            CycleReport with one outcome per enabled service.
        """
        now = now or self._clock()
        LOGGER.info("Watcher cycle starting", services=len(self._config.services))

        for spec in self._config.services.values():
            if not spec.enabled:
                LOGGER.info("Service is disabled, skipping", service=spec.name)

        accumulator = CycleAccumulator()
        outcomes = await asyncio.gather(
            *[
                self._evaluate_service(spec.name, now, accumulator)
                for spec in self._config.enabled_services
            ]
        )

        metrics_body = None
        if self._metrics is not None:
            metrics_body = await self._metrics.emit(accumulator)

        report = CycleReport(
            started_at=now,
            finished_at=self._clock(),
            outcomes=list(outcomes),
            metrics_body=metrics_body,
        )
        LOGGER.info(
            "Watcher completed",
            checked=report.checked,
            healthy=report.healthy,
            restarted=report.restarted,
            rate_limited=report.rate_limited,
        )
        return report

    async def _evaluate_service(
        self,
        service_name: str,
        now: datetime,
        accumulator: CycleAccumulator,
    ) -> CycleOutcome:
        spec = self._config.services[service_name]
        outcome = CycleOutcome(service_name=service_name)

        try:
            state = self._state_store.get(service_name)
        except OSError as e:
            LOGGER.error("Cannot read service state", service=service_name, error=str(e))
            outcome.error = str(e)
            accumulator.record(outcome, ServiceRuntimeState())
            return outcome
        outcome.health_failures = state.health_failure_count

        try:
            observed = await self._process_manager.get_state(service_name)
            outcome.observed_state = observed
            LOGGER.debug("Checked service state", service=service_name, state=observed.value)

            dependency_changed = await self._propagator.check(
                service_name, spec.dependencies, state
            )
            decision = await self._engine.decide(spec, observed, state, dependency_changed)
            outcome.healthy = decision.healthy
            outcome.health_failures = decision.health_failures
            outcome.restart_triggered = decision.restart
            outcome.reason = decision.reason

            if decision.restart:
                policy = RateLimitPolicy.for_service(spec, self._config.rate_limiting)
                admission = self._rate_limiter.admit(service_name, state, True, now, policy)
                if admission is Admission.SUPPRESSED:
                    outcome.rate_limited = True
                else:
                    outcome.restarted = await self._restart(service_name, decision.reason.description)
                    if outcome.restarted:
                        state.record_restart(now)
        except Exception as e:
            LOGGER.exception("Unexpected error evaluating service", service=service_name)
            outcome.error = str(e)

        try:
            self._state_store.put(service_name, state)
        except OSError as e:
            LOGGER.error("Cannot persist service state", service=service_name, error=str(e))
            outcome.error = outcome.error or str(e)

        accumulator.record(outcome, state)
        return outcome

    async def _restart(self, service_name: str, reason: str) -> bool:
        LOGGER.info("Restarting service", service=service_name, reason=reason)
        try:
            await self._process_manager.restart(service_name)
        except RestartCommandError as e:
            LOGGER.error("Failed to restart service", service=service_name, error=e.detail)
            return False
        LOGGER.info("Service restarted successfully", service=service_name)
        return True

    async def close(self) -> None:
        """Release HTTP clients held by the prober."""
        close = getattr(self._prober, "close", None)
        if close is not None:
            await close()


def build_watcher(
    config: WatcherConfig,
    settings: Optional[WatcherSettings] = None,
    state_dir: Optional[Path] = None,
) -> Watcher:
    """Wire a Watcher with the systemd process manager and file state store.

    Args:
        config: Validated configuration document.
        settings: Runtime settings (defaults to environment settings).
        state_dir: Override of the state directory.

    Returns:
        Watcher ready to run a cycle
    """
    settings = settings or get_settings()
    state_dir = Path(state_dir or settings.state_dir)

    process_manager = SystemdProcessManager(
        systemctl=settings.systemctl_bin,
        command_timeout=settings.command_timeout,
    )
    metrics = MetricsAggregator(config.metrics, config.textfile_path(state_dir))

    return Watcher(
        config=config,
        process_manager=process_manager,
        state_store=FileStateStore(state_dir),
        metrics=metrics,
    )


__all__ = ["Watcher", "CycleReport", "build_watcher"]
