"""Shared fixtures for service watcher tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import pytest

from service_watcher.config import HealthCheckSpec, WatcherConfig
from service_watcher.errors import DependencyQueryError, RestartCommandError
from service_watcher.metrics import MetricsAggregator
from service_watcher.state_store import MemoryStateStore
from service_watcher.types import HealthResult, HealthStatus, ServiceState
from service_watcher.watcher import Watcher

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeProcessManager:
    """In-memory stand-in for systemd."""

    def __init__(self) -> None:
        self.states: Dict[str, ServiceState] = {}
        self.instance_ids: Dict[str, str] = {}
        self.unreadable_ids: Set[str] = set()
        self.refuse_restart: Set[str] = set()
        self.broken: Set[str] = set()
        self.restarts: List[str] = []

    async def get_state(self, name: str) -> ServiceState:
        if name in self.broken:
            raise RuntimeError(f"state query exploded for {name}")
        return self.states.get(name, ServiceState.ACTIVE)

    async def get_instance_id(self, name: str) -> str:
        if name in self.unreadable_ids:
            raise DependencyQueryError(f"cannot read {name}")
        return self.instance_ids.get(name, "")

    async def restart(self, name: str) -> None:
        if name in self.refuse_restart:
            raise RestartCommandError(name, "unit refused to restart")
        self.restarts.append(name)


class FakeProber:
    """Health prober returning scripted results."""

    def __init__(self) -> None:
        self.healthy: Dict[str, bool] = {}
        self.calls: List[str] = []

    async def probe(self, service_name: str, check: HealthCheckSpec) -> HealthStatus:
        self.calls.append(service_name)
        healthy = self.healthy.get(service_name, True)
        return HealthStatus(
            service_name=service_name,
            result=HealthResult.HEALTHY if healthy else HealthResult.UNHEALTHY,
            error=None if healthy else "scripted failure",
        )


def make_config(services: Dict[str, Any], **settings: Any) -> WatcherConfig:
    """Build a config from the camelCase document shape."""
    return WatcherConfig.model_validate({"settings": settings, "services": services})


@pytest.fixture
def process_manager() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def make_watcher(process_manager, prober, store, tmp_path):
    """Factory wiring a Watcher around the fakes."""

    def _make(config: WatcherConfig, metrics: Optional[MetricsAggregator] = None) -> Watcher:
        return Watcher(
            config=config,
            process_manager=process_manager,
            state_store=store,
            prober=prober,
            metrics=metrics,
            clock=lambda: T0,
        )

    return _make
