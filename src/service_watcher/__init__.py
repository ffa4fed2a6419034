"""Service Watcher - auto-healing supervisor for systemd services.

Each cycle checks every watched service's process state and optional
health probe, restarts services that failed, went inactive, stayed
unhealthy or whose dependencies restarted, and rate-limits restarts to
prevent restart storms.

Usage:
    from service_watcher import build_watcher, load_config

    config = load_config(Path("/etc/watcher/config.yaml"))
    watcher = build_watcher(config)
    report = await watcher.run_cycle()
"""

__version__ = "0.1.0"

from .config import (
    HealthCheckSpec,
    MetricsSettings,
    RateLimitSettings,
    ServiceSpec,
    WatcherConfig,
    WatcherSettings,
    get_settings,
    load_config,
)
from .dependencies import DependencyPropagator
from .engine import RestartDecisionEngine
from .errors import (
    ConfigLoadError,
    DependencyQueryError,
    MetricsSinkError,
    ProbeError,
    RestartCommandError,
    WatcherError,
)
from .health_checker import HealthProber
from .metrics import CycleAccumulator, MetricsAggregator, MetricsSnapshot
from .process_manager import ProcessManager, SystemdProcessManager
from .rate_limiter import RateLimiter, RateLimitPolicy
from .state_store import FileStateStore, MemoryStateStore, StateStore
from .types import (
    Admission,
    CycleOutcome,
    HealthCheckType,
    HealthResult,
    HealthStatus,
    RestartReason,
    ServiceRuntimeState,
    ServiceState,
)
from .watcher import CycleReport, Watcher, build_watcher

__all__ = [
    "__version__",
    # Config
    "WatcherConfig",
    "WatcherSettings",
    "ServiceSpec",
    "HealthCheckSpec",
    "RateLimitSettings",
    "MetricsSettings",
    "get_settings",
    "load_config",
    # Components
    "HealthProber",
    "ProcessManager",
    "SystemdProcessManager",
    "StateStore",
    "FileStateStore",
    "MemoryStateStore",
    "RateLimiter",
    "RateLimitPolicy",
    "DependencyPropagator",
    "RestartDecisionEngine",
    "CycleAccumulator",
    "MetricsAggregator",
    "MetricsSnapshot",
    "Watcher",
    "CycleReport",
    "build_watcher",
    # Types
    "Admission",
    "CycleOutcome",
    "HealthCheckType",
    "HealthResult",
    "HealthStatus",
    "RestartReason",
    "ServiceRuntimeState",
    "ServiceState",
    # Errors
    "WatcherError",
    "ConfigLoadError",
    "ProbeError",
    "RestartCommandError",
    "DependencyQueryError",
    "MetricsSinkError",
]
