"""Type definitions for the service watcher.

This module defines the runtime data structures shared by the watcher
components: observed service states, health results, restart reasons,
the persisted per-service state record and the per-cycle outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Restart ledger is capped; oldest entries are discarded first
MAX_LEDGER_ENTRIES = 100


class ServiceState(Enum):
    """Lifecycle state reported by the process manager."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ServiceState":
        """Map a raw process manager state string to a ServiceState.

        Transitional states (activating, reloading, ...) map to UNKNOWN.
        """
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class HealthCheckType(Enum):
    """How to probe a service beyond its process state."""

    HTTP = "http"  # GET target URL, expect 2xx
    TCP = "tcp"  # Connect to host:port
    EXEC = "exec"  # Run a command, expect exit 0


class HealthResult(Enum):
    """Outcome of a single health probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RestartReason(Enum):
    """Why a restart was decided. Only the highest-priority reason is kept."""

    FAILED = "failed"
    INACTIVE = "inactive"
    HEALTH = "health"
    DEPENDENCY = "dependency"
    NONE = "none"

    @property
    def description(self) -> str:
        return _REASON_DESCRIPTIONS[self]


_REASON_DESCRIPTIONS = {
    RestartReason.FAILED: "service state is failed",
    RestartReason.INACTIVE: "service state is inactive",
    RestartReason.HEALTH: "health check failure threshold reached",
    RestartReason.DEPENDENCY: "dependency restarted",
    RestartReason.NONE: "no restart needed",
}


class Admission(Enum):
    """Rate limiter verdict for a candidate restart."""

    PROCEED = "proceed"
    SUPPRESSED = "suppressed"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class HealthStatus:
    """Result of a health probe for a service.

    Attributes:
        service_name: Name of the service probed
        result: Healthy or unhealthy
        checked_at: When the probe started
        latency_ms: Time the probe took in milliseconds
        status_code: HTTP status code (http probes only)
        error: Error detail when the probe failed
    """

    service_name: str
    result: HealthResult
    checked_at: datetime = field(default_factory=utcnow)
    latency_ms: Optional[float] = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.result is HealthResult.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "service_name": self.service_name,
            "result": self.result.value,
            "checked_at": self.checked_at.isoformat(),
            "latency_ms": self.latency_ms,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass
class ServiceRuntimeState:
    """Persisted per-service record carried across cycles.

    Attributes:
        health_failure_count: Consecutive failed probes since the last
            success or health-triggered restart
        restart_ledger: Restart timestamps, newest last
        cooldown_until: Restarts are suppressed until this time
        dependency_instance_ids: Last observed instance id per dependency
    """

    health_failure_count: int = 0
    restart_ledger: List[datetime] = field(default_factory=list)
    cooldown_until: Optional[datetime] = None
    dependency_instance_ids: Dict[str, str] = field(default_factory=dict)

    def record_restart(self, now: datetime) -> None:
        """Append a restart to the ledger, keeping the newest entries."""
        if self.restart_ledger and now < self.restart_ledger[-1]:
            # Clock stepped backwards; keep the ledger non-decreasing
            now = self.restart_ledger[-1]
        self.restart_ledger.append(now)
        if len(self.restart_ledger) > MAX_LEDGER_ENTRIES:
            del self.restart_ledger[: len(self.restart_ledger) - MAX_LEDGER_ENTRIES]

    def copy(self) -> "ServiceRuntimeState":
        return ServiceRuntimeState(
            health_failure_count=self.health_failure_count,
            restart_ledger=list(self.restart_ledger),
            cooldown_until=self.cooldown_until,
            dependency_instance_ids=dict(self.dependency_instance_ids),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "health_failure_count": self.health_failure_count,
            "restart_ledger": [ts.isoformat() for ts in self.restart_ledger],
            "cooldown_until": (
                self.cooldown_until.isoformat() if self.cooldown_until else None
            ),
            "dependency_instance_ids": dict(self.dependency_instance_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceRuntimeState":
        """Build a state record from its serialized form."""
        cooldown = data.get("cooldown_until")
        ledger = [_parse_timestamp(ts) for ts in data.get("restart_ledger") or []]
        return cls(
            health_failure_count=max(0, int(data.get("health_failure_count") or 0)),
            restart_ledger=ledger[-MAX_LEDGER_ENTRIES:],
            cooldown_until=_parse_timestamp(cooldown) if cooldown else None,
            dependency_instance_ids={
                str(k): str(v)
                for k, v in (data.get("dependency_instance_ids") or {}).items()
                if v
            },
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RestartDecision:
    """Verdict of the restart decision engine, before rate limiting."""

    restart: bool
    reason: RestartReason = RestartReason.NONE
    healthy: Optional[bool] = None
    health_failures: int = 0


@dataclass
class CycleOutcome:
    """What happened to one service during one cycle.

    Attributes:
        service_name: Name of the service
        observed_state: State reported by the process manager
        healthy: Probe result, None when no probe ran
        restart_triggered: Whether the engine decided to restart
        reason: Highest-priority restart reason
        rate_limited: Whether the rate limiter suppressed the restart
        restarted: Whether a restart command was issued and succeeded
        health_failures: Failure counter value observed this cycle
        error: Detail of an isolated per-service failure
    """

    service_name: str
    observed_state: ServiceState = ServiceState.UNKNOWN
    healthy: Optional[bool] = None
    restart_triggered: bool = False
    reason: RestartReason = RestartReason.NONE
    rate_limited: bool = False
    restarted: bool = False
    health_failures: int = 0
    error: Optional[str] = None

    @property
    def is_up(self) -> bool:
        """Whether the service counts as up for metrics."""
        if self.observed_state in (ServiceState.FAILED, ServiceState.INACTIVE):
            return False
        return self.healthy is not False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "service_name": self.service_name,
            "observed_state": self.observed_state.value,
            "healthy": self.healthy,
            "restart_triggered": self.restart_triggered,
            "reason": self.reason.value,
            "rate_limited": self.rate_limited,
            "restarted": self.restarted,
            "health_failures": self.health_failures,
            "error": self.error,
        }
