"""Restart rate limiting with cooldown.

A service may restart at most ``max_restarts`` times within a trailing
``window_minutes`` window. The restart that would exceed the limit is
suppressed and starts a cooldown during which every restart for that
service is suppressed outright.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import RateLimitSettings, ServiceSpec
from .logging import get_logger
from .types import Admission, ServiceRuntimeState

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Effective limits for one service."""

    max_restarts: int
    window_minutes: int
    cooldown_minutes: int

    @classmethod
    def for_service(cls, spec: ServiceSpec, defaults: RateLimitSettings) -> "RateLimitPolicy":
        """Apply a service's overrides on top of the global limits.

        The cooldown is always the global one.
        """
        override = spec.rate_limiting
        return cls(
            max_restarts=(
                override.max_restarts if override.max_restarts is not None else defaults.max_restarts
            ),
            window_minutes=(
                override.window_minutes
                if override.window_minutes is not None
                else defaults.window_minutes
            ),
            cooldown_minutes=defaults.cooldown_minutes,
        )


class RateLimiter:
    """Decides whether a candidate restart may proceed."""

    def admit(
        self,
        service_name: str,
        state: ServiceRuntimeState,
        candidate: bool,
        now: datetime,
        policy: RateLimitPolicy,
    ) -> Admission:
        """Admit or suppress a restart, updating the cooldown in ``state``.

        The ledger is never modified here; a restart is recorded only after
        the restart command succeeds (see ``ServiceRuntimeState.record_restart``).

        Args:
            service_name: Service the restart is for (logging only).
            state: The service's runtime state; cooldown may be set or cleared.
            candidate: Whether the decision engine wants a restart.
            now: Evaluation time.
            policy: Effective limits for the service.

        Returns:
            PROCEED or SUPPRESSED
        """
        if not candidate:
            return Admission.PROCEED

        if state.cooldown_until is not None:
            if now < state.cooldown_until:
                LOGGER.warning(
                    "Service is in cooldown",
                    service=service_name,
                    cooldown_until=state.cooldown_until.isoformat(),
                )
                return Admission.SUPPRESSED
            state.cooldown_until = None
            LOGGER.info("Cooldown expired", service=service_name)

        window_start = now - timedelta(minutes=policy.window_minutes)
        restart_count = sum(1 for ts in state.restart_ledger if ts >= window_start)

        if restart_count >= policy.max_restarts:
            state.cooldown_until = now + timedelta(minutes=policy.cooldown_minutes)
            LOGGER.warning(
                "Service hit rate limit, entering cooldown",
                service=service_name,
                restarts=restart_count,
                window_minutes=policy.window_minutes,
                cooldown_until=state.cooldown_until.isoformat(),
            )
            return Admission.SUPPRESSED

        return Admission.PROCEED


__all__ = ["RateLimitPolicy", "RateLimiter"]
