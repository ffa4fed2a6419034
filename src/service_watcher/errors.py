"""Exception hierarchy for the service watcher."""

from __future__ import annotations


class WatcherError(Exception):
    """Base exception for all watcher errors."""

    pass


class ConfigLoadError(WatcherError):
    """Configuration document is missing, unparseable or invalid.

    This is the only fatal error: the cycle aborts before any service
    is evaluated.
    """

    pass


class ProbeError(WatcherError):
    """A health probe could not complete (transport failure, timeout)."""

    pass


class RestartCommandError(WatcherError):
    """The process manager refused or failed to restart a unit."""

    def __init__(self, service: str, detail: str) -> None:
        super().__init__(f"Failed to restart {service}: {detail}")
        self.service = service
        self.detail = detail


class DependencyQueryError(WatcherError):
    """A dependency's instance identifier could not be read."""

    pass


class MetricsSinkError(WatcherError):
    """Rendering, writing or pushing metrics failed."""

    pass


__all__ = [
    "WatcherError",
    "ConfigLoadError",
    "ProbeError",
    "RestartCommandError",
    "DependencyQueryError",
    "MetricsSinkError",
]
