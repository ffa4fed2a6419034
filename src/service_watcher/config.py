"""Configuration for the service watcher.

Two layers live here:

- ``WatcherSettings``: runtime settings (paths, log level, timeouts) read
  from ``WATCHER_*`` environment variables or a ``.env`` file.
- ``WatcherConfig``: the validated configuration document describing the
  watched services. ``load_config`` reads the base YAML document, merges
  override fragments from the extra config directory in alphabetical order
  and validates the result once, before a cycle starts.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigLoadError
from .logging import get_logger
from .types import HealthCheckType

LOGGER = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path("/etc/watcher/config.yaml")
DEFAULT_EXTRA_CONFIG_DIR = Path("/etc/watcher/config.d")
DEFAULT_STATE_DIR = Path("/var/lib/watcher")

# Fallback used when a duration string cannot be parsed
DEFAULT_DURATION_SECONDS = 30.0

_DURATION_RE = re.compile(r"^\s*([0-9]+)\s*(s|m|h)?\s*$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_duration(value: Any) -> float:
    """Convert a duration such as ``"10s"``, ``"5m"`` or ``"1h"`` to seconds.

    Plain numbers are taken as seconds. Anything unparseable falls back to
    30 seconds.
    """
    if isinstance(value, bool):
        return DEFAULT_DURATION_SECONDS
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        LOGGER.warning("Unparseable duration, using default", value=value)
        return DEFAULT_DURATION_SECONDS
    number, unit = match.groups()
    return float(int(number) * _DURATION_UNITS[unit or "s"])


class WatcherSettings(BaseSettings):
    """Runtime settings for the watcher process."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_", env_file=".env", extra="ignore")

    config_file: Path = DEFAULT_CONFIG_FILE
    extra_config_dir: Path = DEFAULT_EXTRA_CONFIG_DIR
    state_dir: Path = DEFAULT_STATE_DIR
    log_level: str = "INFO"

    # Upper bound for every process manager call (state query, restart)
    command_timeout: float = 30.0
    systemctl_bin: str = "systemctl"


@lru_cache(maxsize=1)
def get_settings() -> WatcherSettings:
    """Return cached runtime settings."""
    return WatcherSettings()


class _DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class HealthCheckSpec(_DocumentModel):
    """Health check settings for one service."""

    enabled: bool = Field(False, alias="enable")
    type: HealthCheckType = HealthCheckType.HTTP
    target: str = ""
    timeout: float = 10.0
    failures_before_restart: int = Field(3, alias="failuresBeforeRestart", ge=1)

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float:
        return parse_duration(value)

    @model_validator(mode="after")
    def _require_target(self) -> "HealthCheckSpec":
        if self.enabled and not self.target:
            raise ValueError("healthCheck.target is required when the health check is enabled")
        return self


class RateLimitOverride(_DocumentModel):
    """Per-service overrides of the global rate limit."""

    max_restarts: Optional[int] = Field(None, alias="maxRestarts", ge=1)
    window_minutes: Optional[int] = Field(None, alias="windowMinutes", ge=1)


class RateLimitSettings(_DocumentModel):
    """Global rate limit applied to every service."""

    max_restarts: int = Field(5, alias="maxRestarts", ge=1)
    window_minutes: int = Field(15, alias="windowMinutes", ge=1)
    cooldown_minutes: int = Field(10, alias="cooldownMinutes", ge=0)


class TextfileSettings(_DocumentModel):
    """Prometheus textfile sink (node_exporter textfile collector)."""

    enabled: bool = Field(True, alias="enable")
    path: Optional[Path] = None


class PushSettings(_DocumentModel):
    """HTTP push sink (VictoriaMetrics import endpoint or compatible)."""

    enabled: bool = Field(False, alias="enable")
    endpoint: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 10.0

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("labels")
    @classmethod
    def _reserve_service_label(cls, value: Dict[str, str]) -> Dict[str, str]:
        # Every sample already carries its own service label
        if "service" in value:
            raise ValueError("labels must not override the reserved 'service' label")
        return value


class MetricsSettings(_DocumentModel):
    """Metrics collection and sinks."""

    enabled: bool = Field(False, alias="enable")
    textfile: TextfileSettings = Field(default_factory=TextfileSettings)
    push: PushSettings = Field(default_factory=PushSettings, alias="victoriametrics")


class ServiceSpec(_DocumentModel):
    """Configuration of one watched service."""

    name: str
    enabled: bool = Field(True, alias="enable")
    on_failed: bool = Field(True, alias="onFailed")
    on_inactive: bool = Field(False, alias="onInactive")
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec, alias="healthCheck")
    dependencies: List[str] = Field(default_factory=list)
    rate_limiting: RateLimitOverride = Field(default_factory=RateLimitOverride, alias="rateLimiting")

    @field_validator("dependencies", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _no_self_dependency(self) -> "ServiceSpec":
        if self.name in self.dependencies:
            raise ValueError(f"service {self.name} lists itself as a dependency")
        return self


class WatcherConfig(_DocumentModel):
    """The merged, validated configuration document."""

    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings, alias="rateLimiting")
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    services: Dict[str, ServiceSpec] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _flatten_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        # Deployment module nests the global settings under "settings"
        settings = data.pop("settings", None) or {}
        if not isinstance(settings, dict):
            raise ValueError("settings must be a mapping")
        for key, value in settings.items():
            data.setdefault(key, value)

        services = data.get("services") or {}
        if not isinstance(services, dict):
            raise ValueError("services must be a mapping of name to service settings")
        named: Dict[str, Any] = {}
        for name, spec in services.items():
            if spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise ValueError(f"service {name} must be a mapping")
            spec = dict(spec)
            spec["name"] = str(name)
            named[str(name)] = spec
        data["services"] = named
        return data

    @model_validator(mode="after")
    def _reject_dependency_cycles(self) -> "WatcherConfig":
        cycle = find_dependency_cycle(
            {name: spec.dependencies for name, spec in self.services.items()}
        )
        if cycle:
            raise ValueError(f"dependency cycle: {' -> '.join(cycle)}")
        return self

    @property
    def enabled_services(self) -> List[ServiceSpec]:
        return [spec for spec in self.services.values() if spec.enabled]

    def textfile_path(self, state_dir: Path) -> Path:
        """Metrics textfile location, defaulting into the state directory."""
        return self.metrics.textfile.path or state_dir / "metrics.prom"


def find_dependency_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a path of names, or None.

    Dependencies that are not themselves keys of the graph are leaves.
    """
    visiting: List[str] = []
    done: set = set()

    def visit(node: str) -> Optional[List[str]]:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done or node not in graph:
            return None
        visiting.append(node)
        for dep in graph[node]:
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for name in graph:
        cycle = visit(name)
        if cycle:
            return cycle
    return None


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into ``base``: mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def _fragment_paths(extra_config_dir: Optional[Path]) -> List[Path]:
    if extra_config_dir is None or not extra_config_dir.is_dir():
        return []
    return sorted(
        p for p in extra_config_dir.iterdir()
        if p.is_file() and p.suffix in (".yaml", ".yml")
    )


def load_document(config_file: Path, extra_config_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Read the base document and merge override fragments in order.

    Raises:
        ConfigLoadError: If the base document is missing or unparseable
    """
    try:
        document = _read_yaml(config_file)
    except FileNotFoundError:
        raise ConfigLoadError(f"Config file not found: {config_file}")
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigLoadError(f"Cannot parse config file {config_file}: {e}")

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigLoadError(f"Config file {config_file} must contain a mapping")

    for fragment_path in _fragment_paths(extra_config_dir):
        try:
            fragment = _read_yaml(fragment_path)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            LOGGER.warning("Skipping unreadable config fragment", path=str(fragment_path), error=str(e))
            continue
        if fragment is None:
            continue
        if not isinstance(fragment, dict):
            LOGGER.warning("Skipping config fragment that is not a mapping", path=str(fragment_path))
            continue
        document = deep_merge(document, fragment)
        LOGGER.debug("Merged config fragment", path=str(fragment_path))

    return document


def parse_config(document: Dict[str, Any]) -> WatcherConfig:
    """Validate a merged configuration document.

    Raises:
        ConfigLoadError: If the document fails validation
    """
    try:
        return WatcherConfig.model_validate(document)
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid configuration: {e}")


def load_config(
    config_file: Optional[Path] = None,
    extra_config_dir: Optional[Path] = None,
) -> WatcherConfig:
    """Load, merge and validate the configuration document.

    Args:
        config_file: Base YAML document (defaults to settings)
        extra_config_dir: Directory of override fragments (defaults to settings)

    Returns:
        Validated WatcherConfig

    Raises:
        ConfigLoadError: If the configuration cannot be loaded or is invalid
    """
    settings = get_settings()
    config_file = config_file or settings.config_file
    if extra_config_dir is None:
        extra_config_dir = settings.extra_config_dir

    config = parse_config(load_document(config_file, extra_config_dir))
    LOGGER.info(
        "Loaded configuration",
        config_file=str(config_file),
        services=len(config.services),
        enabled=len(config.enabled_services),
    )
    return config


__all__ = [
    "WatcherSettings",
    "get_settings",
    "WatcherConfig",
    "ServiceSpec",
    "HealthCheckSpec",
    "RateLimitOverride",
    "RateLimitSettings",
    "MetricsSettings",
    "TextfileSettings",
    "PushSettings",
    "parse_duration",
    "deep_merge",
    "find_dependency_cycle",
    "load_document",
    "parse_config",
    "load_config",
]
