"""Persistent per-service state for the service watcher.

Each service owns an independent record, so services evaluated in the
same cycle never contend for state.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Protocol
from urllib.parse import quote, unquote

from .logging import get_logger
from .types import ServiceRuntimeState

LOGGER = get_logger(__name__)

_SUFFIX = ".json"


class StateStore(Protocol):
    """Key-value store of ServiceRuntimeState records."""

    def get(self, service: str) -> ServiceRuntimeState:
        """Return the record for ``service`` or a fresh default one."""
        ...

    def put(self, service: str, state: ServiceRuntimeState) -> None:
        """Replace the record atomically."""
        ...

    def list_services(self) -> List[str]:
        """Names of all services with a stored record."""
        ...


class FileStateStore:
    """One JSON document per service under a state directory.

    Writes go to a temporary file in the same directory and are renamed
    over the record, so a reader sees either the old or the new document.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def _path(self, service: str) -> Path:
        return self.state_dir / f"{quote(service, safe='@._-')}{_SUFFIX}"

    def get(self, service: str) -> ServiceRuntimeState:
        path = self._path(service)
        if not path.exists():
            return ServiceRuntimeState()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ServiceRuntimeState.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            LOGGER.warning(
                "Discarding unreadable state record",
                service=service,
                path=str(path),
                error=str(e),
            )
            return ServiceRuntimeState()

    def put(self, service: str, state: ServiceRuntimeState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(service)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)

    def list_services(self) -> List[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(unquote(p.name[: -len(_SUFFIX)]) for p in self.state_dir.glob(f"*{_SUFFIX}"))


class MemoryStateStore:
    """In-process store guarded by one lock per record.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._records: Dict[str, ServiceRuntimeState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, service: str) -> threading.Lock:
        with self._locks_guard:
            if service not in self._locks:
                self._locks[service] = threading.Lock()
            return self._locks[service]

    def get(self, service: str) -> ServiceRuntimeState:
        with self._lock(service):
            state = self._records.get(service)
            return state.copy() if state else ServiceRuntimeState()

    def put(self, service: str, state: ServiceRuntimeState) -> None:
        with self._lock(service):
            self._records[service] = state.copy()

    def list_services(self) -> List[str]:
        return sorted(self._records)


__all__ = ["StateStore", "FileStateStore", "MemoryStateStore"]
