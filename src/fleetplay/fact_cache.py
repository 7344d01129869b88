"""Fact caches for fleetplay.

A fact cache is a caller-owned key-value store with a time-to-live, injected
into the executor. Nothing is cached across runs unless the caller passes a
persistent cache.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class FactCache(ABC):
    """Interface for host fact storage with expiry."""

    def __init__(self, ttl: float = 86400.0, clock: Clock = time.time) -> None:
        self.ttl = ttl
        self.clock = clock

    @abstractmethod
    def get(self, host_name: str) -> dict[str, Any] | None:
        """Return cached facts, or None if missing or expired."""

    @abstractmethod
    def set(self, host_name: str, facts: dict[str, Any]) -> None:
        """Store facts for a host, stamped with the current time."""

    @abstractmethod
    def delete(self, host_name: str) -> None:
        """Forget a host's facts."""

    def is_fresh(self, timestamp: float) -> bool:
        return self.ttl <= 0 or self.clock() - timestamp < self.ttl


class MemoryFactCache(FactCache):
    """Process-local fact cache.

    Example:
        >>> cache = MemoryFactCache(ttl=60)
        >>> cache.set("web01", {"os_family": "Debian"})
        >>> cache.get("web01")
        {'os_family': 'Debian'}
    """

    def __init__(self, ttl: float = 86400.0, clock: Clock = time.time) -> None:
        super().__init__(ttl=ttl, clock=clock)
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}

    def get(self, host_name: str) -> dict[str, Any] | None:
        entry = self._entries.get(host_name)
        if entry is None:
            return None
        timestamp, facts = entry
        if not self.is_fresh(timestamp):
            del self._entries[host_name]
            return None
        return dict(facts)

    def set(self, host_name: str, facts: dict[str, Any]) -> None:
        self._entries[host_name] = (self.clock(), dict(facts))

    def delete(self, host_name: str) -> None:
        self._entries.pop(host_name, None)


class JsonFileFactCache(FactCache):
    """Fact cache persisted as one JSON file per host.

    File format::

        {"timestamp": 1700000000.0, "facts": {...}}
    """

    def __init__(
        self,
        directory: str | Path,
        ttl: float = 86400.0,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(ttl=ttl, clock=clock)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, host_name: str) -> Path:
        return self.directory / f"{host_name}.json"

    def get(self, host_name: str) -> dict[str, Any] | None:
        path = self._path(host_name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable fact cache entry {path}: {e}")
            return None
        if not self.is_fresh(float(data.get("timestamp", 0))):
            logger.debug(f"Fact cache entry for {host_name} expired")
            return None
        return data.get("facts", {})

    def set(self, host_name: str, facts: dict[str, Any]) -> None:
        path = self._path(host_name)
        data = {"timestamp": self.clock(), "facts": facts}
        path.write_text(json.dumps(data, indent=2, default=str))
        logger.debug(f"Cached facts for {host_name} in {path}")

    def delete(self, host_name: str) -> None:
        path = self._path(host_name)
        if path.exists():
            path.unlink()
