"""Execution strategies.

A strategy decides when a host may start its next step. Every task and
every handler flush point in a play has a document-order uid, and each
host's path through the play visits uids in increasing order.

- linear: lock-step. A host waits at each step until every active host has
  reached a step; the hosts sitting at the lowest pending uid are released
  together. Hosts that finish or fail leave the barrier, so a failed host
  never holds the others back.
- free: no rendezvous; each host runs through the play on its own.

Both are bounded by the ``forks`` semaphore, which the executor holds only
while a host is actually applying a task.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from .exceptions import PlaybookError

logger = logging.getLogger(__name__)


class Barrier(ABC):
    """Rendezvous point between hosts of one batch."""

    @abstractmethod
    async def wait(self, host: str, uid: int) -> None:
        """Block until ``host`` may run the step ``uid``."""

    @abstractmethod
    def leave(self, host: str) -> None:
        """Remove a host that will not take further steps."""


class LockStepBarrier(Barrier):
    """Releases the hosts waiting at the lowest uid once all hosts arrived.

    Example:
        >>> barrier = LockStepBarrier(["web1", "web2"])
        >>> # web1 waits at uid 3 until web2 reaches uid 3 (or beyond, or leaves)
    """

    def __init__(self, hosts: list[str]) -> None:
        self._active: set[str] = set(hosts)
        self._waiting: dict[str, tuple[int, asyncio.Event]] = {}

    @property
    def active(self) -> set[str]:
        return set(self._active)

    async def wait(self, host: str, uid: int) -> None:
        if host not in self._active:
            raise RuntimeError(f"Host {host} is not part of this barrier")
        event = asyncio.Event()
        self._waiting[host] = (uid, event)
        self._release()
        await event.wait()

    def leave(self, host: str) -> None:
        self._active.discard(host)
        self._waiting.pop(host, None)
        self._release()

    def _release(self) -> None:
        if not self._waiting or len(self._waiting) < len(self._active):
            return
        lowest = min(uid for uid, _ in self._waiting.values())
        released = [host for host, (uid, _) in self._waiting.items() if uid == lowest]
        logger.debug(f"Releasing {len(released)} host(s) at step {lowest}")
        for host in released:
            _, event = self._waiting.pop(host)
            event.set()


class FreeBarrier(Barrier):
    async def wait(self, host: str, uid: int) -> None:
        return None

    def leave(self, host: str) -> None:
        return None


class Strategy(ABC):
    """Creates the barrier a batch of hosts runs under."""

    name = ""

    @abstractmethod
    def barrier(self, hosts: list[str]) -> Barrier:
        ...


class LinearStrategy(Strategy):
    name = "linear"

    def barrier(self, hosts: list[str]) -> Barrier:
        return LockStepBarrier(hosts)


class FreeStrategy(Strategy):
    name = "free"

    def barrier(self, hosts: list[str]) -> Barrier:
        return FreeBarrier()


STRATEGIES: dict[str, type[Strategy]] = {
    LinearStrategy.name: LinearStrategy,
    FreeStrategy.name: FreeStrategy,
}


def get_strategy(name: str) -> Strategy:
    """Look up a strategy by name.

    Raises:
        PlaybookError: For unknown strategy names
    """
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise PlaybookError(f"Unknown strategy: {name}", strategy=name) from None
