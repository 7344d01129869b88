"""Handler notification and flushing.

A handler is a task that runs only when notified. Notifications are
recorded per host and collapse: notifying the same handler twice before a
flush runs it once. At a flush point every triggered handler that has not
yet run on that host runs in declaration order, and each handler runs at
most once per host per run.
"""

import logging
from typing import TYPE_CHECKING

from .exceptions import HandlerNotFoundError

if TYPE_CHECKING:
    from .playbook import Task

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Per-run handler bookkeeping for one play.

    Attributes:
        handlers: Handler tasks in declaration order

    Example:
        >>> registry = HandlerRegistry([restart_nginx])
        >>> registry.notify("restart nginx", "web1")
        >>> registry.notify("restart nginx", "web1")
        >>> [h.name for h in registry.pending("web1")]
        ['restart nginx']
    """

    def __init__(self, handlers: list["Task"]) -> None:
        self.handlers = list(handlers)
        self._topics: dict[str, list[int]] = {}
        for index, handler in enumerate(self.handlers):
            names = [handler.name] if handler.name else []
            names.extend(handler.listen)
            for topic in names:
                entries = self._topics.setdefault(topic, [])
                if index not in entries:
                    entries.append(index)
        self._triggered: dict[str, set[int]] = {}
        self._executed: dict[str, set[int]] = {}

    def resolve(self, name: str) -> list["Task"]:
        """Handlers answering to a name or listen topic.

        Raises:
            HandlerNotFoundError: If no handler has that name or topic
        """
        if name not in self._topics:
            raise HandlerNotFoundError(name)
        return [self.handlers[index] for index in self._topics[name]]

    def notify(self, name: str, host: str) -> None:
        """Mark every handler answering to ``name`` as triggered for ``host``."""
        indexes = self._topics.get(name)
        if indexes is None:
            raise HandlerNotFoundError(name)
        executed = self._executed.get(host, set())
        triggered = self._triggered.setdefault(host, set())
        for index in indexes:
            if index in executed:
                logger.debug(f"Handler '{name}' already ran on {host}; ignoring notification")
                continue
            triggered.add(index)

    def is_triggered(self, name: str, host: str) -> bool:
        triggered = self._triggered.get(host, set())
        return any(index in triggered for index in self._topics.get(name, []))

    def pending(self, host: str) -> list["Task"]:
        """Triggered, not-yet-run handlers for a host in declaration order."""
        triggered = self._triggered.get(host, set())
        return [self.handlers[index] for index in sorted(triggered)]

    def mark_executed(self, handler: "Task", host: str) -> None:
        index = self.handlers.index(handler)
        self._triggered.get(host, set()).discard(index)
        self._executed.setdefault(host, set()).add(index)

    def executed(self, host: str) -> list["Task"]:
        return [self.handlers[index] for index in sorted(self._executed.get(host, set()))]
