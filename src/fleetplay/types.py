"""Type definitions for fleetplay.

This module defines the core data types shared across the engine: the host
record built at inventory load, and the outcome vocabulary used by the task
execution engine and the run result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class Host:
    """A single managed host.

    Holds connection parameters, inventory variables, ordered group
    memberships, and runtime facts. Facts are owned by the host's own
    execution task; no other host mutates them.

    Attributes:
        name: Unique identifier for the host (e.g., "web01")
        address: Target hostname or IP address for the transport
        port: SSH port number (default: 22)
        user: Remote username, None for the transport default
        connection: "ssh" for remote, "local" for in-process execution
        python_interpreter: Interpreter path on the target
        vars: Variables declared for this host in the inventory file
        groups: Names of groups the host was added to, in declaration order
        facts: Gathered or cached facts

    Example:
        >>> host = Host(name="web01", address="192.168.1.10")
        >>> host.port
        22
        >>> host.is_local
        False
    """

    name: str
    address: str = ""
    port: int = 22
    user: str | None = None
    connection: str = "ssh"
    python_interpreter: str = "python3"
    vars: dict[str, Any] = field(default_factory=dict)
    groups: list[str] = field(default_factory=list)
    facts: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.address:
            self.address = self.name

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.connection == "local"

    @property
    def is_remote(self) -> bool:
        """Check if this host uses remote execution (SSH)."""
        return not self.is_local

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get an inventory variable by key with optional default."""
        return self.vars.get(key, default)

    def set_var(self, key: str, value: Any) -> None:
        """Set an inventory variable."""
        self.vars[key] = value

    def add_group(self, group_name: str) -> None:
        """Record membership in a group, keeping declaration order."""
        if group_name not in self.groups:
            self.groups.append(group_name)

    def connection_vars(self) -> dict[str, Any]:
        """Connection parameters exposed to templates as magic variables."""
        return {
            "inventory_hostname": self.name,
            "ansible_host": self.address,
            "ansible_port": self.port,
            "ansible_user": self.user,
            "ansible_connection": self.connection,
            "ansible_python_interpreter": self.python_interpreter,
        }


class TaskStatus(str, Enum):
    """Outcome of one task on one host."""

    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"

    @property
    def is_failure(self) -> bool:
        return self in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)


class BlockOutcome(str, Enum):
    """Overall result of a block on one host."""

    OK = "ok"
    RECOVERED = "recovered"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
