"""Inventory management for fleetplay.

The inventory is the static host/group topology built once before a run:
hosts in insertion order, groups forming a DAG (a group may have several
parents, cycles are rejected), and the group_vars/host_vars files found next
to the inventory source.
"""

import json
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import InventoryError
from .types import Host
from .vault import load_yaml

ALL_GROUP = "all"
UNGROUPED_GROUP = "ungrouped"

# Inventory keys that map onto Host fields rather than host vars
CONNECTION_KEYS = {
    "ansible_host": "address",
    "ansible_port": "port",
    "ansible_user": "user",
    "ansible_connection": "connection",
    "ansible_python_interpreter": "python_interpreter",
}

VARS_FILE_SUFFIXES = ("", ".yml", ".yaml", ".json")


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Names of hosts directly in this group, in insertion order
        vars: Group-level variables declared in the inventory file
        children: Child group names
        parents: Parent group names

    Example:
        >>> group = HostGroup(name="webservers", vars={"http_port": 80})
        >>> group.add_host("web01")
        >>> group.hosts
        ['web01']
    """

    name: str
    hosts: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)
    parents: list[str] = field(default_factory=list)

    def add_host(self, host_name: str) -> None:
        """Add a host to this group."""
        if host_name not in self.hosts:
            self.hosts.append(host_name)

    def has_host(self, host_name: str) -> bool:
        """Check if a host is directly in this group."""
        return host_name in self.hosts


@dataclass
class Inventory:
    """Host/group index used by the pattern resolver and variable engine.

    Attributes:
        hosts: Hosts by name, in insertion order
        groups: Groups by name, in declaration order
        group_vars_files: Variables from group_vars/ next to the inventory
        host_vars_files: Variables from host_vars/ next to the inventory
        source: Path the inventory was loaded from, if any

    Example:
        >>> inventory = Inventory()
        >>> inventory.add_host("web01", groups=["webservers"])
        Host(name='web01', ...)
        >>> inventory.group_hosts("webservers")
        ['web01']
    """

    hosts: dict[str, Host] = field(default_factory=dict)
    groups: dict[str, HostGroup] = field(default_factory=dict)
    group_vars_files: dict[str, dict[str, Any]] = field(default_factory=dict)
    host_vars_files: dict[str, dict[str, Any]] = field(default_factory=dict)
    source: Path | None = None

    def __post_init__(self) -> None:
        self.add_group(ALL_GROUP)
        self.add_group(UNGROUPED_GROUP)

    def add_group(self, name: str, vars: dict[str, Any] | None = None) -> HostGroup:
        """Get or create a group, merging any variables given."""
        group = self.groups.get(name)
        if group is None:
            group = HostGroup(name=name)
            self.groups[name] = group
        if vars:
            group.vars.update(vars)
        return group

    def add_host(
        self,
        name: str,
        groups: list[str] | None = None,
        **host_data: Any,
    ) -> Host:
        """Get or create a host and add it to the given groups.

        Connection keys (ansible_host, ansible_port, ...) set Host fields;
        everything else is stored as inventory host vars.
        """
        host = self.hosts.get(name)
        if host is None:
            host = Host(name=name)
            self.hosts[name] = host
        _apply_host_data(host, host_data)

        for group_name in groups or []:
            if group_name == ALL_GROUP:
                continue
            self.add_group(group_name).add_host(name)
            host.add_group(group_name)

        ungrouped = self.groups[UNGROUPED_GROUP]
        if host.groups and host.groups != [UNGROUPED_GROUP]:
            if ungrouped.has_host(name):
                ungrouped.hosts.remove(name)
                host.groups.remove(UNGROUPED_GROUP)
        elif not host.groups:
            ungrouped.add_host(name)
            host.add_group(UNGROUPED_GROUP)
        return host

    def add_child(self, parent: str, child: str) -> None:
        """Make ``child`` a child group of ``parent``.

        Raises:
            InventoryError: If the edge would create a cycle
        """
        if child == ALL_GROUP:
            raise InventoryError("Group 'all' cannot be a child group")
        parent_group = self.add_group(parent)
        child_group = self.add_group(child)
        if parent in self.descendant_groups(child):
            raise InventoryError(
                f"Adding '{child}' under '{parent}' would create a cycle",
                parent=parent,
                child=child,
            )
        if child not in parent_group.children:
            parent_group.children.append(child)
        if parent not in child_group.parents:
            child_group.parents.append(parent)

    def get_host(self, name: str) -> Host | None:
        """Get a host by name."""
        return self.hosts.get(name)

    def list_groups(self) -> list[HostGroup]:
        """Get all groups."""
        return list(self.groups.values())

    def descendant_groups(self, name: str) -> set[str]:
        """The group itself plus every group reachable through children."""
        seen: set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            group = self.groups.get(current)
            if group is not None:
                stack.extend(group.children)
        return seen

    def group_hosts(self, name: str) -> list[str]:
        """Hosts in a group or any of its descendants, in inventory order."""
        if name == ALL_GROUP:
            return list(self.hosts)
        if name not in self.groups:
            return []
        members = self.descendant_groups(name)
        return [
            host_name
            for host_name, host in self.hosts.items()
            if members.intersection(host.groups)
        ]

    def group_depth(self, name: str) -> int:
        """Depth of a group in the DAG; 'all' is 0, parentless groups are 1."""
        if name == ALL_GROUP:
            return 0
        group = self.groups.get(name)
        if group is None or not group.parents:
            return 1
        return 1 + max(self.group_depth(parent) for parent in group.parents)

    def host_group_chain(self, host_name: str) -> list[str]:
        """Every group a host belongs to, directly or through parents.

        Ordered for variable precedence: shallower groups first, then by
        group declaration order. Later entries win on conflicts.
        """
        host = self.hosts[host_name]
        found: set[str] = set()
        stack = list(host.groups)
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            group = self.groups.get(current)
            if group is not None:
                stack.extend(group.parents)
        found.discard(ALL_GROUP)
        declared = list(self.groups)
        ordered = sorted(found, key=lambda g: (self.group_depth(g), declared.index(g)))
        return [ALL_GROUP] + ordered


def _apply_host_data(host: Host, host_data: dict[str, Any]) -> None:
    """Split a host variables dictionary into Host fields and host vars."""
    for key, value in host_data.items():
        attribute = CONNECTION_KEYS.get(key)
        if attribute == "port":
            host.port = int(value)
        elif attribute is not None:
            setattr(host, attribute, value)
        else:
            host.vars[key] = value


def load_inventory(inventory_file: str | Path, require_hosts: bool = True) -> Inventory:
    """Load inventory from a file, auto-detecting the format.

    Supports three formats:
    - Executable scripts: run with --list, parse JSON output
    - JSON files: Ansible --list format (groups with host lists + _meta.hostvars)
    - YAML files: nested ``all: children:`` or flat top-level groups

    group_vars/ and host_vars/ directories next to the file are loaded too.

    Args:
        inventory_file: Path to inventory file or executable script
        require_hosts: If True (default), raise InventoryError when no hosts
            are loaded.

    Returns:
        Inventory object with typed groups and hosts

    Example:
        >>> inventory = load_inventory("hosts.yml")
        >>> inventory = load_inventory("./ec2_inventory.py")
    """
    path = Path(inventory_file)
    if not path.exists():
        raise InventoryError(f"Inventory file not found: {path}", path=str(path))

    if os.access(path, os.X_OK) and path.suffix not in (".yml", ".yaml", ".json"):
        inventory = load_inventory_script(path, require_hosts=require_hosts)
    else:
        content = path.read_text()
        if content.lstrip().startswith("{"):
            inventory = load_inventory_json(json.loads(content), require_hosts=require_hosts)
        else:
            inventory = load_inventory_yaml(load_yaml(content), require_hosts=require_hosts)

    inventory.source = path
    inventory.group_vars_files = load_vars_dir(path.parent / "group_vars")
    inventory.host_vars_files = load_vars_dir(path.parent / "host_vars")
    return inventory


def load_inventory_yaml(data: dict[str, Any] | None, require_hosts: bool = True) -> Inventory:
    """Load inventory from parsed YAML data.

    Expected structure:

        all:
          vars:
            ntp_server: ntp.example.com
          children:
            webservers:
              hosts:
                web01:
                  ansible_host: 10.0.0.1
              children:
                canary: {}

    Top-level keys other than ``all`` are read as groups as well.
    """
    inventory = Inventory()
    for group_name, group_data in (data or {}).items():
        if isinstance(group_data, dict) or group_data is None:
            _parse_yaml_group(inventory, group_name, group_data or {}, parent=None)

    if require_hosts and not inventory.hosts:
        raise InventoryError("No hosts loaded from inventory")
    return inventory


def _parse_yaml_group(
    inventory: Inventory,
    group_name: str,
    group_data: dict[str, Any],
    parent: str | None,
) -> None:
    """Recursively add a YAML group, its hosts, vars, and children."""
    inventory.add_group(group_name)
    if parent is not None and parent != ALL_GROUP:
        inventory.add_child(parent, group_name)

    if isinstance(group_data.get("vars"), dict):
        inventory.add_group(group_name, vars=group_data["vars"])

    hosts = group_data.get("hosts") or {}
    if isinstance(hosts, list):
        hosts = {name: {} for name in hosts}
    for host_name, host_data in hosts.items():
        if not isinstance(host_data, dict):
            host_data = {}
        inventory.add_host(str(host_name), groups=[group_name], **host_data)

    children = group_data.get("children") or {}
    if isinstance(children, list):
        children = {name: {} for name in children}
    for child_name, child_data in children.items():
        _parse_yaml_group(
            inventory,
            child_name,
            child_data if isinstance(child_data, dict) else {},
            parent=group_name,
        )


def load_inventory_json(data: dict[str, Any], require_hosts: bool = True) -> Inventory:
    """Load inventory from Ansible JSON inventory format.

    Parses the JSON format produced by `ansible-inventory --list` and
    dynamic inventory scripts:

        {
          "webservers": {"hosts": ["web01", "web02"], "children": ["canary"]},
          "databases": {"hosts": ["db01"], "vars": {"db_port": 5432}},
          "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}}
        }
    """
    hostvars = data.get("_meta", {}).get("hostvars", {})
    inventory = Inventory()
    pending_children: list[tuple[str, str]] = []

    for group_name, group_data in data.items():
        if group_name == "_meta" or not isinstance(group_data, dict):
            continue

        inventory.add_group(group_name, vars=group_data.get("vars") or None)

        hosts_list = group_data.get("hosts", [])
        if isinstance(hosts_list, list):
            for host_name in hosts_list:
                host_data = hostvars.get(host_name, {})
                if not isinstance(host_data, dict):
                    host_data = {}
                inventory.add_host(host_name, groups=[group_name], **host_data)

        children = group_data.get("children", [])
        if isinstance(children, dict):
            children = list(children.keys())
        for child in children:
            pending_children.append((group_name, child))

    for parent, child in pending_children:
        if child == UNGROUPED_GROUP and parent == ALL_GROUP:
            continue
        if parent == ALL_GROUP:
            inventory.add_group(child)
        else:
            inventory.add_child(parent, child)

    # Hosts only listed under _meta still belong to the inventory
    for host_name, host_data in hostvars.items():
        if host_name not in inventory.hosts and isinstance(host_data, dict):
            inventory.add_host(host_name, **host_data)

    if require_hosts and not inventory.hosts:
        raise InventoryError("No hosts loaded from inventory")
    return inventory


def load_inventory_script(script_path: str | Path, require_hosts: bool = True) -> Inventory:
    """Run an inventory script with --list and load its JSON output.

    Raises:
        subprocess.CalledProcessError: If the script exits with a non-zero status
    """
    result = subprocess.run(
        [str(Path(script_path)), "--list"],
        capture_output=True,
        text=True,
        check=True,
    )
    return load_inventory_json(json.loads(result.stdout), require_hosts=require_hosts)


def load_localhost(interpreter: str | None = None) -> Inventory:
    """Generate a localhost-only inventory for local execution.

    Example:
        >>> inventory = load_localhost()
        >>> inventory.get_host("localhost").is_local
        True
    """
    inventory = Inventory()
    inventory.add_host(
        "localhost",
        ansible_host="127.0.0.1",
        ansible_connection="local",
        ansible_python_interpreter=interpreter or sys.executable,
    )
    return inventory


def load_vars_dir(directory: Path) -> dict[str, dict[str, Any]]:
    """Load a group_vars/ or host_vars/ directory.

    Each entry is either ``<name>.yml``/``.yaml``/``.json``/no suffix, or a
    directory ``<name>/`` whose files are merged in sorted order.

    Returns:
        Mapping of group or host name to its variables
    """
    result: dict[str, dict[str, Any]] = {}
    if not directory.is_dir():
        return result

    for entry in sorted(directory.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            merged: dict[str, Any] = {}
            for child in sorted(entry.iterdir()):
                if child.is_file() and child.suffix in VARS_FILE_SUFFIXES:
                    merged.update(_load_vars_file(child))
            result[entry.name] = merged
        elif entry.suffix in VARS_FILE_SUFFIXES:
            result.setdefault(entry.stem, {}).update(_load_vars_file(entry))
    return result


def _load_vars_file(path: Path) -> dict[str, Any]:
    data = load_yaml(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InventoryError(f"Variables file must contain a mapping: {path}", path=str(path))
    return data
