"""Shared fixtures and test-only operations."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from fleetplay.exceptions import HostConnectionError, OperationError
from fleetplay.inventory import Inventory
from fleetplay.operations import ApplyContext, Operation, register_operation
from fleetplay.playbook import Play, PlaybookLoader
from fleetplay.vault import load_yaml


@register_operation("probe")
class ProbeOperation(Operation):
    """Reports, fails, or drops the connection depending on the host.

    Args:
        changed: Report a change
        fail_on: Host names on which the operation fails
        unreachable_on: Host names on which the connection is refused
        sleep: Seconds to sleep before returning
        label: Echoed back in the result
    """

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        host = context.host.name
        if host in (args.get("unreachable_on") or []):
            raise HostConnectionError(host, "Connection refused")
        if host in (args.get("fail_on") or []):
            raise OperationError("probe failed", host=host)
        if args.get("sleep"):
            await asyncio.sleep(float(args["sleep"]))
        return {"changed": bool(args.get("changed", False)), "label": args.get("label")}


@register_operation("nocheck")
class NoCheckOperation(Operation):
    """An operation without check mode support."""

    supports_check_mode = False

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        return {"changed": True}


def local_inventory(groups: dict[str, list[str]] | None = None, hosts: list[str] | None = None) -> Inventory:
    """Inventory of local-connection hosts, in the order given."""
    inventory = Inventory()
    for name in hosts or []:
        inventory.add_host(name, ansible_connection="local")
    for group, members in (groups or {}).items():
        for name in members:
            inventory.add_host(name, groups=[group], ansible_connection="local")
    return inventory


def make_play(text: str, base_dir: Path | None = None) -> Play:
    """Parse one play from YAML text."""
    loader = PlaybookLoader(base_dir or Path.cwd())
    return loader.parse_play(load_yaml(text))


@pytest.fixture
def six_hosts() -> Inventory:
    return local_inventory(hosts=[f"h{i}" for i in range(1, 7)])


@pytest.fixture
def two_hosts() -> Inventory:
    return local_inventory(hosts=["h1", "h2"])
