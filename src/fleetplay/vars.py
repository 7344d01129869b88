"""Variable resolution engine.

Merges variables from 19 layered sources into one effective mapping per
host. Layers are folded in ascending precedence; a key present in a higher
layer replaces the lower value entirely unless hash merging is enabled, in
which case nested mappings merge key-wise and non-mapping values still
replace.

Resolution is a pure function of (host, layers): no layer is computed from
the resolved output of another. Templates inside values are not evaluated
here; see ``fleetplay.templating.LazyVars``.
"""

import logging
from collections.abc import Mapping
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from .inventory import ALL_GROUP, UNGROUPED_GROUP, Inventory
from .templating import LazyVars, Templar

if TYPE_CHECKING:
    from .playbook import Play, Task

logger = logging.getLogger(__name__)

HASH_REPLACE = "replace"
HASH_MERGE = "merge"


class VarLayer(IntEnum):
    """Variable sources, lowest precedence first."""

    ROLE_DEFAULTS = 1
    INVENTORY_FILE = 2
    INVENTORY_GROUP_VARS_ALL = 3
    INVENTORY_GROUP_VARS = 4
    INVENTORY_HOST_VARS = 5
    PLAYBOOK_GROUP_VARS_ALL = 6
    PLAYBOOK_GROUP_VARS = 7
    PLAYBOOK_HOST_VARS = 8
    FACTS = 9
    PLAY_VARS = 10
    PLAY_VARS_FILES = 11
    ROLE_VARS = 12
    BLOCK_VARS = 13
    TASK_VARS = 14
    INCLUDED_VARS = 15
    SET_FACTS = 16
    ROLE_PARAMS = 17
    INCLUDE_PARAMS = 18
    EXTRA_VARS = 19


def merge_hash(low: Mapping[str, Any], high: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge two mappings; ``high`` wins for non-mapping values."""
    result = dict(low)
    for key, value in high.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = merge_hash(current, value)
        else:
            result[key] = value
    return result


def combine_vars(
    low: Mapping[str, Any],
    high: Mapping[str, Any],
    hash_behaviour: str = HASH_REPLACE,
) -> dict[str, Any]:
    """Overlay ``high`` on ``low`` under the configured hash behaviour."""
    if hash_behaviour == HASH_MERGE:
        return merge_hash(low, high)
    if hash_behaviour != HASH_REPLACE:
        raise ValueError(f"Invalid hash_behaviour: {hash_behaviour}")
    result = dict(low)
    result.update(high)
    return result


def resolve_layers(
    layers: Mapping[VarLayer, Mapping[str, Any]],
    hash_behaviour: str = HASH_REPLACE,
) -> dict[str, Any]:
    """Fold layers in ascending precedence into one effective mapping.

    Example:
        >>> resolve_layers({
        ...     VarLayer.ROLE_DEFAULTS: {"port": 80, "name": "web"},
        ...     VarLayer.EXTRA_VARS: {"port": 8080},
        ... })
        {'port': 8080, 'name': 'web'}
    """
    result: dict[str, Any] = {}
    for layer in sorted(layers):
        result = combine_vars(result, layers[layer], hash_behaviour)
    return result


class VariableManager:
    """Builds per-host variable layers and resolves them.

    Owns the run-scoped, per-host mutable sources (set facts, registered
    results, included vars). Each host's entries are written only by that
    host's execution task.

    Attributes:
        inventory: Inventory supplying inventory-level layers
        extra_vars: Command-line extra vars (highest precedence)
        hash_behaviour: "replace" (default) or "merge"
        playbook_group_vars: group_vars/ found next to the playbook
        playbook_host_vars: host_vars/ found next to the playbook
        templar: Templar used for lazy views
    """

    def __init__(
        self,
        inventory: Inventory,
        extra_vars: dict[str, Any] | None = None,
        hash_behaviour: str = HASH_REPLACE,
        playbook_group_vars: dict[str, dict[str, Any]] | None = None,
        playbook_host_vars: dict[str, dict[str, Any]] | None = None,
        templar: Templar | None = None,
        check_mode: bool = False,
    ) -> None:
        self.inventory = inventory
        self.extra_vars = dict(extra_vars or {})
        self.hash_behaviour = hash_behaviour
        self.playbook_group_vars = playbook_group_vars or {}
        self.playbook_host_vars = playbook_host_vars or {}
        self.templar = templar or Templar()
        self.check_mode = check_mode
        self._set_facts: dict[str, dict[str, Any]] = {}
        self._included_vars: dict[str, dict[str, Any]] = {}

    def set_facts(self, host_name: str, facts: Mapping[str, Any]) -> None:
        """Record set_fact values for a host."""
        self._set_facts.setdefault(host_name, {}).update(facts)

    def register(self, host_name: str, name: str, result: Mapping[str, Any]) -> None:
        """Store a task result under ``name`` for a host."""
        self._set_facts.setdefault(host_name, {})[name] = dict(result)

    def include_vars(self, host_name: str, variables: Mapping[str, Any]) -> None:
        self._included_vars.setdefault(host_name, {}).update(variables)

    def host_layers(
        self,
        host_name: str,
        play: "Play | None" = None,
        task: "Task | None" = None,
    ) -> dict[VarLayer, dict[str, Any]]:
        """Collect every layer that applies to a host for a task."""
        inventory = self.inventory
        host = inventory.hosts[host_name]
        chain = inventory.host_group_chain(host_name)
        layers: dict[VarLayer, dict[str, Any]] = {}

        inventory_file = dict(host.connection_vars())
        for group_name in chain:
            inventory_file = combine_vars(
                inventory_file, inventory.groups[group_name].vars, self.hash_behaviour
            )
        layers[VarLayer.INVENTORY_FILE] = combine_vars(
            inventory_file, host.vars, self.hash_behaviour
        )
        layers[VarLayer.INVENTORY_GROUP_VARS_ALL] = inventory.group_vars_files.get(ALL_GROUP, {})
        layers[VarLayer.INVENTORY_GROUP_VARS] = self._fold_groups(
            chain, inventory.group_vars_files
        )
        layers[VarLayer.INVENTORY_HOST_VARS] = inventory.host_vars_files.get(host_name, {})
        layers[VarLayer.PLAYBOOK_GROUP_VARS_ALL] = self.playbook_group_vars.get(ALL_GROUP, {})
        layers[VarLayer.PLAYBOOK_GROUP_VARS] = self._fold_groups(chain, self.playbook_group_vars)
        layers[VarLayer.PLAYBOOK_HOST_VARS] = self.playbook_host_vars.get(host_name, {})
        layers[VarLayer.FACTS] = {**host.facts, "ansible_facts": dict(host.facts)}

        if play is not None:
            layers[VarLayer.PLAY_VARS] = play.vars
            layers[VarLayer.PLAY_VARS_FILES] = play.vars_files_data

        if task is not None:
            if task.role is not None:
                layers[VarLayer.ROLE_DEFAULTS] = task.role.defaults
                layers[VarLayer.ROLE_VARS] = task.role.vars
                layers[VarLayer.ROLE_PARAMS] = task.role.params
            block_vars: dict[str, Any] = {}
            for block in task.block_chain():
                block_vars = combine_vars(block_vars, block.vars, self.hash_behaviour)
            layers[VarLayer.BLOCK_VARS] = block_vars
            layers[VarLayer.TASK_VARS] = task.vars
            layers[VarLayer.INCLUDE_PARAMS] = task.include_params

        layers[VarLayer.INCLUDED_VARS] = self._included_vars.get(host_name, {})
        layers[VarLayer.SET_FACTS] = self._set_facts.get(host_name, {})
        layers[VarLayer.EXTRA_VARS] = self.extra_vars
        return layers

    def _fold_groups(
        self,
        chain: list[str],
        source: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        # Equal-tier conflicts: later (deeper, then later-declared) group wins
        result: dict[str, Any] = {}
        for group_name in chain:
            if group_name == ALL_GROUP:
                continue
            result = combine_vars(result, source.get(group_name, {}), self.hash_behaviour)
        return result

    def get_vars(
        self,
        host_name: str,
        play: "Play | None" = None,
        task: "Task | None" = None,
        play_hosts: list[str] | None = None,
    ) -> dict[str, Any]:
        """Effective (untemplated) variables for a host, plus magic variables.

        Magic variables replace every layer except extra vars.
        """
        layers = self.host_layers(host_name, play=play, task=task)
        extra_vars = layers.pop(VarLayer.EXTRA_VARS, {})
        effective = resolve_layers(layers, self.hash_behaviour)
        effective.update(self._magic_vars(host_name, play_hosts))
        return combine_vars(effective, extra_vars, self.hash_behaviour)

    def lazy_vars(
        self,
        host_name: str,
        play: "Play | None" = None,
        task: "Task | None" = None,
        play_hosts: list[str] | None = None,
    ) -> LazyVars:
        """Effective variables wrapped for on-demand templating."""
        return LazyVars(
            self.get_vars(host_name, play=play, task=task, play_hosts=play_hosts),
            self.templar,
        )

    def _magic_vars(self, host_name: str, play_hosts: list[str] | None) -> dict[str, Any]:
        inventory = self.inventory
        host = inventory.hosts[host_name]
        return {
            "inventory_hostname": host_name,
            "group_names": sorted(g for g in host.groups if g != UNGROUPED_GROUP),
            "groups": {name: inventory.group_hosts(name) for name in inventory.groups},
            "play_hosts": list(play_hosts or []),
            "ansible_check_mode": self.check_mode,
        }
