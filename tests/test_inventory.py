"""Tests for inventory loading and host pattern resolution."""

import json

import pytest

from fleetplay.exceptions import InventoryError, UnknownGroupError
from fleetplay.host_filter import (
    EXCLUDE,
    INTERSECT,
    UNION,
    PatternResolver,
    PatternTerm,
    parse_pattern,
    resolve_hosts,
    split_pattern,
)
from fleetplay.inventory import (
    Inventory,
    load_inventory,
    load_inventory_json,
    load_inventory_yaml,
    load_localhost,
)


@pytest.fixture
def fleet() -> Inventory:
    inventory = Inventory()
    inventory.add_host("w1", groups=["web"])
    inventory.add_host("w2", groups=["web", "prod", "staging"])
    inventory.add_host("w3", groups=["web", "prod"])
    inventory.add_host("d1", groups=["db", "prod"])
    inventory.add_host("lonely")
    return inventory


class TestInventoryModel:
    """Tests for building the host/group index."""

    def test_implicit_groups_exist(self):
        """Test that all and ungrouped always exist."""
        inventory = Inventory()
        assert "all" in inventory.groups
        assert "ungrouped" in inventory.groups

    def test_host_without_groups_is_ungrouped(self, fleet):
        """Test hosts added without groups land in ungrouped."""
        assert fleet.group_hosts("ungrouped") == ["lonely"]
        assert fleet.hosts["lonely"].groups == ["ungrouped"]

    def test_host_leaves_ungrouped_when_grouped(self):
        """Test adding a group later removes the host from ungrouped."""
        inventory = Inventory()
        inventory.add_host("a")
        inventory.add_host("a", groups=["web"])
        assert inventory.group_hosts("ungrouped") == []
        assert inventory.hosts["a"].groups == ["web"]

    def test_connection_keys_map_to_host_fields(self):
        """Test ansible_* connection keys set Host fields, not vars."""
        inventory = Inventory()
        host = inventory.add_host(
            "web01", ansible_host="10.0.0.1", ansible_port=2222, ansible_user="deploy", role="frontend"
        )
        assert host.address == "10.0.0.1"
        assert host.port == 2222
        assert host.user == "deploy"
        assert host.vars == {"role": "frontend"}

    def test_descendant_hosts(self):
        """Test a group includes hosts of its child groups."""
        inventory = Inventory()
        inventory.add_child("web", "canary")
        inventory.add_host("c1", groups=["canary"])
        inventory.add_host("w1", groups=["web"])
        assert inventory.group_hosts("web") == ["c1", "w1"]

    def test_cycle_rejected(self):
        """Test adding a child that closes a cycle raises InventoryError."""
        inventory = Inventory()
        inventory.add_child("a", "b")
        inventory.add_child("b", "c")
        with pytest.raises(InventoryError, match="cycle"):
            inventory.add_child("c", "a")

    def test_self_cycle_rejected(self):
        """Test a group cannot be its own child."""
        inventory = Inventory()
        with pytest.raises(InventoryError):
            inventory.add_child("a", "a")

    def test_group_chain_orders_by_depth(self):
        """Test ancestor chain is ordered shallow first."""
        inventory = Inventory()
        inventory.add_child("web", "canary")
        inventory.add_host("c1", groups=["canary"])
        assert inventory.host_group_chain("c1") == ["all", "web", "canary"]

    def test_group_depth(self):
        """Test depth of nested groups."""
        inventory = Inventory()
        inventory.add_child("web", "canary")
        assert inventory.group_depth("all") == 0
        assert inventory.group_depth("web") == 1
        assert inventory.group_depth("canary") == 2


class TestInventoryLoading:
    """Tests for YAML, JSON, and directory-based loading."""

    def test_load_nested_yaml(self):
        """Test the all: children: layout."""
        data = {
            "all": {
                "vars": {"ntp": "pool.ntp.org"},
                "children": {
                    "web": {
                        "hosts": {"w1": {"ansible_host": "10.0.0.1"}},
                        "children": {"canary": {"hosts": {"c1": None}}},
                    },
                },
            }
        }
        inventory = load_inventory_yaml(data)
        assert list(inventory.hosts) == ["w1", "c1"]
        assert inventory.groups["all"].vars == {"ntp": "pool.ntp.org"}
        assert inventory.groups["canary"].parents == ["web"]
        assert inventory.group_hosts("web") == ["w1", "c1"]

    def test_load_flat_yaml(self):
        """Test top-level groups without an all: wrapper."""
        inventory = load_inventory_yaml({"db": {"hosts": ["d1", "d2"]}})
        assert inventory.group_hosts("db") == ["d1", "d2"]

    def test_empty_yaml_rejected(self):
        """Test an inventory without hosts is an error by default."""
        with pytest.raises(InventoryError):
            load_inventory_yaml({})

    def test_load_json_list_format(self):
        """Test the --list JSON format with _meta hostvars."""
        data = {
            "web": {"hosts": ["w1"], "children": ["canary"], "vars": {"port": 80}},
            "canary": {"hosts": ["c1"]},
            "_meta": {"hostvars": {"w1": {"ansible_host": "10.0.0.1", "tier": "front"}}},
        }
        inventory = load_inventory_json(data)
        assert inventory.hosts["w1"].address == "10.0.0.1"
        assert inventory.hosts["w1"].vars == {"tier": "front"}
        assert inventory.group_hosts("web") == ["w1", "c1"]

    def test_load_file_with_vars_dirs(self, tmp_path):
        """Test group_vars/ and host_vars/ next to the inventory file."""
        (tmp_path / "hosts.yml").write_text("web:\n  hosts:\n    w1:\n")
        (tmp_path / "group_vars").mkdir()
        (tmp_path / "group_vars" / "web.yml").write_text("port: 8080\n")
        (tmp_path / "host_vars").mkdir()
        (tmp_path / "host_vars" / "w1").mkdir()
        (tmp_path / "host_vars" / "w1" / "a.yml").write_text("x: 1\n")
        (tmp_path / "host_vars" / "w1" / "b.yml").write_text("y: 2\n")

        inventory = load_inventory(tmp_path / "hosts.yml")
        assert inventory.group_vars_files == {"web": {"port": 8080}}
        assert inventory.host_vars_files == {"w1": {"x": 1, "y": 2}}

    def test_load_json_file(self, tmp_path):
        """Test JSON content is detected by its leading brace."""
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps({"db": {"hosts": ["d1"]}}))
        assert list(load_inventory(path).hosts) == ["d1"]

    def test_missing_file(self, tmp_path):
        """Test a missing inventory file raises InventoryError."""
        with pytest.raises(InventoryError, match="not found"):
            load_inventory(tmp_path / "nope.yml")

    def test_localhost(self):
        """Test the implicit localhost inventory."""
        inventory = load_localhost()
        assert list(inventory.hosts) == ["localhost"]
        assert inventory.hosts["localhost"].is_local


class TestPatternParsing:
    """Tests for pattern tokenisation."""

    def test_split_on_colon_and_comma(self):
        """Test both separators are accepted."""
        assert split_pattern("web:db,cache") == ["web", "db", "cache"]

    def test_split_keeps_subscripts(self):
        """Test colons inside subscripts do not split."""
        assert split_pattern("web[0:2]:db") == ["web[0:2]", "db"]

    def test_parse_operators(self):
        """Test & and ! prefixes become intersect and exclude."""
        assert parse_pattern("web:&prod:!w3") == [
            PatternTerm(UNION, "web"),
            PatternTerm(INTERSECT, "prod"),
            PatternTerm(EXCLUDE, "w3"),
        ]

    def test_leading_exclusion_starts_from_all(self):
        """Test a pattern starting with ! is applied to all hosts."""
        assert parse_pattern("!staging")[0] == PatternTerm(UNION, "all")


class TestPatternResolution:
    """Tests for resolving patterns to ordered host lists."""

    def test_exclusion_example(self):
        """Test web:!staging with web={w1,w2} and staging={w2}."""
        inventory = Inventory()
        inventory.add_host("w1", groups=["web"])
        inventory.add_host("w2", groups=["web", "staging"])
        assert resolve_hosts(inventory, "web:!staging") == ["w1"]

    def test_intersection_example(self):
        """Test web:&prod with web={w1,w2,w3} and prod={w2,w3}."""
        inventory = Inventory()
        inventory.add_host("w1", groups=["web"])
        inventory.add_host("w2", groups=["web", "prod"])
        inventory.add_host("w3", groups=["web", "prod"])
        assert resolve_hosts(inventory, "web:&prod") == ["w2", "w3"]

    def test_all_and_star(self, fleet):
        """Test all and * select every host in insertion order."""
        assert resolve_hosts(fleet, "all") == ["w1", "w2", "w3", "d1", "lonely"]
        assert resolve_hosts(fleet, "*") == resolve_hosts(fleet, "all")

    def test_union_is_ordered_by_inventory(self, fleet):
        """Test the result follows inventory order, not term order."""
        assert resolve_hosts(fleet, "db:w1") == ["w1", "d1"]

    def test_deterministic(self, fleet):
        """Test resolving the same pattern twice gives the same list."""
        pattern = "prod:web:!staging:&web"
        assert resolve_hosts(fleet, pattern) == resolve_hosts(fleet, pattern)

    def test_left_to_right(self, fleet):
        """Test operations apply in order: a later union re-adds hosts."""
        assert resolve_hosts(fleet, "web:!w2:w2") == ["w1", "w2", "w3"]
        assert resolve_hosts(fleet, "web:w2:!w2") == ["w1", "w3"]

    def test_glob(self, fleet):
        """Test globs match host and group names."""
        assert resolve_hosts(fleet, "w*") == ["w1", "w2", "w3"]
        assert resolve_hosts(fleet, "d?") == ["d1"]

    def test_regex(self, fleet):
        """Test ~regex atoms."""
        assert resolve_hosts(fleet, "~^w[13]$") == ["w1", "w3"]

    def test_subscripts(self, fleet):
        """Test single index and inclusive slice subscripts."""
        assert resolve_hosts(fleet, "web[0]") == ["w1"]
        assert resolve_hosts(fleet, "web[1:2]") == ["w2", "w3"]
        assert resolve_hosts(fleet, "web[-1]") == ["w3"]
        assert resolve_hosts(fleet, "web[5]") == []

    def test_unknown_atom_is_empty(self, fleet):
        """Test unknown names silently match nothing outside strict mode."""
        assert resolve_hosts(fleet, "nosuchgroup") == []

    def test_unknown_atom_strict(self, fleet):
        """Test strict mode raises UnknownGroupError."""
        with pytest.raises(UnknownGroupError) as exc_info:
            resolve_hosts(fleet, "web:nosuchgroup", strict=True)
        assert exc_info.value.atom == "nosuchgroup"

    def test_limit_intersects(self, fleet):
        """Test a limit pattern restricts the play's hosts."""
        assert resolve_hosts(fleet, "prod", limit="web") == ["w2", "w3"]

    def test_resolver_does_not_mutate(self, fleet):
        """Test resolution leaves the inventory untouched."""
        before = {name: list(group.hosts) for name, group in fleet.groups.items()}
        PatternResolver(fleet).resolve("web:&prod:!staging")
        assert {name: list(group.hosts) for name, group in fleet.groups.items()} == before
