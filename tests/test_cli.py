"""Test CLI functionality."""

import json
import logging

import click
import pytest
from click.testing import CliRunner

from fleetplay import __version__
from fleetplay.cli import cli, parse_extra_vars

INVENTORY = """
all:
  vars:
    ntp: pool.ntp.org
  children:
    web:
      vars:
        port: 8080
      hosts:
        web1:
          ansible_connection: local
        web2:
          ansible_connection: local
    db:
      hosts:
        db1:
          ansible_connection: local
"""


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def inventory_file(tmp_path):
    path = tmp_path / "hosts.yml"
    path.write_text(INVENTORY)
    return str(path)


@pytest.fixture
def password_file(tmp_path):
    path = tmp_path / "vault-pass"
    path.write_text("correct horse\n")
    return str(path)


def write_playbook(tmp_path, body):
    path = tmp_path / "site.yml"
    path.write_text(body)
    return str(path)


def test_cli_version():
    """Test CLI version output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_help():
    """Test CLI help output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "inventory", "vars", "vault"):
        assert command in result.output


def test_cli_run_help():
    """Test run command help output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", "--help"])
    assert result.exit_code == 0
    assert "--inventory" in result.output
    assert "--start-at-task" in result.output


def test_cli_run_missing_playbook(tmp_path):
    """Test a missing playbook is a usage error."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(tmp_path / "nope.yml")])
    assert result.exit_code == 2


class TestParseExtraVars:
    """Tests for -e parsing."""

    def test_key_value(self):
        """Test space-separated key=value pairs."""
        assert parse_extra_vars(("env=prod port=8080",)) == {"env": "prod", "port": "8080"}

    def test_inline_mapping(self):
        """Test inline JSON keeps types."""
        assert parse_extra_vars(('{"debug": true, "n": 3}',)) == {"debug": True, "n": 3}

    def test_file(self, tmp_path):
        """Test @file loads YAML."""
        path = tmp_path / "vars.yml"
        path.write_text("region: eu\n")
        assert parse_extra_vars((f"@{path}",)) == {"region": "eu"}

    def test_later_wins(self):
        """Test later values override earlier ones."""
        assert parse_extra_vars(("a=1", "a=2")) == {"a": "2"}

    def test_errors(self, tmp_path):
        """Test malformed values raise BadParameter."""
        with pytest.raises(click.BadParameter):
            parse_extra_vars(("novalue",))
        with pytest.raises(click.BadParameter):
            parse_extra_vars((f"@{tmp_path / 'missing.yml'}",))
        with pytest.raises(click.BadParameter):
            parse_extra_vars(("{",))


class TestRunCommand:
    """Tests for fleetplay run."""

    def test_success(self, tmp_path, inventory_file):
        """Test a passing playbook exits 0."""
        playbook = write_playbook(tmp_path, "- hosts: web\n  tasks:\n    - {name: ping, ping: {}}\n")
        runner = CliRunner()
        result = runner.invoke(cli, ["run", playbook, "-i", inventory_file, "--format", "none"])
        assert result.exit_code == 0, result.output

    def test_failure_exit_code(self, tmp_path, inventory_file):
        """Test a failing host exits 2."""
        playbook = write_playbook(tmp_path, """
- hosts: all
  tasks:
    - name: only db fails
      fail:
        msg: broken
      when: "inventory_hostname == 'db1'"
""")
        runner = CliRunner()
        result = runner.invoke(cli, ["run", playbook, "-i", inventory_file, "--format", "none"])
        assert result.exit_code == 2

    def test_json_summary(self, tmp_path, inventory_file):
        """Test --format json prints the run summary with extra vars applied."""
        playbook = write_playbook(tmp_path, """
- hosts: web
  tasks:
    - name: show
      debug:
        msg: "{{ release }} on {{ port }}"
""")
        runner = CliRunner()
        result = runner.invoke(cli, [
            "run", playbook, "-i", inventory_file, "--format", "json",
            "-e", "release=1.4", "--limit", "web1",
        ])
        assert result.exit_code == 0, result.output
        summary = json.loads(result.output[result.output.index("{\n"):])
        assert summary["success"] is True
        assert [r["host"] for r in summary["results"]] == ["web1"]
        assert summary["results"][0]["result"]["msg"] == "1.4 on 8080"

    def test_unknown_start_at_task(self, tmp_path, inventory_file):
        """Test a bad --start-at-task is reported as an error."""
        playbook = write_playbook(tmp_path, "- hosts: web\n  tasks:\n    - {name: ping, ping: {}}\n")
        runner = CliRunner()
        result = runner.invoke(cli, [
            "run", playbook, "-i", inventory_file, "--format", "none", "--start-at-task", "nope",
        ])
        assert result.exit_code == 1
        assert "nope" in result.output


class TestInventoryCommands:
    """Tests for fleetplay inventory."""

    def test_list_json(self, inventory_file):
        """Test pattern resolution output as JSON."""
        runner = CliRunner()
        result = runner.invoke(cli, ["inventory", "list", "-i", inventory_file, "-l", "all:!db", "-f", "json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["hosts"] == ["web1", "web2"]
        assert data["groups"]["web"] == ["web1", "web2"]

    def test_list_text(self, inventory_file):
        """Test the text listing."""
        runner = CliRunner()
        result = runner.invoke(cli, ["inventory", "list", "-i", inventory_file])
        assert result.exit_code == 0
        assert "3 host(s) match 'all'" in result.output
        assert "web1 (local) [web]" in result.output

    def test_list_strict(self, inventory_file):
        """Test --strict turns unknown atoms into an error."""
        runner = CliRunner()
        result = runner.invoke(cli, ["inventory", "list", "-i", inventory_file, "-l", "ghosts", "--strict"])
        assert result.exit_code == 1
        assert "ghosts" in result.output

    def test_graph(self, inventory_file):
        """Test the group tree."""
        runner = CliRunner()
        result = runner.invoke(cli, ["inventory", "graph", "-i", inventory_file, "--vars"])
        assert result.exit_code == 0
        assert "@web" in result.output
        assert "port = 8080" in result.output


class TestVarsCommand:
    """Tests for fleetplay vars show."""

    def test_show_json(self, inventory_file):
        """Test resolved variables with extra vars on top."""
        runner = CliRunner()
        result = runner.invoke(cli, [
            "vars", "show", "web1", "-i", inventory_file, "-e", "port=9090", "-f", "json",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["port"] == "9090"
        assert data["ntp"] == "pool.ntp.org"
        assert data["inventory_hostname"] == "web1"
        assert data["group_names"] == ["web"]

    def test_unknown_host(self, inventory_file):
        """Test an unknown host name is an error."""
        runner = CliRunner()
        result = runner.invoke(cli, ["vars", "show", "ghost", "-i", inventory_file])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestVaultCommands:
    """Tests for fleetplay vault."""

    def test_round_trip(self, password_file):
        """Test encrypt-string output decrypts back to the plaintext."""
        runner = CliRunner()
        encrypted = runner.invoke(cli, [
            "vault", "encrypt-string", "s3cret", "--name", "db_pass", "--vault-password-file", password_file,
        ])
        assert encrypted.exit_code == 0
        assert encrypted.output.startswith("db_pass: !vault |")

        decrypted = runner.invoke(
            cli, ["vault", "decrypt-string", "--vault-password-file", password_file], input=encrypted.output
        )
        assert decrypted.exit_code == 0, decrypted.output
        assert decrypted.output.strip() == "s3cret"

    def test_wrong_password(self, tmp_path, password_file):
        """Test decrypting with the wrong passphrase fails cleanly."""
        runner = CliRunner()
        encrypted = runner.invoke(cli, [
            "vault", "encrypt-string", "s3cret", "--vault-password-file", password_file,
        ])
        other = tmp_path / "other-pass"
        other.write_text("wrong\n")
        result = runner.invoke(
            cli, ["vault", "decrypt-string", "--vault-password-file", str(other)], input=encrypted.output
        )
        assert result.exit_code == 1
        assert "wrong passphrase" in result.output
