"""Command-line interface for fleetplay."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.tree import Tree

from . import __version__
from .config import load_options
from .exceptions import FleetplayError
from .executor import PlaybookExecutor
from .fact_cache import FactCache, JsonFileFactCache, MemoryFactCache
from .host_filter import resolve_hosts
from .inventory import ALL_GROUP, Inventory, load_inventory, load_localhost
from .logging import configure_logging, get_level_from_verbosity
from .playbook import load_playbook
from .progress import create_progress_reporter
from .templating import Templar
from .vars import VariableManager
from .vault import Vault, VaultSecret, format_encrypted_string, load_yaml

logger = logging.getLogger(__name__)


def parse_extra_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Merge ``-e`` values into one mapping.

    Each value is ``@file`` (YAML or JSON), an inline YAML/JSON mapping, or
    space-separated ``key=value`` pairs. Later values win.

    Example:
        >>> parse_extra_vars(("env=prod port=8080", '{"debug": true}'))
        {'env': 'prod', 'port': '8080', 'debug': True}
    """
    result: dict[str, Any] = {}
    for value in values:
        value = value.strip()
        if value.startswith("@"):
            path = Path(value[1:])
            if not path.is_file():
                raise click.BadParameter(f"Extra vars file not found: {path}")
            try:
                data = load_yaml(path.read_text())
            except yaml.YAMLError as e:
                raise click.BadParameter(f"Invalid YAML in {path}: {e}") from e
        elif value.startswith("{"):
            try:
                data = load_yaml(value)
            except yaml.YAMLError as e:
                raise click.BadParameter(f"Invalid extra vars mapping: {e}") from e
        else:
            data = {}
            for pair in value.split():
                if "=" not in pair:
                    raise click.BadParameter(f"Expected key=value, got '{pair}'")
                key, _, raw = pair.partition("=")
                data[key] = raw
        if data is None:
            continue
        if not isinstance(data, dict):
            raise click.BadParameter(f"Extra vars must be a mapping: {value}")
        result.update(data)
    return result


def _split_tags(values: tuple[str, ...]) -> list[str] | None:
    tags = [tag.strip() for value in values for tag in value.split(",") if tag.strip()]
    return tags or None


def _load_inventory(paths: tuple[str, ...]) -> Inventory:
    """Load one inventory, or merge several in order; localhost when none."""
    if not paths:
        return load_localhost()
    if len(paths) == 1:
        return load_inventory(paths[0])

    merged = Inventory()
    for path in paths:
        inventory = load_inventory(path)
        for group in inventory.list_groups():
            merged.add_group(group.name, group.vars)
        for group in inventory.list_groups():
            for child in group.children:
                merged.add_child(group.name, child)
        for name, host in inventory.hosts.items():
            target = merged.add_host(name, groups=list(host.groups))
            target.address = host.address
            target.port = host.port
            target.user = host.user
            target.connection = host.connection
            target.python_interpreter = host.python_interpreter
            target.vars.update(host.vars)
        for name, data in inventory.group_vars_files.items():
            merged.group_vars_files.setdefault(name, {}).update(data)
        for name, data in inventory.host_vars_files.items():
            merged.host_vars_files.setdefault(name, {}).update(data)
    merged.source = Path(paths[-1])
    return merged


def _build_fact_cache(directory: str | None, ttl: float) -> FactCache:
    if directory:
        return JsonFileFactCache(directory, ttl=ttl)
    return MemoryFactCache(ttl=ttl)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """fleetplay - run playbooks across a fleet of hosts."""
    if version:
        click.echo(f"fleetplay {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("playbook", type=click.Path(exists=True, dir_okay=False))
@click.option("--inventory", "-i", multiple=True,
              help="Inventory file or script (repeatable, default: localhost)")
@click.option("--check", is_flag=True, help="Report changes without making them")
@click.option("--diff", is_flag=True, help="Show before/after diffs")
@click.option("--limit", "-l", help="Further restrict hosts with a pattern")
@click.option("--tags", "-t", multiple=True, help="Only run tasks with these tags")
@click.option("--skip-tags", multiple=True, help="Skip tasks with these tags")
@click.option("--start-at-task", help="Start at the first task with this name")
@click.option("--forks", "-f", type=int, help="Maximum hosts applying a task at once")
@click.option("--strategy", type=click.Choice(["linear", "free"]),
              help="Default strategy for plays that do not set one")
@click.option("--extra-vars", "-e", multiple=True,
              help="Extra variables: key=value, JSON/YAML mapping, or @file")
@click.option("--vault-password-file", type=click.Path(exists=True, dir_okay=False),
              help="File holding the vault passphrase")
@click.option("--strict", is_flag=True,
              help="Fail on host patterns that match nothing")
@click.option("--config", "config_file", type=click.Path(dir_okay=False),
              help="Config file (default: ./fleetplay.yml if present)")
@click.option("--format", "output_format", type=click.Choice(["text", "json", "none"]),
              default="text", help="Progress output format")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write a debug log to this file")
@click.option("--verbose", "-v", count=True, help="Increase verbosity (-v, -vv, -vvv)")
def run_playbook(
    playbook: str,
    inventory: tuple[str, ...],
    check: bool,
    diff: bool,
    limit: str | None,
    tags: tuple[str, ...],
    skip_tags: tuple[str, ...],
    start_at_task: str | None,
    forks: int | None,
    strategy: str | None,
    extra_vars: tuple[str, ...],
    vault_password_file: str | None,
    strict: bool,
    config_file: str | None,
    output_format: str,
    log_file: str | None,
    verbose: int,
) -> None:
    """Run a playbook against an inventory.

    Exit status is 0 when every host succeeded, 2 when any host failed or
    the run was aborted, and 4 when the only problems were unreachable hosts.

    Examples:
        fleetplay run site.yml -i hosts.yml

        fleetplay run site.yml -i hosts.yml --limit web --check --diff

        fleetplay run deploy.yml -i prod.yml -e version=1.4.2 -f 20
    """
    configure_logging(
        level=get_level_from_verbosity(verbose),
        log_file=log_file,
        file_level=logging.DEBUG if log_file else None,
        rich_console=output_format == "text",
    )

    try:
        options = load_options(
            config_file,
            cli_overrides={
                "check": check or None,
                "diff": diff or None,
                "limit": limit,
                "tags": _split_tags(tags),
                "skip_tags": _split_tags(skip_tags),
                "start_at_task": start_at_task,
                "forks": forks,
                "strategy": strategy,
                "strict": strict or None,
                "vault_password_file": vault_password_file,
            },
        )
        cli_vars = parse_extra_vars(extra_vars)
        if cli_vars:
            options = options.merged({"extra_vars": {**options.extra_vars, **cli_vars}})

        logger.debug(f"Resolved options: {options.to_dict()}")

        vault = None
        if options.vault_password_file:
            vault = Vault(VaultSecret.from_file(options.vault_password_file))

        inv = _load_inventory(inventory)
        book = load_playbook(playbook)
        reporter = create_progress_reporter(output_format, verbose=verbose > 0)
        executor = PlaybookExecutor(
            inv,
            options,
            reporter=reporter,
            fact_cache=_build_fact_cache(options.fact_cache_dir, options.fact_cache_ttl),
            vault=vault,
        )
        result = asyncio.run(executor.run(book))
    except FleetplayError as e:
        raise click.ClickException(e.message)

    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    sys.exit(result.exit_code)


# Inventory subcommand group
@cli.group()
def inventory() -> None:
    """Inventory inspection commands."""
    pass


@inventory.command("list")
@click.option("--inventory", "-i", "inventory_files", multiple=True, required=True,
              help="Inventory file or script")
@click.option("--limit", "-l", "pattern", default=ALL_GROUP, help="Host pattern to resolve")
@click.option("--strict", is_flag=True, help="Fail on pattern atoms that match nothing")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
def inventory_list(
    inventory_files: tuple[str, ...],
    pattern: str,
    strict: bool,
    output_format: str,
) -> None:
    """List hosts matching a pattern, with their groups.

    Examples:
        fleetplay inventory list -i hosts.yml

        fleetplay inventory list -i hosts.yml -l 'web:!staging' -f json
    """
    try:
        inv = _load_inventory(inventory_files)
        hosts = resolve_hosts(inv, pattern, strict=strict)
    except FleetplayError as e:
        raise click.ClickException(e.message)

    if output_format == "json":
        data = {
            "hosts": hosts,
            "groups": {
                group.name: inv.group_hosts(group.name) for group in inv.list_groups()
            },
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{len(hosts)} host(s) match '{pattern}':")
    for name in hosts:
        host = inv.hosts[name]
        groups = ", ".join(host.groups)
        location = "local" if host.is_local else f"{host.address}:{host.port}"
        click.echo(f"  {name} ({location}) [{groups}]")


@inventory.command("graph")
@click.option("--inventory", "-i", "inventory_files", multiple=True, required=True,
              help="Inventory file or script")
@click.option("--vars", "show_vars", is_flag=True, help="Show group and host variables")
def inventory_graph(inventory_files: tuple[str, ...], show_vars: bool) -> None:
    """Show the group hierarchy as a tree."""
    try:
        inv = _load_inventory(inventory_files)
    except FleetplayError as e:
        raise click.ClickException(e.message)

    def add_group(tree: Tree, name: str) -> None:
        group = inv.groups[name]
        node = tree.add(f"[bold]@{name}[/bold]")
        if show_vars:
            for key, value in group.vars.items():
                node.add(f"[dim]{key} = {value!r}[/dim]")
        for child in group.children:
            add_group(node, child)
        for host_name in group.hosts:
            host_node = node.add(host_name)
            if show_vars:
                for key, value in inv.hosts[host_name].vars.items():
                    host_node.add(f"[dim]{key} = {value!r}[/dim]")

    root = Tree(f"[bold]@{ALL_GROUP}[/bold]")
    for group in inv.list_groups():
        if group.name != ALL_GROUP and not group.parents:
            add_group(root, group.name)
    Console(highlight=False).print(root)


# Vars subcommand group
@cli.group()
def vars() -> None:
    """Variable inspection commands."""
    pass


@vars.command("show")
@click.argument("hostname")
@click.option("--inventory", "-i", "inventory_files", multiple=True, required=True,
              help="Inventory file or script")
@click.option("--playbook", "-p", type=click.Path(exists=True, dir_okay=False),
              help="Include the playbook's group_vars/host_vars and first play's vars")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variables")
@click.option("--vault-password-file", type=click.Path(exists=True, dir_okay=False),
              help="File holding the vault passphrase")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
def vars_show(
    hostname: str,
    inventory_files: tuple[str, ...],
    playbook: str | None,
    extra_vars: tuple[str, ...],
    vault_password_file: str | None,
    output_format: str,
) -> None:
    """Show the resolved variables of a host.

    Values are fully templated; encrypted values are shown decrypted only
    when a vault password file is given.

    Examples:
        fleetplay vars show web01 -i hosts.yml

        fleetplay vars show db01 -i hosts.yml -p site.yml --format json
    """
    try:
        inv = _load_inventory(inventory_files)
        if hostname not in inv.hosts:
            available = ", ".join(inv.hosts)
            raise click.ClickException(
                f"Host '{hostname}' not found in inventory.\nAvailable hosts: {available}"
            )
        vault = Vault(VaultSecret.from_file(vault_password_file)) if vault_password_file else None
        play = None
        group_vars: dict[str, dict[str, Any]] = {}
        host_vars: dict[str, dict[str, Any]] = {}
        if playbook:
            book = load_playbook(playbook)
            group_vars, host_vars = book.group_vars, book.host_vars
            play = book.plays[0] if book.plays else None

        manager = VariableManager(
            inv,
            extra_vars=parse_extra_vars(extra_vars),
            playbook_group_vars=group_vars,
            playbook_host_vars=host_vars,
            templar=Templar(vault),
        )
        lazy = manager.lazy_vars(hostname, play=play)
        resolved = {key: lazy[key] for key in lazy if key != "groups"}
    except FleetplayError as e:
        raise click.ClickException(e.message)

    if output_format == "json":
        click.echo(json.dumps(resolved, indent=2, default=repr))
        return

    click.echo(f"\nVariables for {hostname}:")
    for key in sorted(resolved):
        click.echo(f"  {key}: {resolved[key]!r}")


# Vault subcommand group
@cli.group()
def vault() -> None:
    """Encrypt and decrypt vault values."""
    pass


def _vault_from(password_file: str) -> Vault:
    try:
        return Vault(VaultSecret.from_file(password_file))
    except FleetplayError as e:
        raise click.ClickException(e.message)


@vault.command("encrypt-string")
@click.argument("plaintext")
@click.option("--name", "-n", default="secret", help="Variable name for the YAML output")
@click.option("--vault-password-file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="File holding the vault passphrase")
def vault_encrypt_string(plaintext: str, name: str, vault_password_file: str) -> None:
    """Encrypt a value and print it as a ``!vault`` YAML entry."""
    envelope = _vault_from(vault_password_file).encrypt(plaintext)
    click.echo(format_encrypted_string(name, envelope), nl=False)


@vault.command("decrypt-string")
@click.argument("envelope_file", type=click.File("r"), default="-")
@click.option("--vault-password-file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="File holding the vault passphrase")
def vault_decrypt_string(envelope_file: Any, vault_password_file: str) -> None:
    """Decrypt an envelope read from a file or stdin.

    Accepts either the bare envelope or a ``name: !vault |`` YAML entry.
    """
    text = envelope_file.read()
    if not Vault.is_encrypted(text):
        data = load_yaml(text)
        values = list(data.values()) if isinstance(data, dict) else []
        if len(values) != 1 or not hasattr(values[0], "envelope"):
            raise click.ClickException("Input is neither a vault envelope nor a !vault entry")
        text = values[0].envelope
    try:
        click.echo(_vault_from(vault_password_file).decrypt(text))
    except FleetplayError as e:
        raise click.ClickException(e.message)


def main() -> None:
    """Package entry point for the fleetplay command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
