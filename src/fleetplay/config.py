"""Run configuration for fleetplay.

Options are resolved in increasing priority:

1. RunOptions defaults
2. A YAML config file (``fleetplay.yml`` in the working directory, or an
   explicit path)
3. ``FLEETPLAY_<OPTION>`` environment variables
4. Command-line flags
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import FleetplayError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "fleetplay.yml"
ENV_PREFIX = "FLEETPLAY_"


class ConfigError(FleetplayError):
    """Raised for unreadable or invalid configuration."""


@dataclass
class RunOptions:
    """Options controlling one playbook run.

    Attributes:
        forks: Maximum hosts applying a task at the same time
        strategy: Default strategy for plays that do not set one
        check: Check mode (report, do not change)
        diff: Show before/after diffs
        limit: Extra host pattern intersected with each play's hosts
        tags: Only run tasks with these tags
        skip_tags: Never run tasks with these tags
        start_at_task: Skip tasks before the first task with this name
        strict: Unknown pattern atoms raise UnknownGroupError
        hash_behaviour: "replace" or "merge" for nested mappings
        connection_retries: Retries after a connection error
        retry_delay: Initial retry backoff delay in seconds
        connect_timeout: SSH connect timeout in seconds
        fact_cache_ttl: Seconds a cached fact set stays fresh
        fact_cache_dir: Directory for the JSON fact cache; None for memory
        extra_vars: Highest-precedence variables
        vault_password_file: Passphrase file for encrypted values
    """

    forks: int = 5
    strategy: str = "linear"
    check: bool = False
    diff: bool = False
    limit: str | None = None
    tags: list[str] = field(default_factory=list)
    skip_tags: list[str] = field(default_factory=list)
    start_at_task: str | None = None
    strict: bool = False
    hash_behaviour: str = "replace"
    connection_retries: int = 3
    retry_delay: float = 1.0
    connect_timeout: float = 10.0
    fact_cache_ttl: float = 86400.0
    fact_cache_dir: str | None = None
    extra_vars: dict[str, Any] = field(default_factory=dict)
    vault_password_file: str | None = None

    def __post_init__(self) -> None:
        if self.forks < 1:
            raise ConfigError(f"forks must be at least 1, got {self.forks}")
        if self.hash_behaviour not in ("replace", "merge"):
            raise ConfigError(f"Invalid hash_behaviour: {self.hash_behaviour}")
        if self.connection_retries < 0:
            raise ConfigError("connection_retries cannot be negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML/JSON serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunOptions":
        """Create from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")
        values = {key: _coerce(key, value) for key, value in data.items()}
        return cls(**values)

    def merged(self, overrides: dict[str, Any]) -> "RunOptions":
        """A copy with non-None overrides applied."""
        data = self.to_dict()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return RunOptions.from_dict(data)


_FIELD_TYPES = {
    "forks": int,
    "connection_retries": int,
    "retry_delay": float,
    "connect_timeout": float,
    "fact_cache_ttl": float,
}
_BOOL_FIELDS = {"check", "diff", "strict"}
_LIST_FIELDS = {"tags", "skip_tags"}


def _coerce(key: str, value: Any) -> Any:
    """Convert file or environment values to the field's type."""
    if value is None:
        return None
    try:
        if key in _FIELD_TYPES:
            return _FIELD_TYPES[key](value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {key}: {value!r}") from None
    if key in _BOOL_FIELDS and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if key in _LIST_FIELDS and isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if key == "extra_vars" and not isinstance(value, dict):
        raise ConfigError("extra_vars must be a mapping")
    return value


def load_config_file(path: str | Path | None = None) -> dict[str, Any]:
    """Read a YAML config file.

    With no path, ``fleetplay.yml`` in the working directory is used if it
    exists. An explicit path that does not exist is an error.
    """
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_FILE
        if not candidate.is_file():
            return {}
        path = candidate
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}", path=str(path))

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}", path=str(path))
    logger.debug(f"Loaded configuration from {path}")
    return data


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect ``FLEETPLAY_<OPTION>`` environment variables."""
    environ = dict(os.environ) if environ is None else environ
    overrides: dict[str, Any] = {}
    for f in fields(RunOptions):
        if f.name == "extra_vars":
            continue
        value = environ.get(ENV_PREFIX + f.name.upper())
        if value is not None:
            overrides[f.name] = _coerce(f.name, value)
    return overrides


def load_options(
    config_file: str | Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> RunOptions:
    """Resolve RunOptions from file, environment, and CLI flags."""
    data = load_config_file(config_file)
    options = RunOptions.from_dict(data)
    options = options.merged(env_overrides(environ))
    if cli_overrides:
        options = options.merged(cli_overrides)
    return options
