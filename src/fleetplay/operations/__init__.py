"""Built-in operations and the operation registry.

Operations are idempotent units of declarative intent. Each is a class
implementing ``async apply(args, context) -> dict`` and is registered under a
short name, also reachable as ``fleetplay.builtin.<name>``.

Usage:
    from fleetplay.operations import get_operation

    operation = get_operation("file")
    result = await operation.apply({"path": "/tmp/x", "state": "touch"}, context)
"""

from fleetplay.operations.base import (
    BUILTIN_PREFIX,
    OPERATIONS,
    ApplyContext,
    Operation,
    get_operation,
    has_operation,
    list_operations,
    register_operation,
)
from fleetplay.operations.command import CommandOperation, ShellOperation
from fleetplay.operations.control import (
    AssertOperation,
    AsyncStatusOperation,
    DebugOperation,
    FailOperation,
    IncludeVarsOperation,
    PingOperation,
    SetFactOperation,
)
from fleetplay.operations.facts import SetupOperation
from fleetplay.operations.file import CopyOperation, FileOperation, TemplateOperation
from fleetplay.operations.service import ServiceOperation

__all__ = [
    # Registry
    "BUILTIN_PREFIX",
    "OPERATIONS",
    "ApplyContext",
    "Operation",
    "get_operation",
    "has_operation",
    "list_operations",
    "register_operation",
    # Control operations
    "AssertOperation",
    "AsyncStatusOperation",
    "DebugOperation",
    "FailOperation",
    "IncludeVarsOperation",
    "PingOperation",
    "SetFactOperation",
    # Host operations
    "CommandOperation",
    "ShellOperation",
    "SetupOperation",
    "CopyOperation",
    "FileOperation",
    "TemplateOperation",
    "ServiceOperation",
]
