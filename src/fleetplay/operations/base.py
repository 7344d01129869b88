"""Operation interface and registry.

Every operation implements one fixed contract::

    async def apply(self, args, context) -> dict

and returns a result dict (``changed``, ``msg``, optional ``diff``, ``skipped``
and operation-specific fields). Failures are raised as OperationError, whose
keyword arguments become result fields. Operations are looked up by name in
a registry populated at import time through ``register_operation``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, ClassVar

from ..exceptions import OperationNotFoundError
from ..templating import LazyVars
from ..transport import Transport
from ..types import Host

if TYPE_CHECKING:
    from ..runners import JobRegistry

BUILTIN_PREFIX = "fleetplay.builtin."


@dataclass
class ApplyContext:
    """Everything an operation may use while applying.

    Attributes:
        host: Target host
        variables: Lazy effective variables for the host
        transport: Transport bound to the host
        check_mode: Report what would change without mutating
        diff: Include before/after in the result when available
        base_dir: Directory relative paths on the controller resolve against
        jobs: Registry of detached async jobs
    """

    host: Host
    variables: LazyVars
    transport: Transport
    check_mode: bool = False
    diff: bool = False
    base_dir: Path = field(default_factory=Path.cwd)
    jobs: "JobRegistry | None" = None

    def resolve_path(self, path: str) -> Path:
        """Resolve a controller-side path against base_dir."""
        p = Path(path)
        return p if p.is_absolute() else self.base_dir / p


class Operation(ABC):
    """Base class for idempotent operations.

    Applying the same operation twice with unchanged inputs must not report
    ``changed`` on the second call.
    """

    name: ClassVar[str] = ""
    supports_check_mode: ClassVar[bool] = True

    @abstractmethod
    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        """Bring the host to the desired state described by ``args``."""


OperationClass = type[Operation]

OPERATIONS: dict[str, OperationClass] = {}


def register_operation(name: str) -> Callable[[OperationClass], OperationClass]:
    """Class decorator adding an operation to the registry.

    The operation is reachable by its short name and by
    ``fleetplay.builtin.<name>``.

    Example:
        @register_operation("sysctl")
        class SysctlOperation(Operation):
            async def apply(self, args, context):
                ...
    """

    def decorator(cls: OperationClass) -> OperationClass:
        cls.name = name
        OPERATIONS[name] = cls
        return cls

    return decorator


def get_operation(name: str) -> Operation:
    """Instantiate an operation by short name or builtin FQCN.

    Raises:
        OperationNotFoundError: If nothing is registered under that name
    """
    if name.startswith(BUILTIN_PREFIX):
        name = name[len(BUILTIN_PREFIX):]
    cls = OPERATIONS.get(name)
    if cls is None:
        raise OperationNotFoundError(name)
    return cls()


def has_operation(name: str) -> bool:
    if name.startswith(BUILTIN_PREFIX):
        name = name[len(BUILTIN_PREFIX):]
    return name in OPERATIONS


def list_operations() -> list[str]:
    """List all registered operation short names."""
    return sorted(OPERATIONS)
