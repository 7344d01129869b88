"""Exception hierarchy for fleetplay.

Every error raised by the engine derives from FleetplayError and carries an
``error_type`` classification. The executor uses the classification to decide
whether an error is retried, rescued, or recorded against the host.
"""

from typing import Any


class ErrorTypes:
    """Error classification constants."""

    INVENTORY_ERROR = "InventoryError"
    UNKNOWN_GROUP = "UnknownGroup"
    UNDEFINED_VARIABLE = "UndefinedVariable"
    TEMPLATE_ERROR = "TemplateError"
    CONNECTION_ERROR = "ConnectionError"
    HOST_UNREACHABLE = "HostUnreachable"
    OPERATION_FAILED = "OperationFailed"
    OPERATION_NOT_FOUND = "OperationNotFound"
    TIMEOUT = "Timeout"
    THRESHOLD_EXCEEDED = "ThresholdExceeded"
    HANDLER_NOT_FOUND = "HandlerNotFound"
    PLAYBOOK_ERROR = "PlaybookError"
    VAULT_ERROR = "VaultError"
    UNKNOWN = "Unknown"


class FleetplayError(Exception):
    """Base class for all fleetplay errors."""

    error_type = ErrorTypes.UNKNOWN

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error_type": self.error_type, "msg": self.message, **self.context}


class InventoryError(FleetplayError):
    """Raised for malformed inventories, including group cycles."""

    error_type = ErrorTypes.INVENTORY_ERROR


class UnknownGroupError(FleetplayError):
    """Raised in strict mode when a pattern atom matches nothing."""

    error_type = ErrorTypes.UNKNOWN_GROUP

    def __init__(self, atom: str) -> None:
        super().__init__(f"Pattern '{atom}' matched no hosts or groups", atom=atom)
        self.atom = atom


class TemplateError(FleetplayError):
    """Raised when a template cannot be rendered."""

    error_type = ErrorTypes.TEMPLATE_ERROR


class UndefinedVariableError(TemplateError):
    """Raised when a template reads a key absent from the effective variables."""

    error_type = ErrorTypes.UNDEFINED_VARIABLE

    def __init__(self, message: str, name: str | None = None) -> None:
        super().__init__(message, variable=name)
        self.name = name


class HostConnectionError(FleetplayError):
    """Transport-level failure. Always retryable up to the configured count."""

    error_type = ErrorTypes.CONNECTION_ERROR

    def __init__(self, host: str, message: str) -> None:
        super().__init__(f"{host}: {message}", host=host)
        self.host = host


class UnreachableHost(FleetplayError):
    """Raised when a transport to a host cannot be established."""

    error_type = ErrorTypes.HOST_UNREACHABLE

    def __init__(self, host: str, message: str, attempts: int = 1) -> None:
        super().__init__(
            f"Host {host} unreachable after {attempts} attempt(s): {message}",
            host=host,
            attempts=attempts,
        )
        self.host = host
        self.attempts = attempts


class OperationError(FleetplayError):
    """Raised inside an operation to report failure.

    The keyword arguments become fields of the operation's result dict.

    Example:
        raise OperationError("File not found", path="/tmp/missing.txt")
        # result: {"failed": True, "msg": "File not found", "path": "/tmp/missing.txt"}
    """

    error_type = ErrorTypes.OPERATION_FAILED

    def __init__(self, msg: str, **result_fields: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.result: dict[str, Any] = {"failed": True, "msg": msg, **result_fields}

    def __str__(self) -> str:
        return self.msg


class OperationNotFoundError(FleetplayError):
    """Raised when an operation name is not in the registry."""

    error_type = ErrorTypes.OPERATION_NOT_FOUND

    def __init__(self, name: str) -> None:
        super().__init__(f"Operation '{name}' not found", operation=name)
        self.name = name


class OperationFailed(FleetplayError):
    """A task's apply step reported failure. Subject to block rescue."""

    error_type = ErrorTypes.OPERATION_FAILED

    def __init__(self, host: str, task: str, message: str) -> None:
        super().__init__(f"{task} failed on {host}: {message}", host=host, task=task)
        self.host = host
        self.task = task


class OperationTimeout(FleetplayError):
    """An async task exceeded its wall-clock ceiling."""

    error_type = ErrorTypes.TIMEOUT

    def __init__(self, task: str, seconds: float) -> None:
        super().__init__(
            f"Task '{task}' exceeded async ceiling of {seconds}s", task=task, seconds=seconds
        )
        self.seconds = seconds


class ThresholdExceeded(FleetplayError):
    """Fatal: the failed-host fraction passed max_fail_percentage."""

    error_type = ErrorTypes.THRESHOLD_EXCEEDED

    def __init__(self, failed: int, processed: int, max_fail_percentage: float) -> None:
        percent = 100.0 * failed / processed if processed else 0.0
        super().__init__(
            f"{failed}/{processed} hosts failed ({percent:.1f}%), "
            f"exceeding max_fail_percentage={max_fail_percentage}",
            failed=failed,
            processed=processed,
            max_fail_percentage=max_fail_percentage,
        )
        self.failed = failed
        self.processed = processed
        self.max_fail_percentage = max_fail_percentage


class HandlerNotFoundError(FleetplayError):
    """Raised when a task notifies a handler name nobody declared or listens to."""

    error_type = ErrorTypes.HANDLER_NOT_FOUND

    def __init__(self, name: str) -> None:
        super().__init__(f"No handler named or listening to '{name}'", handler=name)
        self.name = name


class PlaybookError(FleetplayError):
    """Raised for malformed playbooks, roles, or task definitions."""

    error_type = ErrorTypes.PLAYBOOK_ERROR


class VaultError(FleetplayError):
    """Raised when encrypted values cannot be decrypted or encrypted."""

    error_type = ErrorTypes.VAULT_ERROR
