"""Logging helpers for fleetplay.

- ``configure_logging``: console handler (plain or rich) plus an optional
  file handler, with the format chosen by level
- ``TRACE``: a level below DEBUG for per-step scheduling detail
- verbosity mapping for ``-v``/``-vv``/``-vvv``
- ``StructuredLogger``: appends ``key=value`` context (play, host, task) to
  every message
- ``log_performance``: times a scope and logs its duration
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
RICH_FORMAT = "[%(name)s] %(message)s"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Map a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(max(verbosity, 0), 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Map a level name such as "debug" to a logging level.

    Raises:
        ValueError: If the name is not a known level
    """
    level = LEVEL_NAMES.get(level_name.lower())
    if level is None:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level


def _console_format(level: int) -> str:
    if level <= TRACE:
        return TRACE_FORMAT
    if level <= logging.DEBUG:
        return DEBUG_FORMAT
    return DEFAULT_FORMAT


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | Path | None = None,
    file_level: int | None = None,
    rich_console: bool = False,
) -> None:
    """Install console (and optional file) handlers on the root logger.

    Args:
        level: Console level
        log_file: Optional path for a file log; parent directories are created
        file_level: Level for the file handler (defaults to ``level``)
        rich_console: Render console records through rich on stderr

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/fleetplay.log",
        ...                   file_level=logging.DEBUG)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler: logging.Handler
    if rich_console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=level <= logging.DEBUG,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter(RICH_FORMAT))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(_console_format(level)))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)


def _with_context(message: str, context: dict[str, Any]) -> str:
    if not context:
        return message
    return f"{message} ({', '.join(f'{k}={v}' for k, v in context.items())})"


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time a scope and log how long it took.

    Args:
        logger: Logger to write to
        operation: What is being timed
        level: Log level
        threshold: Only log when the scope took at least this many seconds
        **context: key=value pairs appended to the message

    Example:
        >>> with log_performance(logger, "Play 'deploy'", hosts=12):
        ...     await executor.run_play(play)
        INFO [fleetplay.executor] Play 'deploy' completed in 4.210s (hosts=12)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        if threshold is None or duration >= threshold:
            logger.log(level, _with_context(f"{operation} completed in {duration:.3f}s", context))


class StructuredLogger:
    """A logger that appends bound ``key=value`` context to each message.

    Example:
        >>> log = StructuredLogger("fleetplay.executor", play="deploy")
        >>> log.bind(host="web1").info("Task started", task="install")
        INFO [fleetplay.executor] Task started (play=deploy, host=web1, task=install)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = dict(context)

    def bind(self, **context: Any) -> "StructuredLogger":
        """A new logger sharing the name with extra context."""
        bound = StructuredLogger(self.logger.name, **self.context)
        bound.context.update(context)
        return bound

    def log(self, level: int, message: str, **extra: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, _with_context(message, {**self.context, **extra}))

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self.log(logging.ERROR, message, **extra)

    @contextmanager
    def performance(
        self,
        operation: str,
        level: int = logging.INFO,
        threshold: float | None = None,
        **context: Any,
    ) -> Generator[None, None, None]:
        """``log_performance`` with this logger's context."""
        with log_performance(
            self.logger, operation, level, threshold, **{**self.context, **context}
        ):
            yield


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Shorthand for ``StructuredLogger(name, **context)``."""
    return StructuredLogger(name, **context)
