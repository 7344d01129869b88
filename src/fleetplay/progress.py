"""Progress reporting for fleetplay runs.

Reporters receive callbacks as the executor advances: play and batch
starts, every task result (with a rendered diff when diff mode is on),
block outcomes, and the final run result.

- NullProgressReporter: discards everything (library use, tests)
- JsonProgressReporter: NDJSON events on a stream
- RichProgressReporter: per-result lines, diffs, and the final status and
  recap tables rendered with rich
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax

from .exceptions import FleetplayError
from .results import STATUS_STYLES, BlockRecord, RunResult, TaskResult


@dataclass
class ProgressEvent:
    """One reporter event.

    Attributes:
        event_type: play_start, batch_start, task_result, block_end,
            run_aborted, run_complete
        host: Host name, or "*" for run-wide events
        timestamp: ISO-8601 UTC time
        details: Event-specific fields
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        data = {"event": self.event_type, "host": self.host, "timestamp": self.timestamp}
        data.update(self.details)
        return data

    def to_json(self) -> str:
        """NDJSON line."""
        return json.dumps(self.to_dict(), default=str)


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_play_start(self, play: str, hosts: list[str]) -> None:
        ...

    @abstractmethod
    def on_batch_start(self, index: int, total: int, hosts: list[str]) -> None:
        ...

    @abstractmethod
    def on_task_result(self, result: TaskResult, diff: str | None = None) -> None:
        ...

    @abstractmethod
    def on_block_end(self, record: BlockRecord) -> None:
        ...

    @abstractmethod
    def on_run_aborted(self, error: FleetplayError) -> None:
        ...

    @abstractmethod
    def on_run_complete(self, result: RunResult, duration: float) -> None:
        ...


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        pass

    def on_batch_start(self, index: int, total: int, hosts: list[str]) -> None:
        pass

    def on_task_result(self, result: TaskResult, diff: str | None = None) -> None:
        pass

    def on_block_end(self, record: BlockRecord) -> None:
        pass

    def on_run_aborted(self, error: FleetplayError) -> None:
        pass

    def on_run_complete(self, result: RunResult, duration: float) -> None:
        pass


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        self.output = output or sys.stderr

    def _emit(self, event_type: str, host: str = "*", **details: Any) -> None:
        event = ProgressEvent(
            event_type=event_type,
            host=host,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details,
        )
        print(event.to_json(), file=self.output, flush=True)

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self._emit("play_start", play=play, hosts=hosts)

    def on_batch_start(self, index: int, total: int, hosts: list[str]) -> None:
        self._emit("batch_start", batch=index, batches=total, hosts=hosts)

    def on_task_result(self, result: TaskResult, diff: str | None = None) -> None:
        details = result.to_dict()
        details.pop("host")
        if diff:
            details["diff"] = diff
        self._emit("task_result", result.host, **details)

    def on_block_end(self, record: BlockRecord) -> None:
        self._emit(
            "block_end", record.host, block=record.block,
            outcome=record.outcome.value, states=record.states,
        )

    def on_run_aborted(self, error: FleetplayError) -> None:
        self._emit("run_aborted", **error.to_dict())

    def on_run_complete(self, result: RunResult, duration: float) -> None:
        self._emit(
            "run_complete",
            exit_code=result.exit_code,
            duration=round(duration, 3),
            stats={host: stats.to_dict() for host, stats in result.stats.items()},
        )


class RichProgressReporter(ProgressReporter):
    """Human-readable progress with rich."""

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose
        self._last_task: str | None = None

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self._last_task = None
        self.console.rule(f"[bold]PLAY {escape('[' + play + ']')}[/bold]")
        if not hosts:
            self.console.print("[yellow]skipping: no hosts matched[/yellow]")

    def on_batch_start(self, index: int, total: int, hosts: list[str]) -> None:
        if total > 1:
            self.console.print(f"[dim]batch {index}/{total}: {', '.join(hosts)}[/dim]")

    def on_task_result(self, result: TaskResult, diff: str | None = None) -> None:
        if result.task != self._last_task:
            self._last_task = result.task
            self.console.print(f"\n[bold]TASK {escape('[' + result.task + ']')}[/bold]")
        style = STATUS_STYLES.get(result.status, "")
        label = escape(f"{result.status.value}: [{result.host}]")
        if result.ignored:
            label += " (ignored)"
        line = f"[{style}]{label}[/{style}]"
        if result.status.is_failure and result.msg:
            line += " " + escape(result.msg)
        elif self.verbose and result.result:
            line += " => " + escape(json.dumps(result.result, default=str))
        self.console.print(line, highlight=False)
        if diff:
            self.console.print(Syntax(diff, "diff", theme="ansi_dark"))

    def on_block_end(self, record: BlockRecord) -> None:
        if self.verbose:
            self.console.print(
                f"[dim]block '{record.block}' on {record.host}: "
                f"{record.outcome.value} ({' -> '.join(record.states)})[/dim]"
            )

    def on_run_aborted(self, error: FleetplayError) -> None:
        self.console.print(f"[bold red]ABORTED: {escape(error.message)}[/bold red]")

    def on_run_complete(self, result: RunResult, duration: float) -> None:
        self.console.print()
        self.console.print(result.status_table())
        self.console.print(result.recap_table())
        self.console.print(f"[dim]finished in {duration:.2f}s, exit status {result.exit_code}[/dim]")


def create_progress_reporter(
    output_format: str = "text",
    output: Any = None,
    verbose: bool = False,
) -> ProgressReporter:
    """Build the reporter for an output format: "text", "json", or "none"."""
    if output_format == "json":
        return JsonProgressReporter(output)
    if output_format == "none":
        return NullProgressReporter()
    console = Console(file=output) if output is not None else Console()
    return RichProgressReporter(console, verbose=verbose)
