"""Run result aggregation.

The run result is append-only: each host's execution task appends its own
TaskResults, so keys never collide between hosts. The result always renders
as a per-host, per-task status table plus a recap of per-host counters.
"""

from dataclasses import dataclass, field
from typing import Any

from rich.markup import escape
from rich.table import Table
from rich.text import Text

from .exceptions import FleetplayError
from .types import BlockOutcome, TaskStatus

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_UNREACHABLE = 4

STATUS_STYLES = {
    TaskStatus.OK: "green",
    TaskStatus.CHANGED: "yellow",
    TaskStatus.FAILED: "red",
    TaskStatus.SKIPPED: "cyan",
    TaskStatus.UNREACHABLE: "bold red",
}


@dataclass
class TaskResult:
    """Outcome of one task on one host.

    Attributes:
        host: Host name
        task: Task display name
        uid: Document-order position of the task in its play
        status: ok, changed, failed, skipped, or unreachable
        result: Raw result dict returned by the operation
        error_type: Classification when the task failed
        ignored: Failed but ignore_errors was set
        duration: Wall-clock seconds spent on this host
        play: Play display name
    """

    host: str
    task: str
    status: TaskStatus
    result: dict[str, Any] = field(default_factory=dict)
    uid: int = 0
    error_type: str | None = None
    ignored: bool = False
    duration: float = 0.0
    play: str = ""

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        """Failed in a way that counts against the host."""
        return self.status.is_failure and not self.ignored

    @property
    def msg(self) -> str:
        return str(self.result.get("msg", ""))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "host": self.host,
            "task": self.task,
            "play": self.play,
            "status": self.status.value,
            "changed": self.changed,
            "duration": round(self.duration, 3),
            "result": self.result,
        }
        if self.error_type:
            data["error_type"] = self.error_type
        if self.ignored:
            data["ignored"] = True
        return data


@dataclass
class HostStats:
    """Per-host counters for the recap."""

    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    rescued: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        if result.ignored:
            self.ignored += 1
        elif result.status == TaskStatus.OK:
            self.ok += 1
        elif result.status == TaskStatus.CHANGED:
            self.ok += 1
            self.changed += 1
        elif result.status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif result.status == TaskStatus.FAILED:
            self.failed += 1
        elif result.status == TaskStatus.UNREACHABLE:
            self.unreachable += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "rescued": self.rescued,
            "ignored": self.ignored,
        }


@dataclass
class BlockRecord:
    """How a block ended on one host, with its state history."""

    host: str
    block: str
    outcome: BlockOutcome
    states: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "block": self.block,
            "outcome": self.outcome.value,
            "states": list(self.states),
        }


@dataclass
class RunResult:
    """Everything a run produced.

    Attributes:
        results: TaskResults in completion order
        stats: Per-host counters
        failed_hosts: Hosts that ended failed (not recovered)
        unreachable_hosts: Hosts excluded after connection retries ran out
        blocks: Outcome of each explicit block per host
        handlers: (host, handler name) pairs in execution order
        error: Fatal error that aborted the run, e.g. ThresholdExceeded
    """

    results: list[TaskResult] = field(default_factory=list)
    stats: dict[str, HostStats] = field(default_factory=dict)
    failed_hosts: set[str] = field(default_factory=set)
    unreachable_hosts: set[str] = field(default_factory=set)
    blocks: list[BlockRecord] = field(default_factory=list)
    handlers: list[tuple[str, str]] = field(default_factory=list)
    error: FleetplayError | None = None

    def host_stats(self, host: str) -> HostStats:
        if host not in self.stats:
            self.stats[host] = HostStats()
        return self.stats[host]

    def add(self, result: TaskResult) -> None:
        self.results.append(result)
        self.host_stats(result.host).record(result)

    def add_block(self, record: BlockRecord) -> None:
        self.blocks.append(record)
        if record.outcome == BlockOutcome.RECOVERED:
            self.host_stats(record.host).rescued += 1

    @property
    def aborted(self) -> bool:
        return self.error is not None

    @property
    def exit_code(self) -> int:
        """0 on success, 2 on failed hosts or abort, 4 when only unreachable."""
        if self.aborted or self.failed_hosts:
            return EXIT_FAILED
        if self.unreachable_hosts:
            return EXIT_UNREACHABLE
        return EXIT_OK

    def is_success(self) -> bool:
        return self.exit_code == EXIT_OK

    def for_host(self, host: str) -> list[TaskResult]:
        return [r for r in self.results if r.host == host]

    def for_task(self, task: str) -> list[TaskResult]:
        return [r for r in self.results if r.task == task]

    def status_of(self, host: str, task: str) -> TaskStatus | None:
        """Last recorded status of a named task on a host."""
        for result in reversed(self.results):
            if result.host == host and result.task == task:
                return result.status
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "success": self.is_success(),
            "exit_code": self.exit_code,
            "stats": {host: stats.to_dict() for host, stats in self.stats.items()},
            "failed_hosts": sorted(self.failed_hosts),
            "unreachable_hosts": sorted(self.unreachable_hosts),
            "results": [r.to_dict() for r in self.results],
            "blocks": [b.to_dict() for b in self.blocks],
            "handlers": [{"host": h, "handler": n} for h, n in self.handlers],
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    def status_table(self) -> Table:
        """Per-host, per-task status table."""
        table = Table(title="Task Status")
        table.add_column("Host", style="bold")
        table.add_column("Task")
        table.add_column("Status")
        table.add_column("Message", overflow="fold")
        for result in self.results:
            label = "ignored" if result.ignored else result.status.value
            style = STATUS_STYLES.get(result.status, "")
            message = result.msg if result.status.is_failure else ""
            table.add_row(escape(result.host), escape(result.task), Text(label, style=style), escape(message))
        return table

    def recap_table(self) -> Table:
        """Per-host counters."""
        table = Table(title="Play Recap")
        table.add_column("Host", style="bold")
        for column in ("ok", "changed", "unreachable", "failed", "skipped", "rescued", "ignored"):
            table.add_column(column, justify="right")
        for host, stats in self.stats.items():
            counts = stats.to_dict()
            table.add_row(
                escape(host),
                *(str(counts[c]) for c in (
                    "ok", "changed", "unreachable", "failed", "skipped", "rescued", "ignored"
                )),
            )
        return table
