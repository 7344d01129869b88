"""Tests for run results and progress reporting."""

import io
import json

from rich.console import Console

from fleetplay.exceptions import ThresholdExceeded
from fleetplay.progress import (
    JsonProgressReporter,
    NullProgressReporter,
    RichProgressReporter,
    create_progress_reporter,
)
from fleetplay.results import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_UNREACHABLE,
    BlockRecord,
    HostStats,
    RunResult,
    TaskResult,
)
from fleetplay.types import BlockOutcome, TaskStatus


def sample_result() -> RunResult:
    result = RunResult()
    result.add(TaskResult("web1", "install", TaskStatus.CHANGED, {"changed": True}))
    result.add(TaskResult("web2", "install", TaskStatus.FAILED, {"failed": True, "msg": "boom"}))
    result.add(TaskResult("web2", "cleanup", TaskStatus.OK))
    result.add_block(BlockRecord("web2", "deploy", BlockOutcome.RECOVERED, ["RUNNING_MAIN", "DONE"]))
    return result


class TestHostStats:
    """Tests for per-host counters."""

    def test_record(self):
        """Test each status lands in its counter."""
        stats = HostStats()
        for status in TaskStatus:
            stats.record(TaskResult("h", "t", status))
        stats.record(TaskResult("h", "t", TaskStatus.FAILED, ignored=True))
        assert stats.to_dict() == {
            "ok": 2,
            "changed": 1,
            "failed": 1,
            "skipped": 1,
            "unreachable": 1,
            "rescued": 0,
            "ignored": 1,
        }


class TestRunResult:
    """Tests for the aggregated run result."""

    def test_lookup(self):
        """Test per-host and per-task lookups."""
        result = sample_result()
        assert [r.task for r in result.for_host("web2")] == ["install", "cleanup"]
        assert result.status_of("web1", "install") == TaskStatus.CHANGED
        assert result.status_of("web1", "missing") is None
        assert result.stats["web2"].rescued == 1

    def test_exit_codes(self):
        """Test 0 for success, 2 for failures or abort, 4 for unreachable only."""
        result = RunResult()
        assert result.exit_code == EXIT_OK
        result.unreachable_hosts.add("db1")
        assert result.exit_code == EXIT_UNREACHABLE
        result.failed_hosts.add("web1")
        assert result.exit_code == EXIT_FAILED

        aborted = RunResult(error=ThresholdExceeded(1, 2, 20))
        assert aborted.aborted
        assert aborted.exit_code == EXIT_FAILED

    def test_to_dict(self):
        """Test the JSON summary."""
        data = sample_result().to_dict()
        assert data["success"] is True
        assert data["results"][1]["status"] == "failed"
        assert data["blocks"][0]["outcome"] == "recovered"
        json.dumps(data)

    def test_tables(self):
        """Test the status and recap tables render every row."""
        result = sample_result()
        console = Console(file=io.StringIO(), width=120)
        console.print(result.status_table())
        console.print(result.recap_table())
        output = console.file.getvalue()
        assert "boom" in output
        assert "Play Recap" in output
        assert output.count("web2") >= 3


class TestJsonProgressReporter:
    """Tests for NDJSON progress events."""

    def test_events(self):
        """Test each callback emits one parseable line."""
        output = io.StringIO()
        reporter = JsonProgressReporter(output)
        result = sample_result()
        reporter.on_play_start("deploy", ["web1", "web2"])
        reporter.on_batch_start(1, 1, ["web1", "web2"])
        reporter.on_task_result(result.results[0], "+new\n")
        reporter.on_block_end(result.blocks[0])
        reporter.on_run_aborted(ThresholdExceeded(1, 2, 20))
        reporter.on_run_complete(result, 1.23456)

        events = [json.loads(line) for line in output.getvalue().splitlines()]
        assert [e["event"] for e in events] == [
            "play_start", "batch_start", "task_result", "block_end", "run_aborted", "run_complete",
        ]
        assert events[2]["host"] == "web1"
        assert events[2]["diff"] == "+new\n"
        assert events[4]["error_type"] == "ThresholdExceeded"
        assert events[5]["duration"] == 1.235


class TestRichProgressReporter:
    """Tests for the human-readable reporter."""

    def test_output(self):
        """Test task headers, statuses, diffs, and the recap."""
        console = Console(file=io.StringIO(), width=120)
        reporter = RichProgressReporter(console)
        result = sample_result()
        reporter.on_play_start("deploy", ["web1", "web2"])
        for task_result in result.results:
            reporter.on_task_result(task_result, "--- a\n+++ b\n" if task_result.changed else None)
        reporter.on_run_complete(result, 0.5)
        output = console.file.getvalue()
        assert "PLAY [deploy]" in output
        assert output.count("TASK [install]") == 1
        assert "changed: [web1]" in output
        assert "failed: [web2] boom" in output
        assert "exit status 0" in output


class TestCreateProgressReporter:
    """Tests for the reporter factory."""

    def test_formats(self):
        """Test each output format picks its reporter."""
        assert isinstance(create_progress_reporter("json", io.StringIO()), JsonProgressReporter)
        assert isinstance(create_progress_reporter("none"), NullProgressReporter)
        assert isinstance(create_progress_reporter("text", io.StringIO()), RichProgressReporter)
