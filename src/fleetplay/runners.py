"""Task runner: applies one task to one host.

The runner owns everything that happens between "this host is scheduled for
this task" and "here is the TaskResult": condition evaluation, lazy argument
templating, check mode, connection retries, async/poll handling,
``changed_when``/``failed_when`` overrides, ``register``, and feeding facts
and variables back into the variable engine.
"""

import asyncio
import difflib
import itertools
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .exceptions import (
    ErrorTypes,
    FleetplayError,
    OperationError,
    OperationTimeout,
    UnreachableHost,
)
from .fact_cache import FactCache
from .operations import ApplyContext, Operation, get_operation
from .results import TaskResult
from .retry import RetryConfig, retry_connection
from .templating import LazyVars
from .transport import TransportFactory
from .types import Host, TaskStatus
from .vars import VariableManager

if TYPE_CHECKING:
    from .playbook import Play, Task

logger = logging.getLogger(__name__)


def format_diff(diff: dict[str, Any]) -> str:
    """Render an operation's before/after as a unified diff."""
    before = diff.get("before", "")
    after = diff.get("after", "")
    path = str(diff.get("path", ""))
    if isinstance(before, dict) or isinstance(after, dict):
        before = "".join(f"{k}: {v}\n" for k, v in sorted(dict(before or {}).items()))
        after = "".join(f"{k}: {v}\n" for k, v in sorted(dict(after or {}).items()))
    lines = difflib.unified_diff(
        str(before).splitlines(keepends=True),
        str(after).splitlines(keepends=True),
        fromfile=f"before: {path}",
        tofile=f"after: {path}",
    )
    return "".join(lines)


@dataclass
class AsyncJob:
    """A detached operation running in the background.

    Attributes:
        jid: Job identifier handed to the task's register variable
        host: Host name
        task: Task display name
        future: asyncio task applying the operation
        started: Monotonic start time
    """

    jid: str
    host: str
    task: str
    future: "asyncio.Task[dict[str, Any]]"
    started: float = field(default_factory=time.monotonic)

    @property
    def finished(self) -> bool:
        return self.future.done()


class JobRegistry:
    """Tracks detached async jobs for the duration of a run.

    A job that outlives its ceiling is reported as timed out but is not
    cancelled; its side effect continues and ``status`` keeps answering.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, AsyncJob] = {}
        self._ids = itertools.count(1)

    def start(self, host: str, task: str, coro: Awaitable[dict[str, Any]]) -> AsyncJob:
        jid = f"{next(self._ids)}.{int(time.time())}"
        future = asyncio.ensure_future(coro)
        job = AsyncJob(jid=jid, host=host, task=task, future=future)
        self._jobs[jid] = job
        logger.debug(f"Started async job {jid} for '{task}' on {host}")
        return job

    def get(self, jid: str) -> AsyncJob:
        if jid not in self._jobs:
            raise OperationError(f"Unknown async job: {jid}", ansible_job_id=jid)
        return self._jobs[jid]

    def status(self, jid: str) -> dict[str, Any]:
        """Current state of a job, in the shape of an operation result."""
        job = self.get(jid)
        if not job.finished:
            return {"changed": False, "ansible_job_id": jid, "started": 1, "finished": 0}

        status: dict[str, Any] = {"ansible_job_id": jid, "started": 1, "finished": 1}
        error = job.future.exception() if not job.future.cancelled() else None
        if job.future.cancelled():
            status.update({"failed": True, "msg": "Job was cancelled"})
        elif isinstance(error, OperationError):
            status.update(error.result)
        elif error is not None:
            status.update({"failed": True, "msg": str(error)})
        else:
            status.update(job.future.result())
        return status

    async def wait(self, jid: str, poll: float, ceiling: float) -> dict[str, Any]:
        """Poll a job until it finishes or its ceiling passes.

        Raises:
            OperationTimeout: When the ceiling is reached first
        """
        job = self.get(jid)
        deadline = job.started + ceiling
        while not job.finished:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OperationTimeout(job.task, ceiling)
            # asyncio.wait leaves the job running when the timeout fires
            await asyncio.wait({job.future}, timeout=min(poll, remaining))

        error = job.future.exception()
        if error is not None:
            raise error
        return job.future.result()

    def running(self) -> list[AsyncJob]:
        return [job for job in self._jobs.values() if not job.finished]

    async def collect(self) -> list[AsyncJob]:
        """Retrieve the outcome of every finished job and return the failed ones."""
        finished = [job for job in self._jobs.values() if job.finished]
        outcomes = await asyncio.gather(*(job.future for job in finished), return_exceptions=True)
        failed = []
        for job, outcome in zip(finished, outcomes):
            if isinstance(outcome, BaseException):
                logger.debug(f"Async job {job.jid} ('{job.task}' on {job.host}) failed: {outcome!r}")
                failed.append(job)
        return failed


class TaskRunner:
    """Runs one task on one host and produces a TaskResult.

    Attributes:
        variables: Variable manager supplying per-host lazy views
        transports: Factory handing out a transport per host
        retry_config: Connection retry policy
        jobs: Registry of detached async jobs
        check_mode: Run-wide check mode
        diff: Ask operations for before/after
        base_dir: Controller-side directory for relative paths
        fact_cache: Optional cache updated whenever facts are gathered
    """

    def __init__(
        self,
        variables: VariableManager,
        transports: TransportFactory,
        retry_config: RetryConfig | None = None,
        jobs: JobRegistry | None = None,
        check_mode: bool = False,
        diff: bool = False,
        base_dir: Path | None = None,
        fact_cache: FactCache | None = None,
    ) -> None:
        self.variables = variables
        self.transports = transports
        self.retry_config = retry_config or RetryConfig()
        self.jobs = jobs or JobRegistry()
        self.check_mode = check_mode
        self.diff = diff
        self.base_dir = base_dir or Path.cwd()
        self.fact_cache = fact_cache

    async def run(
        self,
        host: Host,
        task: "Task",
        play: "Play | None" = None,
        play_hosts: list[str] | None = None,
    ) -> TaskResult:
        start = time.monotonic()
        play_name = play.display_name if play is not None else ""
        lazy = self.variables.lazy_vars(host.name, play=play, task=task, play_hosts=play_hosts)

        def finish(
            status: TaskStatus,
            result: dict[str, Any],
            error_type: str | None = None,
            ignored: bool = False,
        ) -> TaskResult:
            return TaskResult(
                host=host.name,
                task=task.display_name,
                status=status,
                result=result,
                uid=task.uid,
                error_type=error_type,
                ignored=ignored,
                duration=time.monotonic() - start,
                play=play_name,
            )

        try:
            if not lazy.evaluate(task.effective_when()):
                logger.debug(f"Skipping '{task.display_name}' on {host.name}: condition false")
                result = {"changed": False, "skipped": True, "skip_reason": "Conditional result was False"}
                self._register(host, task, result)
                return finish(TaskStatus.SKIPPED, result)

            operation = get_operation(task.action)
            args = lazy.template(task.args)
            check_mode = self.check_mode if task.check_mode is None else bool(task.check_mode)
            if check_mode and not operation.supports_check_mode:
                result = {"changed": False, "skipped": True, "msg": "Operation does not support check mode"}
                return finish(TaskStatus.SKIPPED, result)

            context = ApplyContext(
                host=host,
                variables=lazy,
                transport=self.transports.create(host),
                check_mode=check_mode,
                diff=self.diff,
                base_dir=self.base_dir,
                jobs=self.jobs,
            )
            try:
                result = await retry_connection(
                    lambda: self._apply(operation, args, context, task),
                    self.retry_config,
                    host.name,
                )
            except OperationError as e:
                result = dict(e.result)
        except UnreachableHost as e:
            logger.warning(f"{host.name} unreachable during '{task.display_name}': {e}")
            result = {"unreachable": True, "msg": str(e)}
            return finish(TaskStatus.UNREACHABLE, result, ErrorTypes.HOST_UNREACHABLE)
        except OperationTimeout as e:
            result = {"failed": True, "msg": str(e), **e.context}
            self._register(host, task, result)
            return finish(
                TaskStatus.FAILED, result, e.error_type, ignored=task.ignore_errors
            )
        except FleetplayError as e:
            logger.debug(f"'{task.display_name}' failed on {host.name}: {e}")
            result = {"failed": True, **e.to_dict()}
            return finish(
                TaskStatus.FAILED, result, e.error_type, ignored=task.ignore_errors
            )
        except Exception as e:
            logger.exception(f"Unexpected error in '{task.display_name}' on {host.name}: {e}")
            result = {"failed": True, "msg": f"{type(e).__name__}: {e}"}
            return finish(
                TaskStatus.FAILED, result, ErrorTypes.UNKNOWN, ignored=task.ignore_errors
            )

        try:
            self._apply_overrides(task, result, lazy)
        except FleetplayError as e:
            result = {"failed": True, **e.to_dict()}
            return finish(TaskStatus.FAILED, result, e.error_type, ignored=task.ignore_errors)

        self._register(host, task, result)
        status = self._status(result)
        if status == TaskStatus.FAILED:
            return finish(
                status, result, ErrorTypes.OPERATION_FAILED, ignored=task.ignore_errors
            )
        self._absorb(host, result)
        return finish(status, result)

    async def _apply(
        self,
        operation: Operation,
        args: dict[str, Any],
        context: ApplyContext,
        task: "Task",
    ) -> dict[str, Any]:
        if task.async_ is None:
            return await operation.apply(args, context)

        job = self.jobs.start(context.host.name, task.display_name, operation.apply(args, context))
        if task.poll <= 0:
            return {"changed": False, "ansible_job_id": job.jid, "started": 1, "finished": 0}
        result = await self.jobs.wait(job.jid, task.poll, task.async_)
        return {**result, "ansible_job_id": job.jid}

    def _apply_overrides(self, task: "Task", result: dict[str, Any], lazy: LazyVars) -> None:
        """Evaluate changed_when/failed_when against the raw result."""
        if task.changed_when is None and task.failed_when is None:
            return
        scope = {**result, "result": result}
        if task.register:
            scope[task.register] = result
        view = lazy.new_child(scope)
        if task.changed_when is not None:
            result["changed"] = view.evaluate(task.changed_when)
        if task.failed_when is not None:
            failed = view.evaluate(task.failed_when)
            result["failed_when_result"] = failed
            if failed:
                result["failed"] = True
                result.setdefault("msg", "failed_when condition was true")
            else:
                result.pop("failed", None)

    @staticmethod
    def _status(result: dict[str, Any]) -> TaskStatus:
        if result.get("failed"):
            return TaskStatus.FAILED
        if result.get("skipped"):
            return TaskStatus.SKIPPED
        if result.get("changed"):
            return TaskStatus.CHANGED
        return TaskStatus.OK

    def _register(self, host: Host, task: "Task", result: dict[str, Any]) -> None:
        if task.register:
            self.variables.register(host.name, task.register, result)

    def _absorb(self, host: Host, result: dict[str, Any]) -> None:
        """Feed facts and variables from a successful result into the engine."""
        facts = result.get("ansible_facts")
        if facts:
            host.facts.update(facts)
            if self.fact_cache is not None:
                self.fact_cache.set(host.name, dict(host.facts))
        if result.get("set_facts"):
            self.variables.set_facts(host.name, result["set_facts"])
        if result.get("included_vars"):
            self.variables.include_vars(host.name, result["included_vars"])
