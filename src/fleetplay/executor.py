"""Playbook execution orchestration for fleetplay.

For each play the executor resolves the target hosts, splits them into
serial batches, and runs every batch under the play's strategy with one
asyncio task per host. Concurrency inside a batch is bounded by ``forks``.
Failures are tracked per play: when the failed fraction of hosts processed
so far passes ``max_fail_percentage`` the run stops starting new steps and
never starts the remaining batches.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .blocks import BlockRunner, RunAborted
from .config import RunOptions
from .exceptions import HandlerNotFoundError, PlaybookError, ThresholdExceeded
from .fact_cache import FactCache
from .handlers import HandlerRegistry
from .host_filter import resolve_hosts
from .inventory import Inventory
from .logging import StructuredLogger
from .playbook import Block, Play, Playbook, Task
from .progress import NullProgressReporter, ProgressReporter
from .results import BlockRecord, RunResult, TaskResult
from .retry import RetryConfig
from .runners import JobRegistry, TaskRunner, format_diff
from .strategy import Barrier, Strategy, get_strategy
from .templating import Templar
from .transport import TransportFactory
from .types import BlockOutcome, Host, TaskStatus
from .vars import VariableManager
from .vault import Vault

logger = logging.getLogger(__name__)

GATHER_FACTS_TASK = "Gathering Facts"


def task_matches_tags(
    tags: set[str],
    only_tags: list[str] | None = None,
    skip_tags: list[str] | None = None,
) -> bool:
    """Decide whether a task with ``tags`` runs under --tags/--skip-tags.

    ``always`` runs unless skipped by name, ``never`` runs only when one of
    the task's other tags is requested, ``tagged``/``untagged`` match tasks
    with or without tags, and ``all`` matches everything not ``never``.
    """
    only = set(only_tags or ["all"])
    skip = set(skip_tags or [])
    own = tags - {"always", "never"}

    if "always" in tags:
        selected = True
    elif "never" in tags:
        selected = bool(own & only)
    elif "all" in only:
        selected = True
    else:
        selected = (
            bool(tags & only)
            or ("tagged" in only and bool(tags))
            or ("untagged" in only and not tags)
        )
    if not selected:
        return False

    if "always" in tags and "always" not in skip:
        return True
    if "all" in skip:
        return False
    if tags & skip:
        return False
    if "tagged" in skip and tags:
        return False
    if "untagged" in skip and not tags:
        return False
    return True


@dataclass
class PlayState:
    """Mutable bookkeeping for one play.

    Attributes:
        play: The play being run
        handlers: Handler registry for the play
        selected: uids of tasks that passed tag and start-at filtering
        failed: Hosts of this play that failed or became unreachable
        processed: Hosts in batches that already finished
        batch_size: Size of the batch in flight
        aborted: Set once the failure threshold is exceeded
    """

    play: Play
    handlers: HandlerRegistry
    selected: set[int] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    processed: int = 0
    batch_size: int = 0
    aborted: bool = False


class PlaybookExecutor:
    """Runs playbooks against an inventory.

    Attributes:
        inventory: Hosts and groups
        options: Run options (forks, check, diff, tags, ...)
        reporter: Progress reporter
        fact_cache: Caller-owned fact cache, consulted before gathering
        transports: Transport factory, one transport per host

    Example:
        >>> executor = PlaybookExecutor(inventory, RunOptions(forks=10))
        >>> result = await executor.run(load_playbook("site.yml"))
        >>> result.exit_code
        0
    """

    def __init__(
        self,
        inventory: Inventory,
        options: RunOptions | None = None,
        reporter: ProgressReporter | None = None,
        fact_cache: FactCache | None = None,
        vault: Vault | None = None,
        transports: TransportFactory | None = None,
    ) -> None:
        self.inventory = inventory
        self.options = options or RunOptions()
        self.reporter = reporter or NullProgressReporter()
        self.fact_cache = fact_cache
        self.templar = Templar(vault)
        self.transports = transports or TransportFactory(
            connect_timeout=self.options.connect_timeout
        )
        self.retry_config = RetryConfig(
            max_attempts=self.options.connection_retries,
            initial_delay=self.options.retry_delay,
        )
        self.jobs = JobRegistry()
        self.log = StructuredLogger(__name__)
        self._semaphore = asyncio.Semaphore(self.options.forks)

    def _build_runner(self, base_dir: Path, group_vars: dict, host_vars: dict) -> None:
        self.variables = VariableManager(
            self.inventory,
            extra_vars=self.options.extra_vars,
            hash_behaviour=self.options.hash_behaviour,
            playbook_group_vars=group_vars,
            playbook_host_vars=host_vars,
            templar=self.templar,
            check_mode=self.options.check,
        )
        self.runner = TaskRunner(
            self.variables,
            self.transports,
            retry_config=self.retry_config,
            jobs=self.jobs,
            check_mode=self.options.check,
            diff=self.options.diff,
            base_dir=base_dir,
            fact_cache=self.fact_cache,
        )

    async def run(self, playbook: Playbook | list[Play]) -> RunResult:
        """Run every play in order and return the aggregated result.

        Raises:
            PlaybookError: If --start-at-task names no task in the playbook
            UnknownGroupError: In strict mode, for patterns matching nothing
        """
        if isinstance(playbook, Playbook):
            plays = playbook.plays
            self._build_runner(playbook.base_dir, playbook.group_vars, playbook.host_vars)
        else:
            plays = list(playbook)
            self._build_runner(Path.cwd(), {}, {})

        start_at = self.options.start_at_task
        if start_at and not any(t.name == start_at for p in plays for t in p.iter_tasks()):
            raise PlaybookError(f"No task named '{start_at}' to start at", task=start_at)
        self._started = start_at is None

        result = RunResult()
        start = time.perf_counter()
        try:
            for play in plays:
                await self.run_play(play, result)
                if result.aborted:
                    break
        finally:
            for job in self.jobs.running():
                logger.warning(f"Async job {job.jid} ('{job.task}' on {job.host}) still running")
            await self.jobs.collect()
            await self.cleanup()

        self.reporter.on_run_complete(result, time.perf_counter() - start)
        return result

    async def cleanup(self) -> None:
        """Close all transports."""
        await self.transports.cleanup_all()

    def _select_tasks(self, play: Play) -> set[int]:
        """uids of tasks that survive --start-at-task and tag filtering."""
        start_at = self.options.start_at_task
        selected: set[int] = set()
        for task in play.iter_tasks():
            if not self._started:
                if task.name != start_at:
                    continue
                self._started = True
            if task.is_flush_handlers or task_matches_tags(
                task.effective_tags(), self.options.tags, self.options.skip_tags
            ):
                selected.add(task.uid)
        return selected

    async def run_play(self, play: Play, result: RunResult) -> None:
        hosts = resolve_hosts(
            self.inventory, play.hosts, limit=self.options.limit, strict=self.options.strict
        )
        hosts = [
            h for h in hosts if h not in result.failed_hosts and h not in result.unreachable_hosts
        ]
        state = PlayState(play=play, handlers=HandlerRegistry(play.handlers))
        state.selected = self._select_tasks(play)
        self.reporter.on_play_start(play.display_name, hosts)
        log = self.log.bind(play=play.display_name)
        if not hosts:
            log.warning("No hosts matched", pattern=play.hosts)
            return

        strategy = get_strategy(play.strategy or self.options.strategy)
        batches = play.batches(hosts)
        with log.performance("Play", hosts=len(hosts), strategy=strategy.name):
            for index, batch in enumerate(batches, 1):
                if state.aborted:
                    log.warning(f"Skipping {len(batches) - index + 1} remaining batch(es)")
                    break
                self.reporter.on_batch_start(index, len(batches), batch)
                state.batch_size = len(batch)
                await self._run_batch(state, batch, strategy, result)
                state.processed += len(batch)
                state.batch_size = 0
                self._check_threshold(state, result)

    async def _run_batch(
        self,
        state: PlayState,
        batch: list[str],
        strategy: Strategy,
        result: RunResult,
    ) -> None:
        active = batch
        if state.play.gather_facts:
            active = await self._gather_facts(state, batch, result)
        barrier = strategy.barrier(active)
        await asyncio.gather(
            *(self._run_host(state, name, barrier, batch, result) for name in active)
        )

    async def _gather_facts(
        self,
        state: PlayState,
        batch: list[str],
        result: RunResult,
    ) -> list[str]:
        """Gather facts for a batch; returns the hosts that may continue."""
        task = Task(action="setup", name=GATHER_FACTS_TASK)

        async def gather(name: str) -> bool:
            host = self.inventory.hosts[name]
            if self.fact_cache is not None:
                cached = self.fact_cache.get(name)
                if cached is not None:
                    host.facts.update(cached)
                    logger.debug(f"Using cached facts for {name}")
                    return True
            task_result = await self._execute(state, host, task, batch)
            self._record(result, task_result)
            return not self._settle(state, result, name, task_result)

        ok = await asyncio.gather(*(gather(name) for name in batch))
        return [name for name, passed in zip(batch, ok) if passed]

    async def _run_host(
        self,
        state: PlayState,
        name: str,
        barrier: Barrier,
        batch: list[str],
        result: RunResult,
    ) -> None:
        host = self.inventory.hosts[name]

        async def flush_point(uid: int) -> TaskResult | None:
            await barrier.wait(name, uid)
            if state.aborted:
                raise RunAborted()
            return await self._flush_handlers(state, host, batch, result)

        async def run_task(task: Task) -> TaskResult | None:
            if task.uid not in state.selected:
                return None
            await barrier.wait(name, task.uid)
            if state.aborted:
                raise RunAborted()
            if task.is_flush_handlers:
                return await self._flush_handlers(state, host, batch, result)

            task_result = await self._execute(state, host, task, batch)
            task_result = self._notify(state, name, task, task_result)
            self._record(result, task_result)
            return task_result

        async def flush_block(block: Block) -> TaskResult | None:
            return await flush_point(block.uid)

        def record_block(record: BlockRecord) -> None:
            result.add_block(record)
            self.reporter.on_block_end(record)

        runner = BlockRunner(name, run_task, flush_block, record_block)
        try:
            for block in state.play.blocks:
                outcome = await runner.run(block)
                if outcome == BlockOutcome.UNREACHABLE:
                    self._host_unreachable(state, result, name)
                    return
                if outcome == BlockOutcome.FAILED:
                    self._host_failed(state, result, name)
                    return
            flushed = await flush_point(state.play.final_uid)
            if flushed is not None:
                self._settle(state, result, name, flushed)
        except RunAborted:
            logger.debug(f"{name}: run aborted, not starting further steps")
        finally:
            barrier.leave(name)

    async def _execute(
        self,
        state: PlayState,
        host: Host,
        task: Task,
        batch: list[str],
    ) -> TaskResult:
        async with self._semaphore:
            return await self.runner.run(host, task, state.play, play_hosts=batch)

    def _notify(
        self,
        state: PlayState,
        host: str,
        task: Task,
        task_result: TaskResult,
    ) -> TaskResult:
        """Trigger handlers for a changed result; unknown names fail the task."""
        if task_result.status != TaskStatus.CHANGED or not task.notify:
            return task_result
        try:
            for name in task.notify:
                state.handlers.notify(name, host)
        except HandlerNotFoundError as e:
            return TaskResult(
                host=host,
                task=task_result.task,
                status=TaskStatus.FAILED,
                result={"failed": True, **e.to_dict()},
                uid=task_result.uid,
                error_type=e.error_type,
                duration=task_result.duration,
                play=task_result.play,
            )
        return task_result

    async def _flush_handlers(
        self,
        state: PlayState,
        host: Host,
        batch: list[str],
        result: RunResult,
    ) -> TaskResult | None:
        """Run a host's pending handlers; returns the first failure, if any."""
        while True:
            pending = state.handlers.pending(host.name)
            if not pending:
                return None
            handler = pending[0]
            state.handlers.mark_executed(handler, host.name)
            task_result = await self._execute(state, host, handler, batch)
            task_result = self._notify(state, host.name, handler, task_result)
            self._record(result, task_result)
            result.handlers.append((host.name, handler.display_name))
            if task_result.failed:
                return task_result

    def _record(self, result: RunResult, task_result: TaskResult) -> None:
        result.add(task_result)
        diff = task_result.result.get("diff")
        rendered = format_diff(diff) if self.options.diff and isinstance(diff, dict) else None
        self.reporter.on_task_result(task_result, rendered)

    def _settle(
        self,
        state: PlayState,
        result: RunResult,
        name: str,
        task_result: TaskResult,
    ) -> bool:
        """Mark the host failed or unreachable if the result says so."""
        if task_result.status == TaskStatus.UNREACHABLE:
            self._host_unreachable(state, result, name)
            return True
        if task_result.failed:
            self._host_failed(state, result, name)
            return True
        return False

    def _host_failed(self, state: PlayState, result: RunResult, name: str) -> None:
        self.log.info("Host failed", play=state.play.display_name, host=name)
        result.failed_hosts.add(name)
        state.failed.add(name)
        self._check_threshold(state, result)

    def _host_unreachable(self, state: PlayState, result: RunResult, name: str) -> None:
        self.log.warning("Host unreachable", play=state.play.display_name, host=name)
        result.unreachable_hosts.add(name)
        state.failed.add(name)
        self._check_threshold(state, result)

    def _check_threshold(self, state: PlayState, result: RunResult) -> None:
        """Abort once failed/processed-so-far exceeds max_fail_percentage."""
        limit = state.play.max_fail_percentage
        processed = state.processed + state.batch_size
        if limit is None or state.aborted or processed == 0:
            return
        failed = len(state.failed)
        if 100.0 * failed / processed <= float(limit):
            return
        state.aborted = True
        error = ThresholdExceeded(failed, processed, float(limit))
        result.error = error
        self.log.error(error.message, play=state.play.display_name)
        self.reporter.on_run_aborted(error)
