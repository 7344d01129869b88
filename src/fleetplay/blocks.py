"""Block/rescue/always failure controller.

Each block runs on each host as a small state machine::

    RUNNING_MAIN --(all ok)------------> RUNNING_ALWAYS --> DONE
    RUNNING_MAIN --(failure, rescue)---> RUNNING_RESCUE --> RUNNING_ALWAYS --> DONE
    RUNNING_MAIN --(failure, no rescue)-> RUNNING_ALWAYS --> ABORTED
    RUNNING_RESCUE/ALWAYS --(failure)--> ABORTED (always still attempted once)

A block ending in DONE after its rescue ran is ``recovered``. A nested block
ending in ABORTED counts as one failed item of its parent. ``ignore_errors``
failures never leave RUNNING_MAIN. An unreachable host leaves at once: no
rescue, no always.
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from .playbook import Block, Task, TaskOrBlock
from .results import BlockRecord, TaskResult
from .types import BlockOutcome, TaskStatus

logger = logging.getLogger(__name__)


class BlockState(str, Enum):
    RUNNING_MAIN = "RUNNING_MAIN"
    RUNNING_RESCUE = "RUNNING_RESCUE"
    RUNNING_ALWAYS = "RUNNING_ALWAYS"
    DONE = "DONE"
    ABORTED = "ABORTED"


TRANSITIONS: dict[BlockState, set[BlockState]] = {
    BlockState.RUNNING_MAIN: {BlockState.RUNNING_RESCUE, BlockState.RUNNING_ALWAYS, BlockState.ABORTED},
    BlockState.RUNNING_RESCUE: {BlockState.RUNNING_ALWAYS, BlockState.ABORTED},
    BlockState.RUNNING_ALWAYS: {BlockState.DONE, BlockState.ABORTED},
    BlockState.DONE: set(),
    BlockState.ABORTED: set(),
}


class RunAborted(Exception):
    """Raised inside a host's execution when the run stops starting new steps."""


class BlockExecution:
    """State of one block on one host."""

    def __init__(self, host: str, block: Block) -> None:
        self.host = host
        self.block = block
        self.state = BlockState.RUNNING_MAIN
        self.history: list[str] = [self.state.value]

    def transition(self, state: BlockState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid block transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state.value)


RunStep = Callable[[Task], Awaitable[TaskResult | None]]
FlushStep = Callable[[Block], Awaitable[TaskResult | None]]
RecordBlock = Callable[[BlockRecord], None]


class BlockRunner:
    """Drives one host through a block tree.

    The caller supplies the step callbacks, which own scheduling (barriers,
    forks), result recording, and handler flushing:

    Attributes:
        host: Host name
        run_task: Runs one task; returns None when the task was not
            scheduled (filtered, or a meta step)
        flush: Runs the handler flush point at the end of an explicit block;
            returns a failed TaskResult if a handler failed
        record: Receives the final BlockRecord of every explicit block
    """

    def __init__(
        self,
        host: str,
        run_task: RunStep,
        flush: FlushStep,
        record: RecordBlock | None = None,
    ) -> None:
        self.host = host
        self.run_task = run_task
        self.flush = flush
        self.record = record

    async def run(self, block: Block) -> BlockOutcome:
        execution = BlockExecution(self.host, block)
        outcome = await self._run(block, execution)
        if not block.implicit and self.record is not None:
            self.record(BlockRecord(self.host, block.display_name, outcome, execution.history))
        logger.debug(f"Block '{block.display_name}' on {self.host}: {outcome.value} {execution.history}")
        return outcome

    async def _run(self, block: Block, execution: BlockExecution) -> BlockOutcome:
        main = await self._run_items(block.block)
        if main == BlockOutcome.UNREACHABLE:
            execution.transition(BlockState.ABORTED)
            return BlockOutcome.UNREACHABLE

        failed = main == BlockOutcome.FAILED
        rescued = False
        if failed and block.rescue:
            execution.transition(BlockState.RUNNING_RESCUE)
            rescue = await self._run_items(block.rescue)
            if rescue == BlockOutcome.UNREACHABLE:
                execution.transition(BlockState.ABORTED)
                return BlockOutcome.UNREACHABLE
            rescued = rescue == BlockOutcome.OK

        execution.transition(BlockState.RUNNING_ALWAYS)
        always = await self._run_items(block.always)
        if always == BlockOutcome.UNREACHABLE:
            execution.transition(BlockState.ABORTED)
            return BlockOutcome.UNREACHABLE

        if always == BlockOutcome.FAILED or (failed and not rescued):
            execution.transition(BlockState.ABORTED)
            return BlockOutcome.FAILED

        if not block.implicit:
            flushed = await self.flush(block)
            if flushed is not None and flushed.status == TaskStatus.UNREACHABLE:
                execution.transition(BlockState.ABORTED)
                return BlockOutcome.UNREACHABLE
            if flushed is not None and flushed.failed:
                execution.transition(BlockState.ABORTED)
                return BlockOutcome.FAILED

        execution.transition(BlockState.DONE)
        return BlockOutcome.RECOVERED if rescued else BlockOutcome.OK

    async def _run_items(self, items: list[TaskOrBlock]) -> BlockOutcome:
        """Run a sequence, stopping at the first unrecovered failure."""
        for item in items:
            if isinstance(item, Block):
                outcome = await self.run(item)
                if outcome in (BlockOutcome.FAILED, BlockOutcome.UNREACHABLE):
                    return outcome
                continue

            result = await self.run_task(item)
            if result is None:
                continue
            if result.status == TaskStatus.UNREACHABLE:
                return BlockOutcome.UNREACHABLE
            if result.failed:
                return BlockOutcome.FAILED
        return BlockOutcome.OK
