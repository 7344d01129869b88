"""fleetplay - host-fanout playbook execution.

Run declarative playbooks against an inventory of hosts with layered
variables, deferred handlers, block/rescue/always recovery, and rolling
batches guarded by failure thresholds.

Quick Start:
    from fleetplay import PlaybookExecutor, RunOptions, load_inventory, load_playbook

    executor = PlaybookExecutor(load_inventory("hosts.yml"), RunOptions(forks=10))
    result = asyncio.run(executor.run(load_playbook("site.yml")))
    print(result.exit_code)
"""

__version__ = "0.1.0"

from fleetplay.config import RunOptions, load_options
from fleetplay.executor import PlaybookExecutor
from fleetplay.inventory import Inventory, load_inventory, load_localhost
from fleetplay.playbook import load_playbook
from fleetplay.results import RunResult, TaskResult

__all__ = [
    "__version__",
    "Inventory",
    "PlaybookExecutor",
    "RunOptions",
    "RunResult",
    "TaskResult",
    "load_inventory",
    "load_localhost",
    "load_options",
    "load_playbook",
]
