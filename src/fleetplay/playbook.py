"""Playbook model and loader.

A playbook is a list of plays. Each play targets a host pattern and holds an
ordered tree of blocks and tasks, plus handlers and roles. Every task and
every explicit block's handler flush point gets a ``uid`` in document order
(main sequence, then rescue, then always); any single host's path through a
play visits uids in strictly increasing order, which is what the lock-step
strategy synchronises on.
"""

import itertools
import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Union

from .exceptions import PlaybookError
from .inventory import load_vars_dir
from .operations import has_operation
from .vault import load_yaml

logger = logging.getLogger(__name__)

META_ACTION = "meta"
FLUSH_HANDLERS = "flush_handlers"
INCLUDE_ACTIONS = ("include_tasks", "import_tasks")
FREE_FORM_ACTIONS = ("command", "shell")

TASK_KEYWORDS = {
    "name",
    "action",
    "args",
    "when",
    "tags",
    "changed_when",
    "failed_when",
    "ignore_errors",
    "notify",
    "register",
    "vars",
    "async",
    "poll",
    "check_mode",
    "listen",
}

BLOCK_KEYWORDS = {"block", "rescue", "always", "name", "vars", "when", "tags"}

STRATEGIES = ("linear", "free")


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def _as_tags(value: Any) -> list[str]:
    tags: list[str] = []
    for item in _as_list(value):
        tags.extend(tag.strip() for tag in str(item).split(",") if tag.strip())
    return tags


@dataclass(eq=False)
class Role:
    """A reusable bundle of tasks, handlers, defaults, and vars.

    Attributes:
        name: Role name (directory name under roles/)
        tasks: Parsed tasks/main.yml
        handlers: Parsed handlers/main.yml
        defaults: defaults/main.yml (lowest variable precedence)
        vars: vars/main.yml
        params: Parameters given where the play applies the role
        tags: Tags applied to every task of the role
        when: Conditions applied to every task of the role
    """

    name: str
    tasks: list["TaskOrBlock"] = field(default_factory=list)
    handlers: list["Task"] = field(default_factory=list)
    defaults: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    when: list[Any] = field(default_factory=list)


@dataclass(eq=False)
class Task:
    """One operation invocation plus its execution metadata.

    Attributes:
        action: Registered operation name, or "meta"
        args: Operation arguments (templated lazily per host)
        name: Display name; also the target of --start-at-task
        when: Conditions that must all hold, else the task is skipped
        tags: Own tags (enclosing blocks and roles add theirs)
        changed_when: Expression overriding the reported changed status
        failed_when: Expression overriding the reported failed status
        ignore_errors: Record failure but keep the host running
        notify: Handler names or listen topics to trigger on change
        register: Variable name receiving the raw result
        vars: Task-level variables
        async_: Wall-clock ceiling in seconds for detached execution
        poll: Seconds between status checks of an async task, 0 for detached
        check_mode: Force check mode on (True) or off (False) for this task
        listen: Extra topics this task answers to when used as a handler
    """

    action: str
    args: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    when: list[Any] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    changed_when: Any = None
    failed_when: Any = None
    ignore_errors: bool = False
    notify: list[str] = field(default_factory=list)
    register: str | None = None
    vars: dict[str, Any] = field(default_factory=dict)
    async_: float | None = None
    poll: float = 10.0
    check_mode: bool | None = None
    listen: list[str] = field(default_factory=list)
    role: Role | None = None
    include_params: dict[str, Any] = field(default_factory=dict)
    parent: "Block | None" = field(default=None, repr=False)
    uid: int = 0

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.role is not None:
            return f"{self.role.name} : {self.action}"
        return self.action

    @property
    def is_flush_handlers(self) -> bool:
        return self.action == META_ACTION and self.args.get("_raw_params") == FLUSH_HANDLERS

    def block_chain(self) -> list["Block"]:
        """Enclosing blocks, outermost first."""
        chain: list[Block] = []
        block = self.parent
        while block is not None:
            chain.append(block)
            block = block.parent
        return list(reversed(chain))

    def effective_tags(self) -> set[str]:
        tags = set(self.tags)
        for block in self.block_chain():
            tags.update(block.tags)
        if self.role is not None:
            tags.update(self.role.tags)
        return tags

    def effective_when(self) -> list[Any]:
        conditions: list[Any] = []
        for block in self.block_chain():
            conditions.extend(block.when)
        conditions.extend(self.when)
        return conditions


@dataclass(eq=False)
class Block:
    """Ordered tasks with optional rescue and always sequences.

    Attributes:
        block: Main sequence
        rescue: Runs when the main sequence fails
        always: Runs after main/rescue regardless of outcome
        name: Display name
        vars: Block-level variables, inherited by nested tasks
        when: Conditions inherited by nested tasks
        tags: Tags inherited by nested tasks
        implicit: True for the wrapper around bare tasks; implicit blocks do
            not flush handlers
        uid: Position of this block's handler flush point in document order
    """

    block: list["TaskOrBlock"] = field(default_factory=list)
    rescue: list["TaskOrBlock"] = field(default_factory=list)
    always: list["TaskOrBlock"] = field(default_factory=list)
    name: str = ""
    vars: dict[str, Any] = field(default_factory=dict)
    when: list[Any] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    implicit: bool = False
    parent: "Block | None" = field(default=None, repr=False)
    uid: int = 0

    @property
    def display_name(self) -> str:
        return self.name or ("implicit block" if self.implicit else "block")

    def children(self) -> Iterator["TaskOrBlock"]:
        yield from self.block
        yield from self.rescue
        yield from self.always


TaskOrBlock = Union[Task, Block]


@dataclass(eq=False)
class Play:
    """Hosts, variables, and an ordered block tree.

    Task lists may hold bare tasks; they are wrapped in implicit blocks. The
    tree runs ``pre_tasks``, then role tasks, then ``tasks``, then
    ``post_tasks``. After construction ``blocks`` holds the executable tree
    and every node has a document-order uid.

    Attributes:
        hosts: Host pattern
        name: Display name
        tasks: Tasks and blocks as written
        pre_tasks: Tasks that run before any role
        post_tasks: Tasks that run after ``tasks``
        handlers: Handler tasks, in declaration order
        roles: Applied roles
        vars: Play vars
        vars_files_data: Merged contents of vars_files
        serial: Batch size: int, "N%", or a list of those
        max_fail_percentage: Abort threshold, None to disable
        strategy: "linear" (lock-step) or "free"; None uses the run default
        gather_facts: Run setup on every host at play start
    """

    hosts: str
    name: str = ""
    tasks: list[TaskOrBlock] = field(default_factory=list)
    pre_tasks: list[TaskOrBlock] = field(default_factory=list)
    post_tasks: list[TaskOrBlock] = field(default_factory=list)
    handlers: list[Task] = field(default_factory=list)
    roles: list[Role] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    vars_files_data: dict[str, Any] = field(default_factory=dict)
    serial: Any = None
    max_fail_percentage: float | None = None
    strategy: str | None = None
    gather_facts: bool = False
    blocks: list[Block] = field(default_factory=list, init=False)
    final_uid: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.strategy is not None and self.strategy not in STRATEGIES:
            raise PlaybookError(f"Unknown strategy: {self.strategy}", strategy=self.strategy)

        blocks = self._wrap(self.pre_tasks)
        for role in self.roles:
            role_block = Block(
                block=list(role.tasks),
                name=f"role {role.name}",
                tags=list(role.tags),
                when=list(role.when),
                implicit=True,
            )
            _attach(role_block, role)
            blocks.append(role_block)
        blocks.extend(self._wrap(self.tasks))
        blocks.extend(self._wrap(self.post_tasks))
        self.blocks = blocks

        all_handlers: list[Task] = []
        for role in self.roles:
            for handler in role.handlers:
                handler.role = role
                all_handlers.append(handler)
        all_handlers.extend(self.handlers)
        self.handlers = all_handlers

        counter = itertools.count(1)
        for block in self.blocks:
            _assign_uids(block, counter)
        self.final_uid = next(counter)

    @staticmethod
    def _wrap(items: list[TaskOrBlock]) -> list[Block]:
        blocks: list[Block] = []
        for item in items:
            block = item if isinstance(item, Block) else Block(block=[item], implicit=True)
            _attach(block, None)
            blocks.append(block)
        return blocks

    @property
    def display_name(self) -> str:
        return self.name or self.hosts

    def iter_tasks(self) -> Iterator[Task]:
        """Every task in document order."""
        for block in self.blocks:
            yield from _iter_tasks(block)

    def batches(self, hosts: list[str]) -> list[list[str]]:
        """Partition hosts into sequential serial batches."""
        if not self.serial or not hosts:
            return [list(hosts)] if hosts else []

        sizes = [_batch_size(item, len(hosts)) for item in _as_list(self.serial)]
        batches: list[list[str]] = []
        index = 0
        step = 0
        while index < len(hosts):
            size = sizes[min(step, len(sizes) - 1)]
            batches.append(hosts[index:index + size])
            index += size
            step += 1
        return batches


def _batch_size(value: Any, total: int) -> int:
    if isinstance(value, str) and value.strip().endswith("%"):
        percent = float(value.strip()[:-1])
        return max(1, int(total * percent / 100))
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise PlaybookError(f"Invalid serial value: {value}") from None
    if size <= 0:
        return total
    return size


def _attach(block: Block, role: Role | None) -> None:
    """Set parent links (and role) throughout a block tree."""
    for child in block.children():
        if isinstance(child, Block):
            child.parent = block
            _attach(child, role)
        else:
            child.parent = block
            if role is not None:
                child.role = role


def _assign_uids(block: Block, counter: "itertools.count[int]") -> None:
    for child in block.children():
        if isinstance(child, Block):
            _assign_uids(child, counter)
        else:
            child.uid = next(counter)
    block.uid = next(counter)


def _iter_tasks(block: Block) -> Iterator[Task]:
    for child in block.children():
        if isinstance(child, Block):
            yield from _iter_tasks(child)
        else:
            yield child


@dataclass
class Playbook:
    """A loaded playbook file.

    Attributes:
        path: Source file
        plays: Plays in file order
        group_vars: group_vars/ next to the playbook
        host_vars: host_vars/ next to the playbook
    """

    path: Path | None
    plays: list[Play]
    group_vars: dict[str, dict[str, Any]] = field(default_factory=dict)
    host_vars: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def base_dir(self) -> Path:
        return self.path.parent if self.path is not None else Path.cwd()


def load_playbook(path: str | Path) -> Playbook:
    """Load a playbook YAML file.

    Raises:
        PlaybookError: On malformed structure, unknown operations, or
            missing roles and included files
    """
    path = Path(path)
    if not path.is_file():
        raise PlaybookError(f"Playbook not found: {path}", path=str(path))
    data = load_yaml(path.read_text())
    if not isinstance(data, list):
        raise PlaybookError("A playbook must be a list of plays", path=str(path))

    loader = PlaybookLoader(path.parent)
    plays = [loader.parse_play(item) for item in data]
    return Playbook(
        path=path,
        plays=plays,
        group_vars=load_vars_dir(path.parent / "group_vars"),
        host_vars=load_vars_dir(path.parent / "host_vars"),
    )


class PlaybookLoader:
    """Turns parsed YAML into Play, Block, Task, and Role objects."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir
        self._roles_dir = base_dir / "roles"

    def parse_play(self, data: Any) -> Play:
        if not isinstance(data, dict) or "hosts" not in data:
            raise PlaybookError("Each play must be a mapping with 'hosts'")

        roles = [self.parse_role_ref(ref) for ref in _as_list(data.get("roles"))]
        vars_files_data: dict[str, Any] = {}
        for vars_file in _as_list(data.get("vars_files")):
            vars_files_data.update(self._load_mapping(self.base_dir / str(vars_file)))

        return Play(
            hosts=str(data["hosts"]),
            name=str(data.get("name", "")),
            tasks=self.parse_tasks(data.get("tasks"), self.base_dir),
            pre_tasks=self.parse_tasks(data.get("pre_tasks"), self.base_dir),
            post_tasks=self.parse_tasks(data.get("post_tasks"), self.base_dir),
            handlers=[self.parse_task(item, self.base_dir) for item in _as_list(data.get("handlers"))],
            roles=roles,
            vars=dict(data.get("vars") or {}),
            vars_files_data=vars_files_data,
            serial=data.get("serial"),
            max_fail_percentage=data.get("max_fail_percentage"),
            strategy=data.get("strategy"),
            gather_facts=bool(data.get("gather_facts", False)),
        )

    def parse_tasks(self, items: Any, base_dir: Path) -> list[TaskOrBlock]:
        result: list[TaskOrBlock] = []
        for item in _as_list(items):
            if not isinstance(item, dict):
                raise PlaybookError(f"Task must be a mapping, got: {item!r}")
            if "block" in item:
                result.append(self.parse_block(item, base_dir))
            elif any(key in item for key in INCLUDE_ACTIONS):
                result.append(self.parse_include(item, base_dir))
            else:
                result.append(self.parse_task(item, base_dir))
        return result

    def parse_block(self, data: dict[str, Any], base_dir: Path) -> Block:
        unknown = set(data) - BLOCK_KEYWORDS
        if unknown:
            raise PlaybookError(f"Unknown block keywords: {sorted(unknown)}")
        return Block(
            block=self.parse_tasks(data.get("block"), base_dir),
            rescue=self.parse_tasks(data.get("rescue"), base_dir),
            always=self.parse_tasks(data.get("always"), base_dir),
            name=str(data.get("name", "")),
            vars=dict(data.get("vars") or {}),
            when=_as_list(data.get("when")),
            tags=_as_tags(data.get("tags")),
        )

    def parse_include(self, data: dict[str, Any], base_dir: Path) -> Block:
        """Statically inline an included task file as an implicit block."""
        action = next(key for key in INCLUDE_ACTIONS if key in data)
        target = data[action]
        if isinstance(target, dict):
            target = target.get("file")
        include_path = base_dir / str(target)
        items = self._load_list(include_path)
        tasks = self.parse_tasks(items, include_path.parent)
        params = dict(data.get("vars") or {})
        for task in _walk_tasks(tasks):
            task.include_params = {**params, **task.include_params}
        return Block(
            block=tasks,
            name=str(data.get("name", f"{action}: {target}")),
            when=_as_list(data.get("when")),
            tags=_as_tags(data.get("tags")),
            implicit=True,
        )

    def parse_task(self, data: dict[str, Any], base_dir: Path) -> Task:
        action, args = self._parse_action(data)
        async_value = data.get("async")
        return Task(
            action=action,
            args=args,
            name=str(data.get("name", "")),
            when=_as_list(data.get("when")),
            tags=_as_tags(data.get("tags")),
            changed_when=data.get("changed_when"),
            failed_when=data.get("failed_when"),
            ignore_errors=bool(data.get("ignore_errors", False)),
            notify=[str(n) for n in _as_list(data.get("notify"))],
            register=data.get("register"),
            vars=dict(data.get("vars") or {}),
            async_=float(async_value) if async_value is not None else None,
            poll=float(data.get("poll", 10)),
            check_mode=data.get("check_mode"),
            listen=[str(t) for t in _as_list(data.get("listen"))],
        )

    def _parse_action(self, data: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        if "action" in data:
            value = data["action"]
            if isinstance(value, dict):
                value = dict(value)
                action = str(value.pop("module", ""))
                args = value
            else:
                action, _, rest = str(value).partition(" ")
                args = self._parse_free_form(action, rest)
        else:
            candidates = [key for key in data if key not in TASK_KEYWORDS]
            if len(candidates) != 1:
                raise PlaybookError(
                    f"Task must name exactly one operation, found: {candidates}",
                    task=data.get("name", ""),
                )
            action = candidates[0]
            value = data[action]
            if isinstance(value, dict):
                args = dict(value)
            elif value is None:
                args = {}
            else:
                args = self._parse_free_form(action, str(value))

        if isinstance(data.get("args"), dict):
            args.update(data["args"])
        if action != META_ACTION and not has_operation(action):
            raise PlaybookError(f"Unknown operation '{action}'", task=data.get("name", ""))
        if action == META_ACTION and args.get("_raw_params") != FLUSH_HANDLERS:
            raise PlaybookError(f"Unsupported meta action: {args.get('_raw_params')}")
        return action, args

    @staticmethod
    def _parse_free_form(action: str, text: str) -> dict[str, Any]:
        """Parse ``key=value`` arguments; command and meta keep raw text."""
        text = text.strip()
        if action in FREE_FORM_ACTIONS or action == META_ACTION:
            args: dict[str, Any] = {}
            words = []
            for word in shlex.split(text):
                key, sep, value = word.partition("=")
                if sep and key in ("chdir", "creates", "removes"):
                    args[key] = value
                else:
                    words.append(word)
            if action == META_ACTION:
                args["_raw_params"] = text
            else:
                args["cmd"] = shlex.join(words) if action == "command" else " ".join(words)
            return args

        args = {}
        for word in shlex.split(text):
            key, sep, value = word.partition("=")
            if not sep:
                raise PlaybookError(f"Expected key=value for '{action}', got '{word}'")
            args[key] = value
        return args

    def parse_role_ref(self, ref: Any) -> Role:
        if isinstance(ref, str):
            ref = {"role": ref}
        if not isinstance(ref, dict) or not (ref.get("role") or ref.get("name")):
            raise PlaybookError(f"Invalid role reference: {ref!r}")
        ref = dict(ref)
        name = str(ref.pop("role", None) or ref.pop("name"))
        tags = _as_tags(ref.pop("tags", None))
        when = _as_list(ref.pop("when", None))
        params = dict(ref.pop("vars", None) or {})
        params.update(ref)
        return self.load_role(name, params=params, tags=tags, when=when)

    def load_role(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        tags: list[str] | None = None,
        when: list[Any] | None = None,
    ) -> Role:
        role_dir = self._roles_dir / name
        if not role_dir.is_dir():
            raise PlaybookError(f"Role not found: {name}", path=str(role_dir))

        def main_file(section: str) -> Path | None:
            for suffix in (".yml", ".yaml"):
                candidate = role_dir / section / f"main{suffix}"
                if candidate.is_file():
                    return candidate
            return None

        tasks_file = main_file("tasks")
        handlers_file = main_file("handlers")
        defaults_file = main_file("defaults")
        vars_file = main_file("vars")
        tasks_dir = role_dir / "tasks"

        return Role(
            name=name,
            tasks=self.parse_tasks(self._load_list(tasks_file), tasks_dir) if tasks_file else [],
            handlers=[
                self.parse_task(item, role_dir / "handlers")
                for item in (self._load_list(handlers_file) if handlers_file else [])
            ],
            defaults=self._load_mapping(defaults_file) if defaults_file else {},
            vars=self._load_mapping(vars_file) if vars_file else {},
            params=params or {},
            tags=tags or [],
            when=when or [],
        )

    @staticmethod
    def _load_list(path: Path) -> list[Any]:
        if not path.is_file():
            raise PlaybookError(f"Task file not found: {path}", path=str(path))
        data = load_yaml(path.read_text())
        if data is None:
            return []
        if not isinstance(data, list):
            raise PlaybookError(f"Task file must contain a list: {path}", path=str(path))
        return data

    @staticmethod
    def _load_mapping(path: Path) -> dict[str, Any]:
        if not path.is_file():
            raise PlaybookError(f"Variables file not found: {path}", path=str(path))
        data = load_yaml(path.read_text())
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise PlaybookError(f"Variables file must contain a mapping: {path}", path=str(path))
        return data


def _walk_tasks(items: list[TaskOrBlock]) -> Iterator[Task]:
    for item in items:
        if isinstance(item, Block):
            yield from _walk_tasks(list(item.children()))
        else:
            yield item
