"""Controller-side operations.

These never touch the target host's state: they report values, assert
conditions, or feed the variable engine (set facts, included vars).
"""

from typing import Any

from ..exceptions import OperationError
from ..vault import load_yaml
from .base import ApplyContext, Operation, register_operation

__all__ = [
    "PingOperation",
    "DebugOperation",
    "FailOperation",
    "AssertOperation",
    "SetFactOperation",
    "IncludeVarsOperation",
    "AsyncStatusOperation",
]


@register_operation("ping")
class PingOperation(Operation):
    """Verify the transport to a host works."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        await context.transport.connect()
        return {"changed": False, "ping": args.get("data", "pong")}


@register_operation("debug")
class DebugOperation(Operation):
    """Print a message or a variable."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        if "var" in args:
            name = str(args["var"])
            return {"changed": False, name: context.variables.resolve(name)}
        return {"changed": False, "msg": args.get("msg", "Hello world!")}


@register_operation("fail")
class FailOperation(Operation):
    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        raise OperationError(str(args.get("msg", "Failed as requested from task")))


@register_operation("assert")
class AssertOperation(Operation):
    """Fail unless every expression in ``that`` holds."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        that = args.get("that")
        if that is None:
            raise OperationError("assert requires 'that'")
        expressions = that if isinstance(that, list) else [that]
        for expression in expressions:
            if not context.variables.evaluate(expression):
                message = args.get("fail_msg", args.get("msg", "Assertion failed"))
                raise OperationError(
                    str(message), assertion=expression, evaluated_to=False
                )
        return {
            "changed": False,
            "msg": args.get("success_msg", "All assertions passed"),
        }


@register_operation("set_fact")
class SetFactOperation(Operation):
    """Store variables for the host at set-fact precedence."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        facts = {key: value for key, value in args.items() if key != "cacheable"}
        if not facts:
            raise OperationError("set_fact requires at least one key=value")
        return {"changed": False, "set_facts": facts}


@register_operation("include_vars")
class IncludeVarsOperation(Operation):
    """Load a YAML file from the controller into the included-vars layer."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        file = args.get("file") or args.get("_raw_params")
        if not file:
            raise OperationError("include_vars requires 'file'")
        path = context.resolve_path(str(file))
        if not path.is_file():
            raise OperationError(f"Variables file not found: {file}", file=str(path))
        data = load_yaml(path.read_text()) or {}
        if not isinstance(data, dict):
            raise OperationError(f"Variables file must contain a mapping: {file}")
        if args.get("name"):
            data = {str(args["name"]): data}
        return {"changed": False, "included_vars": data, "file": str(path)}


@register_operation("async_status")
class AsyncStatusOperation(Operation):
    """Report the state of a detached async job by its ``jid``."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        jid = args.get("jid")
        if not jid or context.jobs is None:
            raise OperationError("async_status requires a known 'jid'", jid=jid)
        return context.jobs.status(str(jid))
