"""Command execution operations.

Commands are not idempotent by themselves. ``creates`` and ``removes`` make
them so: the command is skipped when the named path already exists (or
already does not), and a ``changed_when`` override on the task can do the
rest.
"""

import shlex
from typing import Any

from ..exceptions import OperationError
from .base import ApplyContext, Operation, register_operation

__all__ = ["CommandOperation", "ShellOperation"]


class CommandOperation(Operation):
    """Run a command without shell interpretation."""

    use_shell = False

    def build_command(self, cmd: str) -> str:
        if self.use_shell:
            return cmd
        return shlex.join(shlex.split(cmd))

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        cmd = args.get("cmd") or args.get("_raw_params")
        if not cmd:
            raise OperationError(f"{self.name} requires 'cmd'")
        cmd = str(cmd)
        transport = context.transport

        creates = args.get("creates")
        if creates and await transport.stat(str(creates)) is not None:
            return {"changed": False, "cmd": cmd, "msg": f"skipped, since {creates} exists"}

        removes = args.get("removes")
        if removes and await transport.stat(str(removes)) is None:
            return {
                "changed": False,
                "cmd": cmd,
                "msg": f"skipped, since {removes} does not exist",
            }

        if context.check_mode:
            return {
                "changed": False,
                "skipped": True,
                "cmd": cmd,
                "msg": "Command would have run if not in check mode",
            }

        stdout, stderr, rc = await transport.run(
            self.build_command(cmd),
            stdin=str(args.get("stdin", "")),
            chdir=args.get("chdir"),
        )
        result = {
            "changed": True,
            "cmd": cmd,
            "rc": rc,
            "stdout": stdout.rstrip("\n"),
            "stderr": stderr.rstrip("\n"),
            "stdout_lines": stdout.splitlines(),
        }
        if rc != 0:
            result.pop("changed")
            raise OperationError("non-zero return code", **result)
        return result


register_operation("command")(CommandOperation)


@register_operation("shell")
class ShellOperation(CommandOperation):
    """Run a command through the shell."""

    use_shell = True
