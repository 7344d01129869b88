"""Service management through systemctl."""

import shlex
from typing import Any

from ..exceptions import OperationError
from .base import ApplyContext, Operation, register_operation

__all__ = ["ServiceOperation"]

SERVICE_STATES = ("started", "stopped", "restarted", "reloaded")


@register_operation("service")
class ServiceOperation(Operation):
    """Drive a systemd unit to a desired state.

    ``started`` and ``stopped`` are idempotent; ``restarted`` and
    ``reloaded`` always act and report a change, which is why they are
    usually triggered from handlers.
    """

    async def _systemctl(self, context: ApplyContext, *args: str) -> tuple[str, str, int]:
        return await context.transport.run("systemctl " + shlex.join(args))

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        name = args.get("name")
        if not name:
            raise OperationError("service requires 'name'")
        name = str(name)
        state = args.get("state")
        enabled = args.get("enabled")
        if state is not None and state not in SERVICE_STATES:
            raise OperationError(f"Invalid state: {state}", name=name, state=state)

        changed = False
        actions: list[str] = []

        if state is not None:
            _, _, active_rc = await self._systemctl(context, "is-active", "--quiet", name)
            active = active_rc == 0
            if state == "started" and not active:
                actions.append("start")
            elif state == "stopped" and active:
                actions.append("stop")
            elif state == "restarted":
                actions.append("restart")
            elif state == "reloaded":
                actions.append("reload")

        if enabled is not None:
            _, _, enabled_rc = await self._systemctl(context, "is-enabled", "--quiet", name)
            if bool(enabled) != (enabled_rc == 0):
                actions.append("enable" if enabled else "disable")

        for action in actions:
            changed = True
            if context.check_mode:
                continue
            _, stderr, rc = await self._systemctl(context, action, name)
            if rc != 0:
                raise OperationError(
                    f"Unable to {action} service {name}: {stderr.strip()}",
                    name=name,
                    rc=rc,
                )

        result: dict[str, Any] = {"changed": changed, "name": name}
        if state is not None:
            result["state"] = state
        if enabled is not None:
            result["enabled"] = bool(enabled)
        if actions:
            result["actions"] = actions
        return result
