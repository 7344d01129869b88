"""Fact gathering."""

import shlex
from typing import Any

from ..exceptions import OperationError
from .base import ApplyContext, Operation, register_operation

__all__ = ["SetupOperation", "parse_os_release"]


def parse_os_release(text: str) -> dict[str, str]:
    """Parse /etc/os-release KEY=value lines."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        parts = shlex.split(value) if value else [""]
        values[key] = parts[0] if parts else ""
    return values


@register_operation("setup")
class SetupOperation(Operation):
    """Gather basic system facts through the host's transport."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        transport = context.transport
        stdout, stderr, rc = await transport.run("uname -s -n -r -m")
        if rc != 0:
            raise OperationError("Failed to gather facts", rc=rc, stderr=stderr)

        fields = stdout.split()
        if len(fields) < 4:
            raise OperationError("Unexpected uname output", stdout=stdout)
        system, hostname, kernel, architecture = fields[0], fields[1], fields[2], fields[-1]
        facts: dict[str, Any] = {
            "ansible_system": system,
            "ansible_hostname": hostname.split(".")[0],
            "ansible_nodename": hostname,
            "ansible_kernel": kernel,
            "ansible_architecture": architecture,
        }

        os_release = await transport.read_file("/etc/os-release")
        if os_release is not None:
            release = parse_os_release(os_release.decode(errors="replace"))
            facts["ansible_distribution"] = release.get("NAME", "")
            facts["ansible_distribution_version"] = release.get("VERSION_ID", "")
            facts["ansible_os_family"] = release.get("ID_LIKE", release.get("ID", "")).split(" ")[0]

        return {"changed": False, "ansible_facts": facts}
