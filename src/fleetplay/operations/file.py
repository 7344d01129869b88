"""File operations.

These compare the desired state with the host's current state before
touching anything, so a second apply with the same arguments reports no
change. In check mode they compute the same answer without writing. In diff
mode they return ``before``/``after`` for the reporter to render.
"""

from typing import Any

from ..exceptions import OperationError
from .base import ApplyContext, Operation, register_operation

__all__ = ["FileOperation", "CopyOperation", "TemplateOperation", "parse_mode"]

FILE_STATES = ("file", "directory", "absent", "touch")


def parse_mode(mode: Any) -> int | None:
    """Normalise a mode given as "0644", "644", or an int."""
    if mode is None:
        return None
    if isinstance(mode, int):
        return mode
    try:
        return int(str(mode), 8)
    except ValueError:
        raise OperationError(f"Invalid mode: {mode}", mode=mode) from None


def _describe(stat: Any) -> dict[str, Any]:
    if stat is None:
        return {"state": "absent"}
    return {
        "state": "directory" if stat.is_dir else "file",
        "mode": oct(stat.mode),
    }


@register_operation("file")
class FileOperation(Operation):
    """Manage existence, type, and mode of a path."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        path = args.get("path") or args.get("dest")
        if not path:
            raise OperationError("file requires 'path'")
        path = str(path)
        state = args.get("state", "file")
        if state not in FILE_STATES:
            raise OperationError(f"Invalid state: {state}", path=path, state=state)
        mode = parse_mode(args.get("mode"))
        transport = context.transport

        current = await transport.stat(path)
        before = _describe(current)
        changed = False

        if state == "absent":
            if current is not None:
                changed = True
                if not context.check_mode:
                    await transport.remove(path)
        elif state == "directory":
            if current is None:
                changed = True
                if not context.check_mode:
                    await transport.make_directory(path)
            elif not current.is_dir:
                raise OperationError(f"Path exists but is not a directory: {path}", path=path)
        elif state == "touch":
            if current is None:
                changed = True
                if not context.check_mode:
                    await transport.write_file(path, b"")
        elif current is None:
            raise OperationError(f"File does not exist: {path}", path=path)

        if mode is not None and state != "absent":
            current_mode = current.mode if current is not None else None
            if current_mode != mode:
                changed = True
                if not context.check_mode:
                    await transport.chmod(path, mode)

        if state == "absent":
            after: dict[str, Any] = {"state": "absent"}
        else:
            is_dir = state == "directory" or (current is not None and current.is_dir)
            after = {"state": "directory" if is_dir else "file"}
            final_mode = mode if mode is not None else getattr(current, "mode", None)
            if final_mode is not None:
                after["mode"] = oct(final_mode)

        result: dict[str, Any] = {"changed": changed, "path": path, "state": state}
        if context.diff and changed:
            result["diff"] = {"before": before, "after": after, "path": path}
        return result


async def write_content(
    context: ApplyContext,
    dest: str,
    content: bytes,
    mode: int | None,
    backup: bool = False,
) -> dict[str, Any]:
    """Make ``dest`` hold ``content``; shared by copy and template."""
    transport = context.transport
    stat = await transport.stat(dest)
    if stat is not None and stat.is_dir:
        raise OperationError(f"Destination is a directory: {dest}", dest=dest)

    existing = await transport.read_file(dest) if stat is not None else None
    changed = existing != content
    backup_path = None

    if changed and not context.check_mode:
        if backup and existing is not None:
            backup_path = dest + ".bak"
            await transport.write_file(backup_path, existing)
        await transport.write_file(dest, content)

    if mode is not None:
        current_mode = stat.mode if stat is not None else None
        if current_mode != mode:
            changed = True
            if not context.check_mode:
                await transport.chmod(dest, mode)

    result: dict[str, Any] = {"changed": changed, "dest": dest, "size": len(content)}
    if backup_path:
        result["backup_file"] = backup_path
    if context.diff and existing != content:
        result["diff"] = {
            "before": (existing or b"").decode(errors="replace"),
            "after": content.decode(errors="replace"),
            "path": dest,
        }
    return result


@register_operation("copy")
class CopyOperation(Operation):
    """Place inline ``content`` or a controller-side ``src`` file at ``dest``."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        dest = args.get("dest")
        if not dest:
            raise OperationError("copy requires 'dest'")
        if "content" in args:
            content = str(args["content"]).encode()
        elif args.get("src"):
            src = context.resolve_path(str(args["src"]))
            if not src.is_file():
                raise OperationError(f"Source file not found: {args['src']}", src=str(src))
            content = src.read_bytes()
        else:
            raise OperationError("copy requires 'content' or 'src'", dest=dest)

        return await write_content(
            context,
            str(dest),
            content,
            parse_mode(args.get("mode")),
            backup=bool(args.get("backup", False)),
        )


@register_operation("template")
class TemplateOperation(Operation):
    """Render a controller-side Jinja2 template into ``dest``."""

    async def apply(self, args: dict[str, Any], context: ApplyContext) -> dict[str, Any]:
        src = args.get("src")
        dest = args.get("dest")
        if not src or not dest:
            raise OperationError("template requires 'src' and 'dest'")
        path = context.resolve_path(str(src))
        if not path.is_file():
            templates_path = context.resolve_path("templates") / str(src)
            if not templates_path.is_file():
                raise OperationError(f"Template not found: {src}", src=str(path))
            path = templates_path

        rendered = context.variables.templar.render_string(
            path.read_text(), context.variables, native=False
        )
        return await write_content(
            context,
            str(dest),
            rendered.encode(),
            parse_mode(args.get("mode")),
            backup=bool(args.get("backup", False)),
        )
