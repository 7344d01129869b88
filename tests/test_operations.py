"""Tests for built-in operations against the local transport."""

import pytest

from fleetplay.exceptions import OperationError, OperationNotFoundError
from fleetplay.operations import (
    ApplyContext,
    get_operation,
    has_operation,
    list_operations,
)
from fleetplay.operations.facts import parse_os_release
from fleetplay.operations.file import parse_mode
from fleetplay.templating import LazyVars, Templar
from fleetplay.transport import LocalTransport, Transport
from fleetplay.types import Host


def make_context(tmp_path, variables=None, check_mode=False, diff=False, transport=None):
    host = Host(name="localhost", connection="local")
    return ApplyContext(
        host=host,
        variables=LazyVars(variables or {}, Templar()),
        transport=transport or LocalTransport(host),
        check_mode=check_mode,
        diff=diff,
        base_dir=tmp_path,
    )


class FakeSystemctl(Transport):
    """Answers systemctl queries from a dict of unit states."""

    def __init__(self, host, active=False, enabled=False):
        super().__init__(host)
        self.active = active
        self.enabled = enabled
        self.commands = []

    async def connect(self):
        return None

    async def run(self, command, stdin="", timeout=None, chdir=None):
        self.commands.append(command)
        if "is-active" in command:
            return "", "", 0 if self.active else 3
        if "is-enabled" in command:
            return "", "", 0 if self.enabled else 1
        if command.startswith("systemctl start"):
            self.active = True
        elif command.startswith("systemctl stop"):
            self.active = False
        elif command.startswith("systemctl enable"):
            self.enabled = True
        return "", "", 0

    async def stat(self, path):
        return None

    async def read_file(self, path):
        return None

    async def write_file(self, path, content):
        return None

    async def make_directory(self, path):
        return None

    async def remove(self, path):
        return None

    async def chmod(self, path, mode):
        return None


class TestRegistry:
    """Tests for operation lookup."""

    def test_builtins_registered(self):
        """Test every built-in operation is available."""
        for name in (
            "ping", "debug", "fail", "assert", "set_fact", "include_vars", "setup",
            "command", "shell", "file", "copy", "template", "service", "async_status",
        ):
            assert has_operation(name), name
        assert "copy" in list_operations()

    def test_fqcn_alias(self):
        """Test fleetplay.builtin.<name> resolves to the short name."""
        assert get_operation("fleetplay.builtin.copy").name == "copy"
        assert has_operation("fleetplay.builtin.file")

    def test_unknown_operation(self):
        """Test unknown names raise OperationNotFoundError."""
        with pytest.raises(OperationNotFoundError):
            get_operation("does_not_exist")


class TestFileOperation:
    """Tests for the file operation."""

    @pytest.mark.asyncio
    async def test_touch_is_idempotent(self, tmp_path):
        """Test touching twice reports a change only the first time."""
        path = str(tmp_path / "flag")
        op = get_operation("file")
        first = await op.apply({"path": path, "state": "touch"}, make_context(tmp_path))
        second = await op.apply({"path": path, "state": "touch"}, make_context(tmp_path))
        assert first["changed"] is True
        assert second["changed"] is False
        assert (tmp_path / "flag").exists()

    @pytest.mark.asyncio
    async def test_directory_and_mode(self, tmp_path):
        """Test creating a directory with a mode, then re-applying."""
        path = str(tmp_path / "a" / "b")
        op = get_operation("file")
        args = {"path": path, "state": "directory", "mode": "0750"}
        assert (await op.apply(args, make_context(tmp_path)))["changed"] is True
        assert (await op.apply(args, make_context(tmp_path)))["changed"] is False
        assert (tmp_path / "a" / "b").stat().st_mode & 0o777 == 0o750

    @pytest.mark.asyncio
    async def test_absent(self, tmp_path):
        """Test removing a path, then removing it again."""
        target = tmp_path / "gone"
        target.write_text("x")
        op = get_operation("file")
        args = {"path": str(target), "state": "absent"}
        assert (await op.apply(args, make_context(tmp_path)))["changed"] is True
        assert not target.exists()
        assert (await op.apply(args, make_context(tmp_path)))["changed"] is False

    @pytest.mark.asyncio
    async def test_check_mode_does_not_touch(self, tmp_path):
        """Test check mode reports the change without making it."""
        path = tmp_path / "flag"
        op = get_operation("file")
        result = await op.apply(
            {"path": str(path), "state": "touch"}, make_context(tmp_path, check_mode=True)
        )
        assert result["changed"] is True
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_missing_file_state(self, tmp_path):
        """Test state=file on a missing path fails."""
        with pytest.raises(OperationError, match="does not exist"):
            await get_operation("file").apply(
                {"path": str(tmp_path / "missing")}, make_context(tmp_path)
            )

    @pytest.mark.asyncio
    async def test_invalid_state(self, tmp_path):
        """Test unknown states are rejected."""
        with pytest.raises(OperationError, match="Invalid state"):
            await get_operation("file").apply(
                {"path": str(tmp_path), "state": "link"}, make_context(tmp_path)
            )

    def test_parse_mode(self):
        """Test octal strings and ints are both accepted."""
        assert parse_mode("0644") == 0o644
        assert parse_mode("755") == 0o755
        assert parse_mode(0o600) == 0o600
        assert parse_mode(None) is None
        with pytest.raises(OperationError):
            parse_mode("rwx")


class TestCopyAndTemplate:
    """Tests for content-managing operations."""

    @pytest.mark.asyncio
    async def test_copy_content_idempotent(self, tmp_path):
        """Test the second identical copy reports ok."""
        dest = str(tmp_path / "motd")
        op = get_operation("copy")
        first = await op.apply({"dest": dest, "content": "hello\n"}, make_context(tmp_path))
        second = await op.apply({"dest": dest, "content": "hello\n"}, make_context(tmp_path))
        assert first["changed"] is True
        assert second["changed"] is False
        assert (tmp_path / "motd").read_text() == "hello\n"

    @pytest.mark.asyncio
    async def test_copy_src_relative_to_base_dir(self, tmp_path):
        """Test src paths resolve against the playbook directory."""
        (tmp_path / "files").mkdir()
        (tmp_path / "files" / "app.conf").write_text("port=80\n")
        dest = tmp_path / "app.conf"
        await get_operation("copy").apply(
            {"src": "files/app.conf", "dest": str(dest)}, make_context(tmp_path)
        )
        assert dest.read_text() == "port=80\n"

    @pytest.mark.asyncio
    async def test_copy_diff(self, tmp_path):
        """Test diff mode returns before and after."""
        dest = tmp_path / "motd"
        dest.write_text("old\n")
        result = await get_operation("copy").apply(
            {"dest": str(dest), "content": "new\n"}, make_context(tmp_path, diff=True)
        )
        assert result["diff"]["before"] == "old\n"
        assert result["diff"]["after"] == "new\n"

    @pytest.mark.asyncio
    async def test_copy_check_mode(self, tmp_path):
        """Test check mode leaves the destination alone."""
        dest = tmp_path / "motd"
        dest.write_text("old\n")
        result = await get_operation("copy").apply(
            {"dest": str(dest), "content": "new\n"}, make_context(tmp_path, check_mode=True)
        )
        assert result["changed"] is True
        assert dest.read_text() == "old\n"

    @pytest.mark.asyncio
    async def test_copy_backup(self, tmp_path):
        """Test backup keeps the previous content."""
        dest = tmp_path / "motd"
        dest.write_text("old\n")
        result = await get_operation("copy").apply(
            {"dest": str(dest), "content": "new\n", "backup": True}, make_context(tmp_path)
        )
        assert (tmp_path / "motd.bak").read_text() == "old\n"
        assert result["backup_file"] == str(dest) + ".bak"

    @pytest.mark.asyncio
    async def test_copy_requires_source(self, tmp_path):
        """Test copy without content or src fails."""
        with pytest.raises(OperationError):
            await get_operation("copy").apply({"dest": str(tmp_path / "x")}, make_context(tmp_path))

    @pytest.mark.asyncio
    async def test_template_renders_variables(self, tmp_path):
        """Test templates render against the host's variables."""
        (tmp_path / "templates").mkdir()
        (tmp_path / "templates" / "site.conf.j2").write_text(
            "server {{ name }}:{{ port }}\n"
        )
        dest = tmp_path / "site.conf"
        context = make_context(tmp_path, variables={"name": "web", "port": 8080})
        op = get_operation("template")
        first = await op.apply({"src": "site.conf.j2", "dest": str(dest)}, context)
        second = await op.apply({"src": "site.conf.j2", "dest": str(dest)}, context)
        assert dest.read_text() == "server web:8080\n"
        assert first["changed"] is True
        assert second["changed"] is False


class TestCommand:
    """Tests for command and shell."""

    @pytest.mark.asyncio
    async def test_command_output(self, tmp_path):
        """Test stdout, rc, and changed are reported."""
        result = await get_operation("command").apply(
            {"cmd": "echo hello"}, make_context(tmp_path)
        )
        assert result["stdout"] == "hello"
        assert result["rc"] == 0
        assert result["changed"] is True

    @pytest.mark.asyncio
    async def test_nonzero_rc_fails(self, tmp_path):
        """Test a failing command raises OperationError with its rc."""
        with pytest.raises(OperationError) as exc_info:
            await get_operation("shell").apply({"cmd": "exit 3"}, make_context(tmp_path))
        assert exc_info.value.result["rc"] == 3
        assert exc_info.value.result["failed"] is True

    @pytest.mark.asyncio
    async def test_creates_makes_idempotent(self, tmp_path):
        """Test creates skips the command once the path exists."""
        marker = tmp_path / "done"
        args = {"cmd": f"touch {marker}", "creates": str(marker)}
        op = get_operation("shell")
        first = await op.apply(args, make_context(tmp_path))
        second = await op.apply(args, make_context(tmp_path))
        assert first["changed"] is True
        assert second["changed"] is False
        assert "exists" in second["msg"]

    @pytest.mark.asyncio
    async def test_removes(self, tmp_path):
        """Test removes skips the command when the path is missing."""
        result = await get_operation("command").apply(
            {"cmd": "false", "removes": str(tmp_path / "missing")}, make_context(tmp_path)
        )
        assert result["changed"] is False

    @pytest.mark.asyncio
    async def test_check_mode_skips(self, tmp_path):
        """Test commands do not run in check mode."""
        marker = tmp_path / "ran"
        result = await get_operation("shell").apply(
            {"cmd": f"touch {marker}"}, make_context(tmp_path, check_mode=True)
        )
        assert result["skipped"] is True
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_chdir(self, tmp_path):
        """Test commands run in chdir."""
        result = await get_operation("command").apply(
            {"cmd": "pwd", "chdir": str(tmp_path)}, make_context(tmp_path)
        )
        assert result["stdout"].endswith(tmp_path.name)


class TestControlOperations:
    """Tests for controller-side operations."""

    @pytest.mark.asyncio
    async def test_debug_var(self, tmp_path):
        """Test debug var= shows a resolved variable."""
        context = make_context(tmp_path, variables={"port": "{{ 40 + 2 }}"})
        result = await get_operation("debug").apply({"var": "port"}, context)
        assert result["port"] == 42

    @pytest.mark.asyncio
    async def test_assert(self, tmp_path):
        """Test assert passes and fails on expressions."""
        context = make_context(tmp_path, variables={"n": 3})
        op = get_operation("assert")
        assert (await op.apply({"that": ["n > 1", "n < 5"]}, context))["changed"] is False
        with pytest.raises(OperationError) as exc_info:
            await op.apply({"that": "n > 5", "fail_msg": "too small"}, context)
        assert exc_info.value.msg == "too small"

    @pytest.mark.asyncio
    async def test_fail(self, tmp_path):
        """Test fail always raises with its message."""
        with pytest.raises(OperationError, match="stop here"):
            await get_operation("fail").apply({"msg": "stop here"}, make_context(tmp_path))

    @pytest.mark.asyncio
    async def test_set_fact(self, tmp_path):
        """Test set_fact returns the facts to store."""
        result = await get_operation("set_fact").apply({"a": 1, "cacheable": True}, make_context(tmp_path))
        assert result["set_facts"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_include_vars(self, tmp_path):
        """Test include_vars loads a mapping, optionally under a name."""
        (tmp_path / "extra.yml").write_text("region: eu\n")
        op = get_operation("include_vars")
        result = await op.apply({"file": "extra.yml"}, make_context(tmp_path))
        assert result["included_vars"] == {"region": "eu"}
        named = await op.apply({"file": "extra.yml", "name": "cfg"}, make_context(tmp_path))
        assert named["included_vars"] == {"cfg": {"region": "eu"}}

    @pytest.mark.asyncio
    async def test_ping(self, tmp_path):
        """Test ping answers pong over the local transport."""
        result = await get_operation("ping").apply({}, make_context(tmp_path))
        assert result == {"changed": False, "ping": "pong"}


class TestService:
    """Tests for service state convergence."""

    @pytest.mark.asyncio
    async def test_start_then_idempotent(self, tmp_path):
        """Test starting an inactive unit, then re-applying."""
        host = Host(name="web01")
        transport = FakeSystemctl(host)
        context = make_context(tmp_path, transport=transport)
        op = get_operation("service")
        first = await op.apply({"name": "nginx", "state": "started"}, context)
        second = await op.apply({"name": "nginx", "state": "started"}, context)
        assert first["changed"] is True
        assert first["actions"] == ["start"]
        assert second["changed"] is False
        assert "systemctl start nginx" in transport.commands

    @pytest.mark.asyncio
    async def test_restart_always_changes(self, tmp_path):
        """Test restarted acts on every apply."""
        transport = FakeSystemctl(Host(name="web01"), active=True)
        context = make_context(tmp_path, transport=transport)
        result = await get_operation("service").apply({"name": "nginx", "state": "restarted"}, context)
        assert result["changed"] is True

    @pytest.mark.asyncio
    async def test_enable_in_check_mode(self, tmp_path):
        """Test check mode reports enabling without running it."""
        transport = FakeSystemctl(Host(name="web01"))
        context = make_context(tmp_path, transport=transport, check_mode=True)
        result = await get_operation("service").apply({"name": "nginx", "enabled": True}, context)
        assert result["changed"] is True
        assert not any(c.startswith("systemctl enable") for c in transport.commands)


class TestFacts:
    """Tests for fact parsing."""

    def test_parse_os_release(self):
        """Test quoted and unquoted values."""
        text = 'NAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\nID_LIKE=debian\n# comment\n'
        assert parse_os_release(text) == {
            "NAME": "Ubuntu",
            "VERSION_ID": "22.04",
            "ID": "ubuntu",
            "ID_LIKE": "debian",
        }
