"""Connection transports for fleetplay.

A transport executes commands and file operations on one host. Operations
talk only to this interface, so the same operation runs unchanged against
localhost or over SSH.

- LocalTransport: asyncio subprocesses and the local filesystem
- SSHTransport: asyncssh connection with SFTP for file operations

Transport-level failures raise HostConnectionError, which the task runner
retries before declaring the host unreachable.
"""

import asyncio
import logging
import shutil
import stat as stat_module
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import asyncssh

from .exceptions import HostConnectionError
from .types import Host

logger = logging.getLogger(__name__)


@dataclass
class FileStat:
    """Minimal stat result shared by all transports."""

    path: str
    is_dir: bool
    mode: int
    size: int


class Transport(ABC):
    """Interface every transport implements."""

    def __init__(self, host: Host) -> None:
        self.host = host

    @property
    def name(self) -> str:
        return self.host.name

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection. Raises HostConnectionError."""

    @abstractmethod
    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
        chdir: str | None = None,
    ) -> tuple[str, str, int]:
        """Run a shell command, returning (stdout, stderr, return_code)."""

    @abstractmethod
    async def stat(self, path: str) -> FileStat | None:
        """Stat a path, None if it does not exist."""

    @abstractmethod
    async def read_file(self, path: str) -> bytes | None:
        """Read a file, None if it does not exist."""

    @abstractmethod
    async def write_file(self, path: str, content: bytes) -> None:
        """Create or replace a file."""

    @abstractmethod
    async def make_directory(self, path: str) -> None:
        """Create a directory and any missing parents."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove a file or directory tree."""

    @abstractmethod
    async def chmod(self, path: str, mode: int) -> None:
        """Set permission bits."""

    async def close(self) -> None:
        """Release connection resources."""


class LocalTransport(Transport):
    """Runs everything on the controller."""

    async def connect(self) -> None:
        return None

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
        chdir: str | None = None,
    ) -> tuple[str, str, int]:
        logger.debug(f"Running locally for {self.name}: {command[:100]}")
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=chdir,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode() if stdin else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return stdout.decode(), stderr.decode(), process.returncode or 0

    async def stat(self, path: str) -> FileStat | None:
        def _stat() -> FileStat | None:
            p = Path(path)
            if not p.exists():
                return None
            st = p.stat()
            return FileStat(
                path=str(p),
                is_dir=p.is_dir(),
                mode=stat_module.S_IMODE(st.st_mode),
                size=st.st_size,
            )

        return await asyncio.to_thread(_stat)

    async def read_file(self, path: str) -> bytes | None:
        def _read() -> bytes | None:
            p = Path(path)
            return p.read_bytes() if p.is_file() else None

        return await asyncio.to_thread(_read)

    async def write_file(self, path: str, content: bytes) -> None:
        await asyncio.to_thread(Path(path).write_bytes, content)

    async def make_directory(self, path: str) -> None:
        await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)

    async def remove(self, path: str) -> None:
        def _remove() -> None:
            p = Path(path)
            if p.is_dir():
                shutil.rmtree(p)
            elif p.exists():
                p.unlink()

        await asyncio.to_thread(_remove)

    async def chmod(self, path: str, mode: int) -> None:
        await asyncio.to_thread(Path(path).chmod, mode)


class SSHTransport(Transport):
    """Async SSH transport.

    The connection is created on first use and cached for the run.

    Example:
        transport = SSHTransport(Host(name="web01", address="10.0.0.1", user="deploy"))
        stdout, stderr, rc = await transport.run("uptime")
    """

    def __init__(
        self,
        host: Host,
        connect_timeout: float = 30.0,
        known_hosts: Any = (),
        client_keys: list[str] | None = None,
        password: str | None = None,
    ) -> None:
        super().__init__(host)
        self.connect_timeout = connect_timeout
        self.known_hosts = known_hosts
        self.client_keys = client_keys
        self.password = password
        self._conn: asyncssh.SSHClientConnection | None = None
        self._lock = asyncio.Lock()

    def connect_options(self) -> dict[str, Any]:
        """Convert host connection parameters to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.host.address,
            "port": self.host.port,
            "connect_timeout": self.connect_timeout,
        }
        if self.host.user:
            options["username"] = self.host.user
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None  # Disable host key checking
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts
        return options

    async def _connection(self) -> asyncssh.SSHClientConnection:
        async with self._lock:
            if self._conn is None or self._conn.is_closed():
                logger.debug(f"Connecting to {self.host.address}:{self.host.port}")
                try:
                    self._conn = await asyncssh.connect(**self.connect_options())
                except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                    raise HostConnectionError(self.name, str(e) or type(e).__name__) from e
                logger.info(f"Connected to {self.host.address}")
            return self._conn

    async def connect(self) -> None:
        await self._connection()

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
        chdir: str | None = None,
    ) -> tuple[str, str, int]:
        conn = await self._connection()
        if chdir:
            command = f"cd {chdir} && {command}"
        logger.debug(f"Running on {self.host.address}: {command[:100]}")
        try:
            result = await asyncio.wait_for(
                conn.run(command, input=stdin or None, check=False),
                timeout=timeout,
            )
        except (asyncssh.ConnectionLost, asyncssh.DisconnectError) as e:
            self._conn = None
            raise HostConnectionError(self.name, str(e)) from e
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if isinstance(stdout, bytes):
            stdout = stdout.decode()
        if isinstance(stderr, bytes):
            stderr = stderr.decode()
        return stdout, stderr, result.exit_status or 0

    async def stat(self, path: str) -> FileStat | None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            try:
                attrs = await sftp.stat(path)
            except asyncssh.SFTPNoSuchFile:
                return None
        permissions = attrs.permissions or 0
        return FileStat(
            path=path,
            is_dir=stat_module.S_ISDIR(permissions),
            mode=stat_module.S_IMODE(permissions),
            size=attrs.size or 0,
        )

    async def read_file(self, path: str) -> bytes | None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            try:
                async with sftp.open(path, "rb") as f:
                    return await f.read()
            except asyncssh.SFTPNoSuchFile:
                return None

    async def write_file(self, path: str, content: bytes) -> None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            async with sftp.open(path, "wb") as f:
                await f.write(content)

    async def make_directory(self, path: str) -> None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            await sftp.makedirs(path, exist_ok=True)

    async def remove(self, path: str) -> None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            if await sftp.isdir(path):
                await sftp.rmtree(path)
            elif await sftp.exists(path):
                await sftp.remove(path)

    async def chmod(self, path: str, mode: int) -> None:
        conn = await self._connection()
        async with conn.start_sftp_client() as sftp:
            await sftp.chmod(path, mode)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None and not self._conn.is_closed():
                self._conn.close()
                await self._conn.wait_closed()
                logger.debug(f"Disconnected from {self.host.address}")
            self._conn = None


class TransportFactory:
    """Creates and caches one transport per host."""

    def __init__(self, **ssh_options: Any) -> None:
        self.ssh_options = ssh_options
        self._transports: dict[str, Transport] = {}

    def create(self, host: Host) -> Transport:
        transport = self._transports.get(host.name)
        if transport is None:
            if host.is_local:
                transport = LocalTransport(host)
            else:
                transport = SSHTransport(host, **self.ssh_options)
            self._transports[host.name] = transport
        return transport

    async def cleanup_all(self) -> None:
        for transport in self._transports.values():
            await transport.close()
        self._transports.clear()
