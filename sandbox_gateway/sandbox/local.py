"""
Host-local sandbox for development.

Commands run as ordinary subprocesses on the machine running the web app and
ports are reached on 127.0.0.1. There is no remote bucket: "mounting" only
makes sure the mount directory exists, so backups land in a local directory.
"""

import asyncio
import contextlib
import os
import signal
import time
import uuid
from pathlib import Path

from ..config import StorageCredentials
from ..log_config import get_logger
from .types import ProcessLogs, ProcessStatus, status_from_exit_code

PORT_CHECK_TIMEOUT = 1.0
LOG_DRAIN_TIMEOUT = 2.0


class LocalProcess:
    """A shell command running on the host."""

    def __init__(self, process_id: str, command: str, proc: asyncio.subprocess.Process):
        self.id = process_id
        self.command = command
        self.started_at = time.time()
        self._proc = proc
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._readers = [
            asyncio.create_task(self._drain(proc.stdout, self._stdout)),
            asyncio.create_task(self._drain(proc.stderr, self._stderr)),
        ]

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
        if stream is None:
            return
        async for chunk in stream:
            sink.append(chunk)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def status(self) -> ProcessStatus:
        return status_from_exit_code(self._proc.returncode)

    @property
    def exit_code(self) -> int | None:
        return self._proc.returncode

    async def refresh(self) -> ProcessStatus:
        await asyncio.sleep(0)
        return self.status

    async def get_logs(self) -> ProcessLogs:
        if self._proc.returncode is not None:
            # Make sure output written just before exit has been collected
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(asyncio.gather(*self._readers), LOG_DRAIN_TIMEOUT)
        return ProcessLogs(
            stdout=b"".join(self._stdout).decode(errors="replace"),
            stderr=b"".join(self._stderr).decode(errors="replace"),
        )

    async def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self._proc.pid, signal.SIGTERM)


class LocalSandbox:
    """Sandbox handle that runs everything on the local host."""

    def __init__(self, name: str):
        self.name = name
        self._processes: list[LocalProcess] = []
        self._mounts: set[str] = set()
        self.log = get_logger("local_sandbox", sandbox_name=name)

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> LocalProcess:
        proc = await asyncio.create_subprocess_shell(
            command,
            env={**os.environ, **(env or {})},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        process = LocalProcess(uuid.uuid4().hex[:16], command, proc)
        self._processes.append(process)
        self.log.debug("process.launched", process_id=process.id, pid=proc.pid, command=command)
        return process

    async def list_processes(self) -> list[LocalProcess]:
        return list(self._processes)

    async def remove_process(self, proc: LocalProcess) -> None:
        if proc in self._processes:
            self._processes.remove(proc)

    async def is_port_open(self, port: int) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection("127.0.0.1", port), PORT_CHECK_TIMEOUT
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    async def http_url(self, port: int) -> str:
        return f"http://127.0.0.1:{port}"

    async def ws_url(self, port: int) -> str:
        return f"ws://127.0.0.1:{port}"

    async def is_mounted(self, mount_path: str) -> bool:
        return mount_path in self._mounts

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        credentials: StorageCredentials,
    ) -> None:
        Path(mount_path).mkdir(parents=True, exist_ok=True)
        self._mounts.add(mount_path)
        self.log.warn("storage.local_directory", bucket=bucket, mount_path=mount_path)


class LocalSandboxProvider:
    """Keeps one :class:`LocalSandbox` per logical name for the life of the app."""

    def __init__(self):
        self._handles: dict[str, LocalSandbox] = {}

    async def get(self, name: str) -> LocalSandbox:
        if name not in self._handles:
            self._handles[name] = LocalSandbox(name)
        return self._handles[name]

    async def lookup(self, name: str) -> LocalSandbox | None:
        return self._handles.get(name)
