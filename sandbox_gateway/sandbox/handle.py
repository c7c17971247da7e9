"""
Interfaces for the sandbox container and the processes running in it.

The gateway code depends only on these protocols. ``ModalSandbox`` is the
production implementation and ``LocalSandbox`` runs everything on the host
for development.
"""

from typing import Protocol

from ..config import StorageCredentials
from .types import ProcessLogs, ProcessStatus


class ProcessHandle(Protocol):
    """A command started inside the sandbox. Status is pull-based."""

    id: str
    command: str
    started_at: float

    @property
    def status(self) -> ProcessStatus:
        """Status as of the last :meth:`refresh`."""
        ...

    @property
    def exit_code(self) -> int | None: ...

    async def refresh(self) -> ProcessStatus:
        """Poll the sandbox for the current status and return it."""
        ...

    async def get_logs(self) -> ProcessLogs: ...

    async def kill(self) -> None: ...


class SandboxHandle(Protocol):
    """One container, identified by a fixed logical name."""

    name: str

    async def start_process(
        self, command: str, env: dict[str, str] | None = None
    ) -> ProcessHandle: ...

    async def list_processes(self) -> list[ProcessHandle]: ...

    async def remove_process(self, proc: ProcessHandle) -> None:
        """Forget a finished process and delete whatever it left behind."""
        ...

    async def is_port_open(self, port: int) -> bool:
        """Check whether something inside the container accepts TCP on ``port``."""
        ...

    async def http_url(self, port: int) -> str:
        """Base ``http(s)://`` URL that reaches ``port`` inside the container."""
        ...

    async def ws_url(self, port: int) -> str:
        """Base ``ws(s)://`` URL that reaches ``port`` inside the container."""
        ...

    async def is_mounted(self, mount_path: str) -> bool: ...

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        credentials: StorageCredentials,
    ) -> None:
        """
        Attach a remote bucket at ``mount_path``.

        Raises:
            StorageError: If the mount command fails.
        """
        ...


class SandboxProvider(Protocol):
    """Resolves the sandbox for a logical name, materializing it lazily."""

    async def get(self, name: str) -> SandboxHandle: ...

    async def lookup(self, name: str) -> SandboxHandle | None:
        """Return the sandbox for ``name`` if it already exists, without creating it."""
        ...
