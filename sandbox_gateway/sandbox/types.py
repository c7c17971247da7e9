"""Type definitions for sandbox processes."""

from dataclasses import dataclass
from enum import Enum


class ProcessStatus(str, Enum):
    """Polled status of a process inside the sandbox."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessStatus.COMPLETED, ProcessStatus.FAILED)


@dataclass(frozen=True)
class ProcessLogs:
    """Snapshot of a process's buffered output."""

    stdout: str = ""
    stderr: str = ""

    @property
    def combined(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a bounded command run inside the sandbox."""

    status: ProcessStatus
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == ProcessStatus.COMPLETED or self.exit_code == 0


def status_from_exit_code(exit_code: int | None) -> ProcessStatus:
    if exit_code is None:
        return ProcessStatus.RUNNING
    return ProcessStatus.COMPLETED if exit_code == 0 else ProcessStatus.FAILED


class StorageError(Exception):
    """Raised by a sandbox handle when mounting remote storage fails."""
