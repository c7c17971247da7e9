"""Sandbox container and process handles."""

from .handle import ProcessHandle, SandboxHandle, SandboxProvider
from .types import CommandResult, ProcessLogs, ProcessStatus, StorageError

__all__ = [
    "CommandResult",
    "ProcessHandle",
    "ProcessLogs",
    "ProcessStatus",
    "SandboxHandle",
    "SandboxProvider",
    "StorageError",
]
