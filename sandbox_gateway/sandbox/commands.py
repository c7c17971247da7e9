"""Bounded command execution inside the sandbox."""

import asyncio
import math

from ..config import CLI_POLL_INTERVAL, CLI_TIMEOUT
from ..log_config import get_logger
from .handle import ProcessHandle, SandboxHandle
from .types import CommandResult, ProcessStatus

log = get_logger("commands")


async def wait_for_process(
    proc: ProcessHandle,
    timeout: float = CLI_TIMEOUT,
    interval: float = CLI_POLL_INTERVAL,
) -> ProcessStatus:
    """
    Poll ``proc`` until it leaves the running state or the time runs out.

    The process is never killed here; on timeout it is simply abandoned.

    Returns:
        The last polled status (``RUNNING`` or ``PENDING`` means timed out).
    """
    max_attempts = max(1, math.ceil(timeout / interval))
    status = await proc.refresh()
    attempts = 0
    while not status.is_terminal and attempts < max_attempts:
        await asyncio.sleep(interval)
        status = await proc.refresh()
        attempts += 1
    return status


async def run_command(
    sandbox: SandboxHandle,
    command: str,
    timeout: float = CLI_TIMEOUT,
    interval: float = CLI_POLL_INTERVAL,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """
    Start ``command``, wait for it within ``timeout`` and collect its output.

    A command that finished is removed from the sandbox once its output has
    been read, so short-lived commands do not pile up in the process list.
    One that timed out is left in place.
    """
    proc = await sandbox.start_process(command, env=env)
    status = await wait_for_process(proc, timeout=timeout, interval=interval)
    logs = await proc.get_logs()
    result = CommandResult(
        status=status,
        exit_code=proc.exit_code,
        stdout=logs.stdout,
        stderr=logs.stderr,
        timed_out=not status.is_terminal,
    )

    if status.is_terminal:
        try:
            await sandbox.remove_process(proc)
        except Exception as e:
            log.warn("process.remove_error", process_id=proc.id, exc=e)
    return result
