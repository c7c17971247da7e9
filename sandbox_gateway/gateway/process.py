"""Locate the gateway process among the processes known to a sandbox."""

import os
import shlex

from ..config import GATEWAY_SIGNATURES
from ..log_config import get_logger
from ..sandbox.handle import ProcessHandle, SandboxHandle

log = get_logger("process_finder")


def _split_command(command: str) -> list[str]:
    try:
        return shlex.split(command)
    except ValueError:
        return command.split()


def matches_gateway_command(command: str) -> bool:
    """
    True if ``command`` launches the gateway.

    The binary is compared by basename and the fixed arguments must follow it
    exactly. Extra trailing arguments are allowed, leading environment
    assignments (``FOO=bar cmd``) are skipped. CLI calls such as
    ``clawdbot devices list`` never match.
    """
    argv = _split_command(command)
    while argv and "=" in argv[0] and not argv[0].startswith(("/", ".")):
        argv = argv[1:]
    if not argv:
        return False

    for signature in GATEWAY_SIGNATURES:
        if len(argv) < len(signature):
            continue
        if os.path.basename(argv[0]) != os.path.basename(signature[0]):
            continue
        if argv[1 : len(signature)] == list(signature[1:]):
            return True
    return False


async def find_gateway_process(sandbox: SandboxHandle) -> ProcessHandle | None:
    """
    Return the most recently started gateway process, or ``None``.

    The sandbox does not enforce uniqueness. If start attempts raced, several
    matches can exist; the older ones are logged as leaked and left alone.
    """
    processes = await sandbox.list_processes()
    matches = [p for p in processes if matches_gateway_command(p.command)]
    if not matches:
        return None

    matches.sort(key=lambda p: p.started_at, reverse=True)
    newest, *leaked = matches
    for proc in leaked:
        log.debug(
            "gateway.leaked_process",
            sandbox_name=sandbox.name,
            process_id=proc.id,
            active_process_id=newest.id,
        )
    return newest
