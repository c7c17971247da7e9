"""
Device pairing through the clawdbot CLI.

The CLI connects to the gateway over its own WebSocket, so every call here
needs a ready gateway. Its output is not a stable interface: JSON is pulled
out of stdout when present, otherwise the raw output is handed back.
"""

import json
import re
import shlex
from dataclasses import dataclass
from typing import Any

from ..config import CLI_POLL_INTERVAL, CLI_TIMEOUT, GATEWAY_PORT
from ..log_config import get_logger
from ..sandbox.commands import run_command
from ..sandbox.handle import SandboxHandle

log = get_logger("devices")

CLI_GATEWAY_URL = f"ws://localhost:{GATEWAY_PORT}"
LIST_DEVICES_COMMAND = f"clawdbot devices list --json --url {CLI_GATEWAY_URL}"

# The CLI may print log lines around the JSON document
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class DeviceListError(Exception):
    """The device list could not be parsed."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


@dataclass(frozen=True)
class ApprovalResult:
    request_id: str
    success: bool
    stdout: str = ""
    stderr: str = ""
    error: str | None = None


def approve_command(request_id: str) -> str:
    return f"clawdbot devices approve {shlex.quote(request_id)} --url {CLI_GATEWAY_URL}"


def extract_json_object(output: str) -> dict[str, Any] | None:
    """
    Return the JSON object embedded in ``output``, or ``None`` if there is none.

    Raises:
        ValueError: If something that looks like JSON does not parse.
    """
    match = _JSON_OBJECT_RE.search(output)
    if match is None:
        return None
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("device list is not a JSON object")
    return data


async def list_devices(
    sandbox: SandboxHandle,
    timeout: float = CLI_TIMEOUT,
    interval: float = CLI_POLL_INTERVAL,
) -> dict[str, Any]:
    """List pending and paired devices."""
    result = await run_command(sandbox, LIST_DEVICES_COMMAND, timeout=timeout, interval=interval)
    try:
        data = extract_json_object(result.stdout)
    except ValueError as e:
        log.warn("devices.parse_error", exc=e)
        return {
            "pending": [],
            "paired": [],
            "raw": result.stdout,
            "stderr": result.stderr,
            "parseError": "Failed to parse CLI output",
        }
    if data is None:
        return {"pending": [], "paired": [], "raw": result.stdout, "stderr": result.stderr}
    return data


async def approve_device(
    sandbox: SandboxHandle,
    request_id: str,
    timeout: float = CLI_TIMEOUT,
    interval: float = CLI_POLL_INTERVAL,
) -> ApprovalResult:
    """Approve one pending device. The CLI prints "Approved ..." on success."""
    result = await run_command(
        sandbox, approve_command(request_id), timeout=timeout, interval=interval
    )
    success = "approved" in result.stdout.lower() or result.exit_code == 0
    log.info("devices.approve", request_id=request_id, success=success, exit_code=result.exit_code)
    return ApprovalResult(
        request_id=request_id,
        success=success,
        stdout=result.stdout,
        stderr=result.stderr,
    )


async def approve_all_devices(
    sandbox: SandboxHandle,
    timeout: float = CLI_TIMEOUT,
    interval: float = CLI_POLL_INTERVAL,
) -> list[ApprovalResult]:
    """
    Approve every pending device, one CLI call each.

    Raises:
        DeviceListError: If the pending list cannot be parsed.
    """
    listing = await run_command(sandbox, LIST_DEVICES_COMMAND, timeout=timeout, interval=interval)
    try:
        data = extract_json_object(listing.stdout) or {}
    except ValueError as e:
        raise DeviceListError("Failed to parse device list", raw=listing.stdout) from e

    results = []
    for device in data.get("pending") or []:
        request_id = str(device.get("requestId", "")) if isinstance(device, dict) else ""
        if not request_id:
            continue
        try:
            results.append(await approve_device(sandbox, request_id, timeout, interval))
        except Exception as e:
            log.error("devices.approve_error", request_id=request_id, exc=e)
            results.append(ApprovalResult(request_id=request_id, success=False, error=str(e)))
    return results
