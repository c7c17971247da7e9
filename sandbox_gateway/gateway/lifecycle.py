"""
Gateway lifecycle management.

``GatewayManager.ensure_ready`` guarantees a reachable gateway process in a
sandbox, reusing a running one or starting a new one. Concurrent callers for
the same sandbox share a single attempt: the first caller starts it, later
callers await the same task, and the entry is cleared once it resolves so a
failed attempt can be retried by the next request.
"""

import asyncio
import math
import time
from dataclasses import dataclass

from ..config import (
    AI_PROVIDER_KEY_ENV,
    GATEWAY_COMMAND,
    GATEWAY_PORT,
    MOUNT_PATH,
    RESTART_GRACE_PERIOD,
    GatewaySettings,
)
from ..log_config import get_logger
from ..sandbox.handle import ProcessHandle, SandboxHandle
from ..sandbox.types import ProcessLogs, ProcessStatus
from ..storage.mount import ensure_mounted
from .errors import (
    ConfigurationError,
    GatewayStartupError,
    ReadinessTimeout,
    SpawnFailure,
    classify_exit,
)
from .process import find_gateway_process

OUTPUT_TAIL_CHARS = 2000


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[-limit:]


@dataclass(frozen=True)
class RestartResult:
    """Outcome of a restart request. The new gateway is still starting."""

    previous_process_id: str | None
    message: str
    status: str = "starting"


class GatewayManager:
    """
    Keeps exactly one healthy gateway process per sandbox.

    Handles:
    - Reuse of an already running gateway
    - Spawning with the configured credentials and integration tokens
    - Bounded readiness polling (status + port check)
    - Failure classification into actionable startup errors
    - Single-flight de-duplication of concurrent start attempts
    - Explicit restart (kill, grace period, background start)
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        poll_interval: float | None = None,
        startup_timeout: float | None = None,
        restart_grace: float = RESTART_GRACE_PERIOD,
    ):
        self.settings = settings
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.startup_timeout = (
            startup_timeout if startup_timeout is not None else settings.startup_timeout
        )
        self.restart_grace = restart_grace
        self._inflight: dict[str, asyncio.Task[ProcessHandle]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self.log = get_logger("gateway", port=GATEWAY_PORT)

    def is_starting(self, sandbox_name: str) -> bool:
        return sandbox_name in self._inflight

    async def ensure_ready(
        self,
        sandbox: SandboxHandle,
        ignore_process_id: str | None = None,
    ) -> ProcessHandle:
        """
        Return a running, reachable gateway process.

        Args:
            sandbox: The sandbox that hosts the gateway
            ignore_process_id: Never reuse this process (used after a kill)

        Raises:
            GatewayStartupError: If no gateway could be made ready
        """
        key = sandbox.name
        while True:
            task = self._inflight.get(key)
            if task is None or task.done():
                task = asyncio.create_task(self._start_or_reuse(sandbox, ignore_process_id))
                self._inflight[key] = task
                task.add_done_callback(lambda t, k=key: self._clear_inflight(k, t))
                return await asyncio.shield(task)

            self.log.debug("gateway.join_inflight", sandbox_name=key)
            # Shielded so a disconnecting client does not cancel everyone's attempt
            proc = await asyncio.shield(task)
            if ignore_process_id is None or proc.id != ignore_process_id:
                return proc
            # The attempt we joined settled on the process we were told to skip
            self.log.info(
                "gateway.inflight_ignored", sandbox_name=key, process_id=ignore_process_id
            )

    def _clear_inflight(self, key: str, task: asyncio.Task[ProcessHandle]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved; waiters that are still around get it via shield
            task.exception()

    async def _start_or_reuse(
        self,
        sandbox: SandboxHandle,
        ignore_process_id: str | None,
    ) -> ProcessHandle:
        log = self.log.bind(sandbox_name=sandbox.name)

        existing = await find_gateway_process(sandbox)
        if existing is not None and existing.id != ignore_process_id:
            status = await existing.refresh()
            if status == ProcessStatus.RUNNING:
                log.debug("gateway.reuse", process_id=existing.id)
                return existing
            log.info(
                "gateway.stale",
                process_id=existing.id,
                status=status.value,
                exit_code=existing.exit_code,
            )

        if not self.settings.anthropic_api_key:
            log.error("gateway.config_error", missing=AI_PROVIDER_KEY_ENV)
            raise ConfigurationError(f"{AI_PROVIDER_KEY_ENV} is not configured")

        # Best effort: the start script restores state from the mount if present
        await ensure_mounted(
            sandbox, self.settings.storage, MOUNT_PATH, bucket=self.settings.bucket_name
        )

        start_time = time.time()
        log.info("gateway.start", command=GATEWAY_COMMAND)
        try:
            proc = await sandbox.start_process(GATEWAY_COMMAND, env=self.settings.gateway_env())
        except Exception as e:
            log.error("gateway.spawn_error", exc=e)
            raise SpawnFailure(f"Failed to start gateway process: {e}") from e

        try:
            await self._wait_until_ready(sandbox, proc)
        except GatewayStartupError as e:
            log.error(
                "gateway.start_failed",
                process_id=proc.id,
                reason=e.reason,
                kind=e.kind,
                detail=str(e),
                duration_ms=int((time.time() - start_time) * 1000),
            )
            raise

        log.info(
            "gateway.ready",
            process_id=proc.id,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return proc

    async def _wait_until_ready(self, sandbox: SandboxHandle, proc: ProcessHandle) -> None:
        """Poll until the port answers, the process exits, or the bound is hit."""
        max_attempts = max(1, math.ceil(self.startup_timeout / self.poll_interval))

        for _attempt in range(max_attempts):
            try:
                status = await proc.refresh()
            except Exception as e:
                self.log.warn("gateway.poll_error", process_id=proc.id, exc=e)
                status = proc.status

            if status.is_terminal:
                logs = await self._read_logs(proc)
                output = _tail(logs.combined)
                message = f"Gateway exited with code {proc.exit_code} before becoming reachable"
                if output:
                    message = f"{message}. Output: {output}"
                raise classify_exit(message, logs.combined)

            if await self._port_open(sandbox):
                return

            await asyncio.sleep(self.poll_interval)

        logs = await self._read_logs(proc)
        raise ReadinessTimeout(
            f"Gateway not reachable on port {GATEWAY_PORT} after {self.startup_timeout:.0f}s",
            output=logs.combined,
        )

    async def _port_open(self, sandbox: SandboxHandle) -> bool:
        try:
            return await sandbox.is_port_open(GATEWAY_PORT)
        except Exception as e:
            self.log.debug("gateway.port_check_error", exc=e)
            return False

    async def _read_logs(self, proc: ProcessHandle) -> ProcessLogs:
        try:
            return await proc.get_logs()
        except Exception as e:
            self.log.warn("gateway.logs_error", process_id=proc.id, exc=e)
            return ProcessLogs()

    async def restart(self, sandbox: SandboxHandle) -> RestartResult:
        """
        Kill the current gateway and start a new one in the background.

        Termination is requested, then a fixed grace period elapses; the new
        start proceeds whether or not the kill was confirmed. Returns without
        waiting for the new gateway.
        """
        log = self.log.bind(sandbox_name=sandbox.name)
        existing = await find_gateway_process(sandbox)

        if existing is not None:
            log.info("gateway.kill", process_id=existing.id)
            try:
                await existing.kill()
            except Exception as e:
                log.error("gateway.kill_error", process_id=existing.id, exc=e)
            await asyncio.sleep(self.restart_grace)

        previous_id = existing.id if existing is not None else None
        task = asyncio.create_task(self._restart_in_background(sandbox, previous_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        if existing is not None:
            message = "Gateway process killed, new instance starting..."
        else:
            message = "No existing process found, starting new instance..."
        return RestartResult(previous_process_id=previous_id, message=message)

    async def _restart_in_background(self, sandbox: SandboxHandle, previous_id: str | None) -> None:
        try:
            await self.ensure_ready(sandbox, ignore_process_id=previous_id)
        except GatewayStartupError as e:
            self.log.error("gateway.restart_failed", sandbox_name=sandbox.name, exc=e)
        except Exception as e:
            self.log.error("gateway.restart_error", sandbox_name=sandbox.name, exc=e)

    async def wait_for_background(self) -> None:
        """Wait for pending background restarts. Used on shutdown and in tests."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
