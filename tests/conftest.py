"""Shared fakes for sandbox gateway tests."""

import asyncio
import itertools
import time
from collections.abc import Iterable

import pytest

from sandbox_gateway.config import (
    GATEWAY_COMMAND,
    GatewaySettings,
    StorageCredentials,
)
from sandbox_gateway.sandbox.types import ProcessLogs, ProcessStatus

_ids = itertools.count(1)


class FakeProcess:
    """Process whose polled status follows a scripted sequence."""

    def __init__(
        self,
        command: str = GATEWAY_COMMAND,
        statuses: Iterable[ProcessStatus] = (ProcessStatus.RUNNING,),
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        started_at: float | None = None,
        process_id: str | None = None,
    ):
        self.id = process_id or f"proc-{next(_ids)}"
        self.command = command
        self.started_at = started_at if started_at is not None else time.time()
        self._statuses = list(statuses)
        self._final_exit_code = exit_code
        self._status = ProcessStatus.PENDING
        self.stdout = stdout
        self.stderr = stderr
        self.refresh_count = 0
        self.kill_count = 0
        self.kill_error: Exception | None = None

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def exit_code(self) -> int | None:
        return self._final_exit_code if self._status.is_terminal else None

    async def refresh(self) -> ProcessStatus:
        await asyncio.sleep(0)
        self.refresh_count += 1
        if self.kill_count and self.kill_error is None:
            self._status = ProcessStatus.FAILED
        elif len(self._statuses) > 1:
            self._status = self._statuses.pop(0)
        elif self._statuses:
            self._status = self._statuses[0]
        return self._status

    async def get_logs(self) -> ProcessLogs:
        return ProcessLogs(stdout=self.stdout, stderr=self.stderr)

    async def kill(self) -> None:
        self.kill_count += 1
        if self.kill_error is not None:
            raise self.kill_error


class FakeSandbox:
    """In-memory sandbox. Commands get processes from registered responses."""

    def __init__(self, name: str = "clawdbot"):
        self.name = name
        self.processes: list[FakeProcess] = []
        self.removed: list[FakeProcess] = []
        self.started: list[tuple[str, dict[str, str] | None]] = []
        self.responses: list[tuple[str, dict]] = []
        self.spawn_delay = 0.0
        self.spawn_error: Exception | None = None
        self.port_open = True
        self.open_after_checks: int | None = None
        self.port_checks = 0
        self.mounted = False
        self.mount_calls = 0
        self.mount_error: Exception | None = None
        self.mount_check_error: Exception | None = None

    def on_command(self, fragment: str, **process_kwargs) -> None:
        """Processes for commands containing ``fragment`` are built with these kwargs."""
        self.responses.append((fragment, process_kwargs))

    def add_process(self, proc: FakeProcess) -> FakeProcess:
        self.processes.append(proc)
        return proc

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> FakeProcess:
        await asyncio.sleep(self.spawn_delay)
        if self.spawn_error is not None:
            raise self.spawn_error
        kwargs: dict = {}
        for fragment, process_kwargs in self.responses:
            if fragment in command:
                kwargs = process_kwargs
                break
        proc = FakeProcess(command=command, **kwargs)
        self.processes.append(proc)
        self.started.append((command, env))
        return proc

    async def list_processes(self) -> list[FakeProcess]:
        await asyncio.sleep(0)
        return list(self.processes)

    async def remove_process(self, proc: FakeProcess) -> None:
        if proc in self.processes:
            self.processes.remove(proc)
        self.removed.append(proc)

    async def is_port_open(self, port: int) -> bool:
        self.port_checks += 1
        if self.open_after_checks is not None:
            return self.port_checks >= self.open_after_checks
        return self.port_open

    async def http_url(self, port: int) -> str:
        return f"http://gateway.test:{port}"

    async def ws_url(self, port: int) -> str:
        return f"ws://gateway.test:{port}"

    async def is_mounted(self, mount_path: str) -> bool:
        if self.mount_check_error is not None:
            raise self.mount_check_error
        return self.mounted

    async def mount_bucket(self, bucket: str, mount_path: str, credentials) -> None:
        self.mount_calls += 1
        if self.mount_error is not None:
            raise self.mount_error
        self.mounted = True

    @property
    def gateway_starts(self) -> list[tuple[str, dict[str, str] | None]]:
        return [entry for entry in self.started if entry[0] == GATEWAY_COMMAND]


class FakeProvider:
    def __init__(
        self,
        sandbox: FakeSandbox | None = None,
        error: Exception | None = None,
        missing: bool = False,
    ):
        self.sandbox = sandbox or FakeSandbox()
        self.error = error
        self.missing = missing
        self.requested: list[str] = []

    async def get(self, name: str) -> FakeSandbox:
        self.requested.append(name)
        if self.error is not None:
            raise self.error
        return self.sandbox

    async def lookup(self, name: str) -> FakeSandbox | None:
        self.requested.append(name)
        if self.error is not None:
            raise self.error
        return None if self.missing else self.sandbox


STORAGE_CREDENTIALS = StorageCredentials(
    access_key_id="AKIDEXAMPLE",
    secret_access_key="secret",
    account_id="account123",
)


def make_settings(**overrides) -> GatewaySettings:
    values = {
        "anthropic_api_key": "sk-ant-test",
        "startup_timeout": 1.0,
        "poll_interval": 0.01,
    }
    values.update(overrides)
    return GatewaySettings(**values)


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def settings() -> GatewaySettings:
    return make_settings()


@pytest.fixture
def storage_settings() -> GatewaySettings:
    return make_settings(storage=STORAGE_CREDENTIALS)
