"""Tests for the host-local sandbox and bounded command helpers."""

import asyncio

import pytest

from sandbox_gateway.sandbox.commands import run_command, wait_for_process
from sandbox_gateway.sandbox.local import LocalSandbox, LocalSandboxProvider
from sandbox_gateway.sandbox.types import ProcessStatus
from tests.conftest import FakeProcess


class TestLocalSandbox:
    """Tests for LocalSandbox processes and port checks."""

    @pytest.mark.asyncio
    async def test_command_output_and_exit_code(self):
        sandbox = LocalSandbox("test")

        result = await run_command(sandbox, "echo out; echo err >&2; exit 3", timeout=5, interval=0.05)

        assert result.status == ProcessStatus.FAILED
        assert result.exit_code == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert result.succeeded is False

    @pytest.mark.asyncio
    async def test_env_is_passed(self):
        sandbox = LocalSandbox("test")

        result = await run_command(
            sandbox, 'echo "$GATEWAY_PORT"', timeout=5, interval=0.05, env={"GATEWAY_PORT": "18789"}
        )

        assert result.succeeded
        assert result.stdout.strip() == "18789"

    @pytest.mark.asyncio
    async def test_kill_terminates_process(self):
        sandbox = LocalSandbox("test")
        proc = await sandbox.start_process("sleep 30")

        assert await proc.refresh() == ProcessStatus.RUNNING
        await proc.kill()
        status = await wait_for_process(proc, timeout=5, interval=0.05)

        assert status == ProcessStatus.FAILED
        assert await sandbox.list_processes() == [proc]

    @pytest.mark.asyncio
    async def test_port_check(self):
        sandbox = LocalSandbox("test")
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]

        try:
            assert await sandbox.is_port_open(port) is True
        finally:
            server.close()
            await server.wait_closed()

        assert await sandbox.is_port_open(port) is False

    @pytest.mark.asyncio
    async def test_mount_creates_directory(self, tmp_path):
        sandbox = LocalSandbox("test")
        mount_path = str(tmp_path / "bucket")

        assert await sandbox.is_mounted(mount_path) is False
        await sandbox.mount_bucket("clawdbot-data", mount_path, credentials=None)

        assert await sandbox.is_mounted(mount_path) is True
        assert (tmp_path / "bucket").is_dir()

    @pytest.mark.asyncio
    async def test_provider_returns_same_handle(self):
        provider = LocalSandboxProvider()

        assert await provider.get("clawdbot") is await provider.get("clawdbot")

    @pytest.mark.asyncio
    async def test_provider_lookup_does_not_create(self):
        provider = LocalSandboxProvider()

        assert await provider.lookup("clawdbot") is None
        handle = await provider.get("clawdbot")
        assert await provider.lookup("clawdbot") is handle


class TestWaitForProcess:
    """Bounded polling never kills the process it gives up on."""

    @pytest.mark.asyncio
    async def test_returns_terminal_status(self):
        proc = FakeProcess(statuses=[ProcessStatus.RUNNING, ProcessStatus.COMPLETED], exit_code=0)

        assert await wait_for_process(proc, timeout=1, interval=0.01) == ProcessStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        proc = FakeProcess(statuses=[ProcessStatus.RUNNING])

        status = await wait_for_process(proc, timeout=0.05, interval=0.01)

        assert status == ProcessStatus.RUNNING
        assert 2 <= proc.refresh_count <= 7
        assert proc.kill_count == 0


class TestRunCommand:
    """Finished commands are pruned from the sandbox's process list."""

    @pytest.mark.asyncio
    async def test_repeated_commands_leave_no_records(self):
        sandbox = LocalSandbox("test")

        for _ in range(20):
            result = await run_command(sandbox, "echo hi", timeout=5, interval=0.05)
            assert result.stdout.strip() == "hi"

        assert await sandbox.list_processes() == []

    @pytest.mark.asyncio
    async def test_timed_out_command_is_kept(self, sandbox):
        sandbox.on_command("sleep", statuses=[ProcessStatus.RUNNING])

        result = await run_command(sandbox, "sleep 30", timeout=0.03, interval=0.01)

        assert result.timed_out
        assert [p.command for p in sandbox.processes] == ["sleep 30"]
        assert sandbox.removed == []

    @pytest.mark.asyncio
    async def test_removal_failure_still_returns_output(self, sandbox):
        sandbox.on_command("echo", statuses=[ProcessStatus.COMPLETED], exit_code=0, stdout="hi\n")

        async def fail_remove(proc):
            raise RuntimeError("rm: permission denied")

        sandbox.remove_process = fail_remove

        result = await run_command(sandbox, "echo hi", timeout=1, interval=0.01)

        assert result.succeeded
        assert result.stdout == "hi\n"
