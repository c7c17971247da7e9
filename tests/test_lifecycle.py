"""Tests for gateway lifecycle management."""

import asyncio

import pytest

from sandbox_gateway.config import GATEWAY_COMMAND, GATEWAY_PORT
from sandbox_gateway.gateway.errors import (
    KIND_MISSING_CREDENTIAL,
    KIND_RESOURCE_EXHAUSTION,
    ConfigurationError,
    ReadinessTimeout,
    ResourceExhaustion,
    SpawnFailure,
)
from sandbox_gateway.gateway.lifecycle import GatewayManager
from sandbox_gateway.sandbox.types import ProcessStatus
from tests.conftest import STORAGE_CREDENTIALS, FakeProcess, FakeSandbox, make_settings


@pytest.fixture
def manager(settings) -> GatewayManager:
    return GatewayManager(settings, restart_grace=0)


class TestEnsureReady:
    """Tests for reuse, spawn and readiness polling."""

    @pytest.mark.asyncio
    async def test_reuses_running_gateway(self, manager: GatewayManager, sandbox: FakeSandbox):
        """A running gateway is returned without spawning or probing."""
        existing = sandbox.add_process(FakeProcess(statuses=[ProcessStatus.RUNNING]))

        proc = await manager.ensure_ready(sandbox)

        assert proc is existing
        assert sandbox.started == []
        assert sandbox.port_checks == 0

    @pytest.mark.asyncio
    async def test_spawns_when_none_running(self, manager: GatewayManager, sandbox: FakeSandbox):
        """Spawns the launch command with credentials and the fixed port."""
        proc = await manager.ensure_ready(sandbox)

        assert len(sandbox.gateway_starts) == 1
        command, env = sandbox.gateway_starts[0]
        assert command == GATEWAY_COMMAND
        assert env["ANTHROPIC_API_KEY"] == "sk-ant-test"
        assert env["GATEWAY_PORT"] == str(GATEWAY_PORT)
        assert proc.command == GATEWAY_COMMAND

    @pytest.mark.asyncio
    async def test_passes_only_configured_integration_tokens(self, sandbox: FakeSandbox):
        """Optional tokens are forwarded when set and omitted otherwise."""
        settings = make_settings(integration_tokens={"TELEGRAM_BOT_TOKEN": "tg-token"})
        manager = GatewayManager(settings)

        await manager.ensure_ready(sandbox)

        _command, env = sandbox.gateway_starts[0]
        assert env["TELEGRAM_BOT_TOKEN"] == "tg-token"
        assert "DISCORD_BOT_TOKEN" not in env

    @pytest.mark.asyncio
    async def test_replaces_terminated_gateway(self, manager: GatewayManager, sandbox: FakeSandbox):
        """A gateway found in a terminal state is not reused."""
        sandbox.add_process(FakeProcess(statuses=[ProcessStatus.FAILED], exit_code=1))

        proc = await manager.ensure_ready(sandbox)

        assert len(sandbox.gateway_starts) == 1
        assert proc is sandbox.processes[-1]

    @pytest.mark.asyncio
    async def test_ignores_cli_processes(self, manager: GatewayManager, sandbox: FakeSandbox):
        """A running CLI call is not mistaken for the gateway."""
        sandbox.add_process(FakeProcess(command="clawdbot devices list --json"))

        await manager.ensure_ready(sandbox)

        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_waits_for_port(self, manager: GatewayManager, sandbox: FakeSandbox):
        """Polls until the port accepts connections."""
        sandbox.open_after_checks = 3

        await manager.ensure_ready(sandbox)

        assert sandbox.port_checks == 3

    @pytest.mark.asyncio
    async def test_mounts_storage_before_spawn(self, sandbox: FakeSandbox):
        """Storage is mounted so the start script can restore state."""
        manager = GatewayManager(make_settings(storage=STORAGE_CREDENTIALS))

        await manager.ensure_ready(sandbox)

        assert sandbox.mount_calls == 1

    @pytest.mark.asyncio
    async def test_mount_failure_does_not_block_start(self, sandbox: FakeSandbox):
        """A failing mount is logged and the gateway still starts."""
        sandbox.mount_error = RuntimeError("s3fs: bad credentials")
        manager = GatewayManager(make_settings(storage=STORAGE_CREDENTIALS))

        await manager.ensure_ready(sandbox)

        assert len(sandbox.gateway_starts) == 1


class TestStartupFailures:
    """Tests for failure classification."""

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_before_spawn(self, sandbox: FakeSandbox):
        """A missing AI-provider key is a configuration error and nothing is spawned."""
        manager = GatewayManager(make_settings(anthropic_api_key=None))

        with pytest.raises(ConfigurationError) as exc_info:
            await manager.ensure_ready(sandbox)

        assert sandbox.started == []
        payload = exc_info.value.to_payload()
        assert payload["kind"] == KIND_MISSING_CREDENTIAL
        assert "ANTHROPIC_API_KEY" in payload["hint"]

    @pytest.mark.asyncio
    async def test_spawn_error_is_spawn_failure(self, manager: GatewayManager, sandbox: FakeSandbox):
        sandbox.spawn_error = RuntimeError("exec failed")

        with pytest.raises(SpawnFailure, match="exec failed"):
            await manager.ensure_ready(sandbox)

    @pytest.mark.asyncio
    async def test_exit_before_reachable_is_spawn_failure(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        """running -> failed before the port opens is a spawn failure, not a timeout."""
        sandbox.port_open = False
        sandbox.on_command(
            GATEWAY_COMMAND,
            statuses=[ProcessStatus.RUNNING, ProcessStatus.FAILED],
            exit_code=1,
            stderr="Error: Cannot find module 'clawdbot'",
        )

        with pytest.raises(SpawnFailure) as exc_info:
            await manager.ensure_ready(sandbox)

        assert not isinstance(exc_info.value, ReadinessTimeout)
        assert "Cannot find module" in str(exc_info.value)
        assert "code 1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_out_of_memory_is_resource_exhaustion(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        sandbox.port_open = False
        sandbox.on_command(
            GATEWAY_COMMAND,
            statuses=[ProcessStatus.RUNNING, ProcessStatus.FAILED],
            exit_code=134,
            stderr="FATAL ERROR: Reached heap limit Allocation failed - JavaScript heap out of memory",
        )

        with pytest.raises(ResourceExhaustion) as exc_info:
            await manager.ensure_ready(sandbox)

        assert exc_info.value.to_payload()["kind"] == KIND_RESOURCE_EXHAUSTION

    @pytest.mark.asyncio
    async def test_completed_before_reachable_fails(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        """A gateway that exits cleanly without listening is still a failure."""
        sandbox.port_open = False
        sandbox.on_command(GATEWAY_COMMAND, statuses=[ProcessStatus.COMPLETED], exit_code=0)

        with pytest.raises(SpawnFailure):
            await manager.ensure_ready(sandbox)

    @pytest.mark.asyncio
    async def test_never_reachable_times_out(self, sandbox: FakeSandbox):
        """A running gateway that never opens its port hits the bound."""
        manager = GatewayManager(make_settings(), startup_timeout=0.05, poll_interval=0.01)
        sandbox.port_open = False

        with pytest.raises(ReadinessTimeout) as exc_info:
            await manager.ensure_ready(sandbox)

        assert exc_info.value.reason == "readiness_timeout"
        assert sandbox.port_checks <= 6

    @pytest.mark.asyncio
    async def test_poll_error_does_not_abort(self, manager: GatewayManager, sandbox: FakeSandbox):
        """A transient polling error is logged and polling continues."""
        proc = FakeProcess()
        calls = {"count": 0}
        original_refresh = proc.refresh

        async def flaky_refresh():
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("exec timed out")
            return await original_refresh()

        proc.refresh = flaky_refresh

        async def start_process(command, env=None):
            sandbox.started.append((command, env))
            sandbox.processes.append(proc)
            return proc

        sandbox.start_process = start_process
        sandbox.open_after_checks = 2

        assert await manager.ensure_ready(sandbox) is proc


class TestSingleFlight:
    """Concurrent callers share one start attempt."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_spawn_once(self, manager: GatewayManager, sandbox: FakeSandbox):
        sandbox.spawn_delay = 0.01
        sandbox.open_after_checks = 3

        results = await asyncio.gather(*(manager.ensure_ready(sandbox) for _ in range(10)))

        assert len(sandbox.gateway_starts) == 1
        assert all(proc is results[0] for proc in results)
        assert not manager.is_starting(sandbox.name)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        sandbox.spawn_delay = 0.01
        sandbox.spawn_error = RuntimeError("no capacity")

        results = await asyncio.gather(
            *(manager.ensure_ready(sandbox) for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(r, SpawnFailure) for r in results)
        assert len({id(r) for r in results}) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, manager: GatewayManager, sandbox: FakeSandbox):
        """The in-flight entry is cleared so the next call tries again."""
        sandbox.spawn_error = RuntimeError("no capacity")
        with pytest.raises(SpawnFailure):
            await manager.ensure_ready(sandbox)

        await asyncio.sleep(0)
        sandbox.spawn_error = None
        await manager.ensure_ready(sandbox)

        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_joined_attempt_respects_ignored_process(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        """A restart joining an in-flight call never resolves to the process it killed."""
        sandbox.add_process(
            FakeProcess(statuses=[ProcessStatus.RUNNING], started_at=1.0, process_id="old")
        )
        first = asyncio.create_task(manager.ensure_ready(sandbox))
        await asyncio.sleep(0)
        assert manager.is_starting(sandbox.name)

        proc = await manager.ensure_ready(sandbox, ignore_process_id="old")

        assert (await first).id == "old"
        assert proc.id != "old"
        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_attempt(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        sandbox.spawn_delay = 0.02

        first = asyncio.create_task(manager.ensure_ready(sandbox))
        await asyncio.sleep(0.005)
        second = asyncio.create_task(manager.ensure_ready(sandbox))
        await asyncio.sleep(0)
        first.cancel()

        proc = await second

        assert first.cancelled()
        assert len(sandbox.gateway_starts) == 1
        assert proc.command == GATEWAY_COMMAND

    @pytest.mark.asyncio
    async def test_sandboxes_are_independent(self, manager: GatewayManager):
        """Attempts are keyed by sandbox name."""
        first, second = FakeSandbox("one"), FakeSandbox("two")

        await asyncio.gather(manager.ensure_ready(first), manager.ensure_ready(second))

        assert len(first.gateway_starts) == 1
        assert len(second.gateway_starts) == 1


class TestRestart:
    """Tests for the explicit restart operation."""

    @pytest.mark.asyncio
    async def test_kills_and_starts_new(self, manager: GatewayManager, sandbox: FakeSandbox):
        existing = sandbox.add_process(FakeProcess(process_id="pid-42"))

        result = await manager.restart(sandbox)

        # Returned before the new gateway was started
        assert sandbox.gateway_starts == []
        assert existing.kill_count == 1
        assert result.previous_process_id == "pid-42"
        assert result.status == "starting"
        assert "killed" in result.message

        await manager.wait_for_background()
        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_does_not_reuse_killed_process(
        self, manager: GatewayManager, sandbox: FakeSandbox
    ):
        """Even if the kill is not confirmed, the old process is not reused."""
        existing = sandbox.add_process(FakeProcess(process_id="pid-7"))
        existing.kill_error = RuntimeError("kill: no such process")

        result = await manager.restart(sandbox)
        await manager.wait_for_background()

        assert result.previous_process_id == "pid-7"
        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_restart_without_existing(self, manager: GatewayManager, sandbox: FakeSandbox):
        result = await manager.restart(sandbox)
        await manager.wait_for_background()

        assert result.previous_process_id is None
        assert "No existing process" in result.message
        assert len(sandbox.gateway_starts) == 1

    @pytest.mark.asyncio
    async def test_background_failure_is_swallowed(self, sandbox: FakeSandbox):
        manager = GatewayManager(make_settings(anthropic_api_key=None), restart_grace=0)

        result = await manager.restart(sandbox)
        await manager.wait_for_background()

        assert result.status == "starting"
        assert sandbox.started == []
