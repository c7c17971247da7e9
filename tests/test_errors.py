"""Tests for startup error classification."""

import pytest

from sandbox_gateway.gateway.errors import (
    KIND_MISSING_CREDENTIAL,
    KIND_RESOURCE_EXHAUSTION,
    KIND_UNKNOWN,
    ConfigurationError,
    ReadinessTimeout,
    ResourceExhaustion,
    SpawnFailure,
    classify_exit,
)


class TestClassifyExit:
    @pytest.mark.parametrize(
        "output",
        [
            "FATAL ERROR: Reached heap limit Allocation failed - JavaScript heap out of memory",
            "<--- Last few GCs ---> heap out of memory",
            "Out of memory: Killed process 12 (node)",
            "container OOM killed",
        ],
    )
    def test_out_of_memory_output(self, output):
        error = classify_exit("Gateway exited with code 134", output)

        assert isinstance(error, ResourceExhaustion)
        assert error.kind == KIND_RESOURCE_EXHAUSTION
        assert error.output == output

    def test_other_exit_is_unknown(self):
        error = classify_exit("Gateway exited with code 1", "Error: invalid config file")

        assert isinstance(error, SpawnFailure)
        assert error.kind == KIND_UNKNOWN

    def test_marker_in_message(self):
        error = classify_exit("Gateway exited with code 137. Output: OOM", "")

        assert isinstance(error, ResourceExhaustion)


class TestPayload:
    """Every startup error carries the same response shape."""

    @pytest.mark.parametrize(
        "error,kind,reason",
        [
            (ConfigurationError("ANTHROPIC_API_KEY is not configured"), KIND_MISSING_CREDENTIAL, "configuration"),
            (SpawnFailure("exec failed"), KIND_UNKNOWN, "spawn_failure"),
            (ReadinessTimeout("not reachable"), KIND_UNKNOWN, "readiness_timeout"),
            (ResourceExhaustion("heap out of memory"), KIND_RESOURCE_EXHAUSTION, "resource_exhaustion"),
        ],
    )
    def test_payload_fields(self, error, kind, reason):
        payload = error.to_payload()

        assert payload["error"] == "Gateway failed to start"
        assert payload["kind"] == kind
        assert payload["reason"] == reason
        assert payload["details"] == str(error)
        assert payload["hint"]

    def test_timeout_hint_differs_from_spawn_hint(self):
        assert ReadinessTimeout("x").hint != SpawnFailure("x").hint

    def test_missing_credential_hint_names_variable(self):
        assert "ANTHROPIC_API_KEY" in ConfigurationError("x").hint
