"""
Gateway startup errors and their classification.

The gateway has no structured error channel, so failures are classified from
what is known before spawning (missing credential) and from the text of its
output (out-of-memory markers). Anything else is reported as unknown. This is
a heuristic: an OOM that prints none of the markers is reported as unknown.
"""

from ..config import AI_PROVIDER_KEY_ENV

KIND_MISSING_CREDENTIAL = "missing_credential"
KIND_RESOURCE_EXHAUSTION = "resource_exhaustion"
KIND_UNKNOWN = "unknown"

OOM_MARKERS = (
    "heap out of memory",
    "JavaScript heap",
    "Out of memory",
    "OOM",
)

HINT_MISSING_CREDENTIAL = (
    f"{AI_PROVIDER_KEY_ENV} is not set. Add it to the sandbox-gateway-secrets "
    "Modal secret and redeploy."
)
HINT_RESOURCE_EXHAUSTION = "Gateway ran out of memory. Try again or check for memory leaks."
HINT_SPAWN_FAILURE = "Check the gateway logs with: modal app logs sandbox-gateway"
HINT_READINESS_TIMEOUT = (
    "Gateway did not become reachable in time. Cold starts can be slow; "
    "retry shortly or raise GATEWAY_STARTUP_TIMEOUT."
)


class GatewayStartupError(Exception):
    """Base class for failures to bring the gateway to a ready state."""

    kind = KIND_UNKNOWN
    reason = "unknown"
    hint = HINT_SPAWN_FAILURE

    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message)
        self.output = output

    def to_payload(self) -> dict[str, str]:
        return {
            "error": "Gateway failed to start",
            "kind": self.kind,
            "reason": self.reason,
            "details": str(self),
            "hint": self.hint,
        }


class ConfigurationError(GatewayStartupError):
    """A required credential is missing. Detected before spawning."""

    kind = KIND_MISSING_CREDENTIAL
    reason = "configuration"
    hint = HINT_MISSING_CREDENTIAL


class SpawnFailure(GatewayStartupError):
    """The process could not be created or exited before becoming reachable."""

    reason = "spawn_failure"
    hint = HINT_SPAWN_FAILURE


class ReadinessTimeout(GatewayStartupError):
    """The process kept running but never became reachable within the bound."""

    reason = "readiness_timeout"
    hint = HINT_READINESS_TIMEOUT


class ResourceExhaustion(GatewayStartupError):
    """The gateway output carries an out-of-memory signature."""

    kind = KIND_RESOURCE_EXHAUSTION
    reason = "resource_exhaustion"
    hint = HINT_RESOURCE_EXHAUSTION


def looks_out_of_memory(text: str) -> bool:
    return any(marker in text for marker in OOM_MARKERS)


def classify_exit(message: str, output: str) -> GatewayStartupError:
    """Build the error for a gateway that exited before becoming reachable."""
    if looks_out_of_memory(output) or looks_out_of_memory(message):
        return ResourceExhaustion(message, output=output)
    return SpawnFailure(message, output=output)
