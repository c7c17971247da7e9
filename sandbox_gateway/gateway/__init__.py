"""Gateway process discovery and lifecycle."""

from .errors import (
    ConfigurationError,
    GatewayStartupError,
    ReadinessTimeout,
    ResourceExhaustion,
    SpawnFailure,
)
from .lifecycle import GatewayManager, RestartResult
from .process import find_gateway_process

__all__ = [
    "ConfigurationError",
    "GatewayManager",
    "GatewayStartupError",
    "ReadinessTimeout",
    "ResourceExhaustion",
    "RestartResult",
    "SpawnFailure",
    "find_gateway_process",
]
