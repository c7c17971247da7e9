"""
Configuration for the sandbox gateway.

Fixed constants describe the container layout. Everything that varies per
deployment comes from environment variables, which Modal populates from the
``sandbox-gateway-secrets`` secret.
"""

import os
import re
from dataclasses import dataclass, field

from .log_config import get_logger

log = get_logger("config")

APP_NAME = "sandbox-gateway"
SERVICE_NAME = "clawdbot-sandbox"

# Gateway process
GATEWAY_PORT = 18789
GATEWAY_COMMAND = "/usr/local/bin/start-gateway.sh"
GATEWAY_SIGNATURES: tuple[tuple[str, ...], ...] = (
    (GATEWAY_COMMAND,),
    ("clawdbot", "gateway"),
)

# Sandbox identity
DEFAULT_SANDBOX_NAME = "clawdbot"

# Container filesystem
STATE_DIR = "/root/.clawdbot"
MOUNT_PATH = "/data/clawdbot"
LAST_SYNC_MARKER = ".last-sync"
DEFAULT_BUCKET_NAME = "clawdbot-data"
SYNC_EXCLUDES = ("*.lock", "*.log", "*.tmp")

# Polling bounds (seconds)
STARTUP_POLL_INTERVAL = 0.5
STARTUP_TIMEOUT = 90.0
STARTUP_TIMEOUT_MIN = 5.0
STARTUP_TIMEOUT_MAX = 600.0
SYNC_TIMEOUT = 30.0
SYNC_POLL_INTERVAL = 0.5
CLI_TIMEOUT = 20.0
CLI_POLL_INTERVAL = 0.5
MARKER_READ_TIMEOUT = 5.0
RESTART_GRACE_PERIOD = 2.0

# Modal sandboxes live at most 24h; "never sleep" uses the maximum.
SANDBOX_MAX_LIFETIME = 24 * 60 * 60

AI_PROVIDER_KEY_ENV = "ANTHROPIC_API_KEY"
INTEGRATION_TOKEN_ENVS = (
    "CLAWDBOT_GATEWAY_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "DISCORD_BOT_TOKEN",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> float:
    """
    Parse a duration such as ``30s``, ``10m`` or ``1h`` into seconds.

    A bare number is read as seconds.

    Raises:
        ValueError: If the value is not a recognised duration.
    """
    match = _DURATION_RE.match(value.lower())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit]


@dataclass(frozen=True)
class StorageCredentials:
    """R2 credentials. Usable only when all three fields are present."""

    access_key_id: str | None = None
    secret_access_key: str | None = None
    account_id: str | None = None

    @classmethod
    def from_env(cls) -> "StorageCredentials":
        return cls(
            access_key_id=os.environ.get("R2_ACCESS_KEY_ID") or None,
            secret_access_key=os.environ.get("R2_SECRET_ACCESS_KEY") or None,
            account_id=os.environ.get("CF_ACCOUNT_ID") or None,
        )

    def missing(self) -> list[str]:
        """Names of the environment variables that are not set."""
        missing = []
        if not self.access_key_id:
            missing.append("R2_ACCESS_KEY_ID")
        if not self.secret_access_key:
            missing.append("R2_SECRET_ACCESS_KEY")
        if not self.account_id:
            missing.append("CF_ACCOUNT_ID")
        return missing

    @property
    def is_configured(self) -> bool:
        return not self.missing()

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass(frozen=True)
class SandboxOptions:
    """Lifetime options for the gateway sandbox."""

    keep_alive: bool = True
    idle_timeout: float | None = None

    @classmethod
    def from_sleep_after(cls, sleep_after: str | None) -> "SandboxOptions":
        """
        Build options from ``SANDBOX_SLEEP_AFTER``.

        ``never`` (the default) keeps the container alive. Any other value is a
        duration of inactivity after which the container may sleep. Invalid
        values fall back to keep-alive so a typo never causes cold starts.
        """
        value = (sleep_after or "never").strip().lower()
        if value == "never":
            return cls(keep_alive=True)
        try:
            return cls(keep_alive=False, idle_timeout=parse_duration(value))
        except ValueError:
            log.warn("config.sleep_after_invalid", value=value, fallback="never")
            return cls(keep_alive=True)


def resolve_timeout_seconds(
    name: str,
    default: float,
    min_value: float,
    max_value: float,
) -> float:
    """Read a timeout from the environment, clamped to ``[min_value, max_value]``."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError:
            log.warn(
                "config.timeout_invalid",
                timeout_name=name,
                timeout_ms=int(default * 1000),
                detail=f"invalid value '{raw}', using default",
            )
            value = default

    if value < min_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(min_value * 1000),
            detail=f"below min ({min_value}s), clamped",
        )
        value = min_value
    elif value > max_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(max_value * 1000),
            detail=f"above max ({max_value}s), clamped",
        )
        value = max_value

    return value


@dataclass(frozen=True)
class GatewaySettings:
    """Per-deployment settings, normally built with :meth:`from_env`."""

    anthropic_api_key: str | None = None
    integration_tokens: dict[str, str] = field(default_factory=dict)
    storage: StorageCredentials = field(default_factory=StorageCredentials)
    bucket_name: str = DEFAULT_BUCKET_NAME
    sandbox_name: str = DEFAULT_SANDBOX_NAME
    sandbox_options: SandboxOptions = field(default_factory=SandboxOptions)
    startup_timeout: float = STARTUP_TIMEOUT
    poll_interval: float = STARTUP_POLL_INTERVAL

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        tokens = {
            name: os.environ[name] for name in INTEGRATION_TOKEN_ENVS if os.environ.get(name)
        }
        return cls(
            anthropic_api_key=os.environ.get(AI_PROVIDER_KEY_ENV) or None,
            integration_tokens=tokens,
            storage=StorageCredentials.from_env(),
            bucket_name=os.environ.get("R2_BUCKET_NAME") or DEFAULT_BUCKET_NAME,
            sandbox_name=os.environ.get("SANDBOX_NAME") or DEFAULT_SANDBOX_NAME,
            sandbox_options=SandboxOptions.from_sleep_after(os.environ.get("SANDBOX_SLEEP_AFTER")),
            startup_timeout=resolve_timeout_seconds(
                name="GATEWAY_STARTUP_TIMEOUT",
                default=STARTUP_TIMEOUT,
                min_value=STARTUP_TIMEOUT_MIN,
                max_value=STARTUP_TIMEOUT_MAX,
            ),
        )

    def gateway_env(self) -> dict[str, str]:
        """Environment for the gateway process. Missing tokens are simply omitted."""
        env = {"GATEWAY_PORT": str(GATEWAY_PORT), **self.integration_tokens}
        if self.anthropic_api_key:
            env[AI_PROVIDER_KEY_ENV] = self.anthropic_api_key
        return env
