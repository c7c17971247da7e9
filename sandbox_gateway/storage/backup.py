"""
Backup of gateway state to the mounted R2 bucket.

The sync mirrors ``STATE_DIR`` onto the mount with ``rsync --delete``: a file
removed locally is removed from the bucket on the next run. If local state is
ever lost or regenerated partially, the next sync propagates that loss.

Backups are best effort. They are not coordinated with gateway writes, so a
sync that overlaps heavy state writes can capture an inconsistent snapshot.
"""

import shlex
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..config import (
    LAST_SYNC_MARKER,
    MARKER_READ_TIMEOUT,
    MOUNT_PATH,
    STATE_DIR,
    SYNC_EXCLUDES,
    SYNC_POLL_INTERVAL,
    SYNC_TIMEOUT,
    GatewaySettings,
)
from ..log_config import get_logger
from ..sandbox.commands import run_command
from ..sandbox.handle import SandboxHandle, SandboxProvider
from .mount import ensure_mounted

log = get_logger("backup")

CONFIGURED_MESSAGE = "R2 storage is configured. Your data will persist across container restarts."
NOT_CONFIGURED_MESSAGE = (
    "R2 storage is not configured. Paired devices and conversations will be lost "
    "when the container restarts."
)


@dataclass(frozen=True)
class SyncResult:
    success: bool
    last_sync: str | None = None
    error: str | None = None
    details: str | None = None


@dataclass(frozen=True)
class StorageStatus:
    configured: bool
    missing: list[str] = field(default_factory=list)
    last_sync: str | None = None
    message: str = ""


def build_sync_command(
    state_dir: str = STATE_DIR,
    mount_path: str = MOUNT_PATH,
    excludes: tuple[str, ...] = SYNC_EXCLUDES,
) -> str:
    """Mirror command; the marker is written only if rsync succeeds."""
    source = state_dir.rstrip("/") + "/"
    target = mount_path.rstrip("/") + "/"
    marker = f"{mount_path.rstrip('/')}/{LAST_SYNC_MARKER}"
    exclude_args = " ".join(f"--exclude={shlex.quote(pattern)}" for pattern in excludes)
    return (
        f"rsync -a --delete {exclude_args} {shlex.quote(source)} {shlex.quote(target)}"
        f" && date -Iseconds > {shlex.quote(marker)}"
    )


async def read_last_sync(sandbox: SandboxHandle, mount_path: str = MOUNT_PATH) -> str | None:
    """Read the timestamp marker from the mount, or ``None`` if there is none."""
    marker = f"{mount_path.rstrip('/')}/{LAST_SYNC_MARKER}"
    try:
        result = await run_command(
            sandbox,
            f"cat {shlex.quote(marker)} 2>/dev/null || true",
            timeout=MARKER_READ_TIMEOUT,
        )
    except Exception as e:
        log.warn("backup.marker_read_error", exc=e)
        return None
    timestamp = result.stdout.strip()
    return timestamp or None


async def sync_to_storage(
    sandbox: SandboxHandle,
    settings: GatewaySettings,
    *,
    state_dir: str = STATE_DIR,
    mount_path: str = MOUNT_PATH,
    timeout: float = SYNC_TIMEOUT,
    interval: float = SYNC_POLL_INTERVAL,
) -> SyncResult:
    """
    Mount storage and mirror local state onto it.

    Never raises. If the sync does not finish within ``timeout`` it is
    abandoned, not killed, and reported as a failure.
    """
    if not settings.storage.is_configured:
        return SyncResult(success=False, error="R2 storage is not configured")

    mounted = await ensure_mounted(
        sandbox, settings.storage, mount_path, bucket=settings.bucket_name
    )
    if not mounted:
        return SyncResult(success=False, error="Failed to mount R2 storage")

    command = build_sync_command(state_dir, mount_path)
    try:
        result = await run_command(sandbox, command, timeout=timeout, interval=interval)
    except Exception as e:
        log.error("backup.sync_error", exc=e)
        return SyncResult(success=False, error="Sync could not be started", details=str(e))

    if result.timed_out:
        return SyncResult(
            success=False,
            error=f"Sync did not finish within {timeout:.0f}s",
            details=result.stderr or result.stdout,
        )
    if not result.succeeded:
        return SyncResult(
            success=False,
            error="Sync failed",
            details=result.stderr or result.stdout,
        )

    last_sync = await read_last_sync(sandbox, mount_path)
    return SyncResult(success=True, last_sync=last_sync or datetime.now(UTC).isoformat())


async def run_backup_job(
    sandbox: SandboxHandle,
    settings: GatewaySettings,
    **sync_options,
) -> None:
    """Periodic backup. Always returns normally; failures are only logged."""
    if not settings.storage.is_configured:
        log.info("backup.skip", reason="not_configured", missing=settings.storage.missing())
        return

    start_time = time.time()
    log.info("backup.start", sandbox_name=sandbox.name)
    try:
        result = await sync_to_storage(sandbox, settings, **sync_options)
    except Exception as e:
        log.error("backup.error", exc=e)
        return

    duration_ms = int((time.time() - start_time) * 1000)
    if result.success:
        log.info("backup.complete", last_sync=result.last_sync, duration_ms=duration_ms)
    else:
        log.error(
            "backup.failed",
            error=result.error,
            details=result.details,
            duration_ms=duration_ms,
        )


async def run_scheduled_backup(provider: SandboxProvider, settings: GatewaySettings) -> None:
    """
    Entry point for the cron trigger.

    Only backs up a sandbox that already exists; the cron never creates one.
    """
    if not settings.storage.is_configured:
        log.info("backup.skip", reason="not_configured", missing=settings.storage.missing())
        return

    try:
        sandbox = await provider.lookup(settings.sandbox_name)
    except Exception as e:
        log.error("backup.sandbox_error", sandbox_name=settings.sandbox_name, exc=e)
        return

    if sandbox is None:
        log.info("backup.skip", reason="no_sandbox", sandbox_name=settings.sandbox_name)
        return

    await run_backup_job(sandbox, settings)


async def get_storage_status(sandbox: SandboxHandle, settings: GatewaySettings) -> StorageStatus:
    """Storage status query: the one place storage degradation is visible."""
    credentials = settings.storage
    if not credentials.is_configured:
        return StorageStatus(
            configured=False,
            missing=credentials.missing(),
            message=NOT_CONFIGURED_MESSAGE,
        )

    last_sync = None
    if await ensure_mounted(sandbox, credentials, MOUNT_PATH, bucket=settings.bucket_name):
        last_sync = await read_last_sync(sandbox, MOUNT_PATH)

    return StorageStatus(configured=True, last_sync=last_sync, message=CONFIGURED_MESSAGE)
