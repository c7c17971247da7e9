"""Idempotent attachment of the R2 bucket inside the sandbox."""

from ..config import DEFAULT_BUCKET_NAME, MOUNT_PATH, StorageCredentials
from ..log_config import get_logger
from ..sandbox.handle import SandboxHandle

log = get_logger("storage")


async def ensure_mounted(
    sandbox: SandboxHandle,
    credentials: StorageCredentials,
    mount_path: str = MOUNT_PATH,
    bucket: str = DEFAULT_BUCKET_NAME,
) -> bool:
    """
    Make sure the bucket is mounted at ``mount_path``.

    Storage is optional. This never raises: every failure is logged and
    reported as ``False`` so callers on the request path can carry on.

    Returns:
        True if the bucket is mounted when this returns, False otherwise
    """
    if not credentials.is_configured:
        log.info("storage.not_configured", missing=credentials.missing())
        return False

    try:
        if await sandbox.is_mounted(mount_path):
            log.debug("storage.already_mounted", mount_path=mount_path)
            return True
    except Exception as e:
        log.warn("storage.mount_check_error", mount_path=mount_path, exc=e)

    try:
        log.info("storage.mount_start", bucket=bucket, mount_path=mount_path)
        await sandbox.mount_bucket(bucket, mount_path, credentials)
    except Exception as e:
        log.error("storage.mount_error", bucket=bucket, mount_path=mount_path, exc=e)
        return False

    log.info("storage.mounted", bucket=bucket, mount_path=mount_path)
    return True
