"""Durable storage: bucket mount and state backup."""

from .backup import StorageStatus, SyncResult, run_backup_job, sync_to_storage
from .mount import ensure_mounted

__all__ = ["StorageStatus", "SyncResult", "ensure_mounted", "run_backup_job", "sync_to_storage"]
