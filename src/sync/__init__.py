"""Per-subscription delta synchronization and placeholder substitution."""

from .runner import SyncContext, scan_and_patch, sync_subscription

__all__ = ["SyncContext", "scan_and_patch", "sync_subscription"]
