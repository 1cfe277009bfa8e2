from __future__ import annotations


class SyncError(RuntimeError):
    """Base error for the notification → delta → scan → patch pipeline."""


class ValidationError(SyncError):
    """Inbound webhook payload matches neither a handshake nor a notification batch."""


class AuthError(SyncError):
    """Refresh-token exchange failed (network, HTTP status or response shape)."""


class FeedError(SyncError):
    """Change feed page could not be fetched or decoded."""


class ScanError(SyncError):
    """A document's used range could not be read or scanned."""


class PatchError(SyncError):
    """The sparse range update was rejected by the document API."""


class ResolverError(SyncError):
    """A placeholder could not be resolved; aborts the file's cycle."""


__all__ = [
    "SyncError",
    "ValidationError",
    "AuthError",
    "FeedError",
    "ScanError",
    "PatchError",
    "ResolverError",
]
