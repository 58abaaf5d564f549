"""
Error taxonomy for SDE cache synchronization.

Only engine-wide problems are raised. Per-fact and per-document problems
are recorded as sync statuses and in SyncStatistics logs instead.
"""


class SdeSyncError(Exception):
    """Base class for all sdesync errors."""


class ConfigError(SdeSyncError):
    """Project or service configuration is missing or invalid."""


class DocumentError(SdeSyncError):
    """A content document or cache file could not be located or parsed."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class ReconcileError(SdeSyncError):
    """Reconciling a saved document into its cache failed.

    The cache on disk is left as it was before the attempt.
    """

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class InvalidStatusError(SdeSyncError, ValueError):
    """A sync status outside the known set of status codes."""


class UpstreamError(SdeSyncError):
    """The mapping service was unreachable, timed out or answered garbage."""


class CacheBusyError(SdeSyncError):
    """A cache file or project is locked by another operation. Retry later."""

    retryable = True


class BackupError(SdeSyncError):
    """Backing up cache files failed, so nothing may be removed."""


class SyncCancelledError(SdeSyncError):
    """A bulk sync was cancelled before the remote lookup was issued."""
