"""Error taxonomy for the delta sync.

Every failure is classified once, at the platform boundary, into a kind tag.
Code beyond the boundary branches on the kind or the exception class, never on
HTTP status codes.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of an upstream failure."""

    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


class CatalogSyncError(Exception):
    """Base class for all delta sync errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(CatalogSyncError):
    """The requested resource does not exist (or is not visible in the store)."""

    kind = ErrorKind.NOT_FOUND


class TransientError(CatalogSyncError):
    """A failure that may succeed on retry (rate limiting, 5xx, network)."""

    kind = ErrorKind.TRANSIENT


class FatalError(CatalogSyncError):
    """A failure that will not go away on retry."""

    kind = ErrorKind.FATAL


class ConfigurationError(CatalogSyncError):
    """Raised when configuration is invalid or missing."""


class WatermarkStoreError(CatalogSyncError):
    """The watermark store could not be read or written."""


class EnumerationError(CatalogSyncError):
    """A page of the change feed, store directory or assignments failed."""


class CommitError(CatalogSyncError):
    """The new watermark could not be persisted."""


class SyncCancelledError(CatalogSyncError):
    """The run was cancelled or exceeded its timeout."""


class SyncInProgressError(CatalogSyncError):
    """Another run for the same scope is already in flight."""
