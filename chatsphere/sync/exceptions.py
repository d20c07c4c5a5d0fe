"""
Exceptions for conversation sync.
"""


class SyncError(Exception):
    """Base exception for sync operations."""


class AuthUnavailableError(SyncError):
    """Raised when no bearer token is available."""


class RemoteStoreError(SyncError):
    """Raised when a remote store request fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(RemoteStoreError):
    """Raised when the remote store rejects the token (401/403)."""


class NotFoundError(RemoteStoreError):
    """Raised when a remote resource does not exist (404)."""


class ConflictError(RemoteStoreError):
    """Raised when a concurrent write is detected (409/412)."""


class TransientError(RemoteStoreError):
    """Raised on network failures, timeouts, throttling and 5xx responses."""


class MalformedDataError(SyncError):
    """Raised when a fetched document cannot be decoded."""
