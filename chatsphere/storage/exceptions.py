"""
Exceptions for local persistent state.
"""


class LocalStorageError(Exception):
    """Raised when a local storage operation fails."""


class InvalidKeyError(LocalStorageError):
    """Raised when a storage key is invalid."""
