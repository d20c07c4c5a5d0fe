"""
Key-value storage port for local persistent state.

The sync core never touches the filesystem directly; it reads and writes
string values by key through a ``KeyValueStorage``. Two backends are
provided: an in-memory one for tests and embedding, and a directory of
files with atomic writes and file locking.
"""

import fcntl
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from chatsphere.storage.exceptions import InvalidKeyError, LocalStorageError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")


def validate_key(key: str) -> str:
    """
    Check that a key is safe to use as a file name.

    Raises:
        InvalidKeyError: If the key is empty, a dot name, or has other characters
    """
    if not key:
        raise InvalidKeyError("Key cannot be empty")
    if key in (".", "..") or not _KEY_PATTERN.match(key):
        raise InvalidKeyError(f"Invalid storage key: {key!r}")
    return key


class KeyValueStorage(ABC):
    """
    Abstract base class for local key-value backends.
    """

    @abstractmethod
    def read(self, key: str) -> str | None:
        """
        Read the value stored under ``key``.

        Returns:
            The stored string, or None if the key is absent

        Raises:
            InvalidKeyError: If the key is invalid
            LocalStorageError: If the backend fails
        """

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """
        Store ``value`` under ``key``, replacing any previous value.

        Raises:
            InvalidKeyError: If the key is invalid
            LocalStorageError: If the backend fails
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting an absent key is not an error."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List stored keys in sorted order."""

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; returns the count."""
        doomed = [key for key in self.keys() if key.startswith(prefix)]
        for key in doomed:
            self.delete(key)
        return len(doomed)


class InMemoryStorage(KeyValueStorage):
    """Dictionary-backed storage."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.write(key, value)

    def read(self, key: str) -> str | None:
        return self._data.get(validate_key(key))

    def write(self, key: str, value: str) -> None:
        self._data[validate_key(key)] = value

    def delete(self, key: str) -> None:
        self._data.pop(validate_key(key), None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class LocalDiskStorage(KeyValueStorage):
    """
    File system storage, one file per key.

    Writes go to a temp file that is renamed into place, under an exclusive
    lock, so a reader never observes a partially written value.
    """

    def __init__(self, base_path: str | Path | None = None):
        """
        Initialize local disk storage.

        Args:
            base_path: Directory holding one file per key.
                      Defaults to ~/.chatsphere/state/
        """
        if base_path is None:
            base_path = Path.home() / ".chatsphere" / "state"

        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.base_path / validate_key(key)

    def read(self, key: str) -> str | None:
        full_path = self._path_for(key)

        if not full_path.exists():
            return None

        try:
            with open(full_path, "r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    return f.read()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise LocalStorageError(f"Failed to read {key}: {e}") from e

    def write(self, key: str, value: str) -> None:
        full_path = self._path_for(key)

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.base_path,
                prefix=f".{full_path.name}.",
                suffix=".tmp",
                text=True,
            )

            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(value)
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)

                os.replace(temp_path, full_path)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

        except OSError as e:
            raise LocalStorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> None:
        full_path = self._path_for(key)

        try:
            full_path.unlink(missing_ok=True)
        except OSError as e:
            raise LocalStorageError(f"Failed to delete {key}: {e}") from e

    def keys(self) -> list[str]:
        return sorted(
            path.name
            for path in self.base_path.iterdir()
            if path.is_file() and not path.name.startswith(".")
        )
