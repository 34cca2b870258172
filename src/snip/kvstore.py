"""
Key-value persistence for singleton flags.

The maintenance flag and the update lock are small values whose presence or
content is shared by every process serving the application. They go through
the KeyValueStore interface so a deployment running several instances can
swap the file-backed store for a shared one.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path

from snip.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Abstract string key-value store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value for ``key``, or None if absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, overwriting any existing value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is not an error."""

    def exists(self, key: str) -> bool:
        """Check whether ``key`` is present."""
        return self.get(key) is not None

    def add(self, key: str, value: str) -> bool:
        """
        Store ``value`` only if ``key`` is absent.

        Returns:
            True if the value was stored, False if the key already existed.
        """
        if self.exists(key):
            return False
        self.set(key, value)
        return True


class FileKeyValueStore(KeyValueStore):
    """
    Stores each key as a file under a base directory.

    Writes are atomic (write to a temp file, then rename) so readers never
    observe a half-written value.
    """

    def __init__(self, base_dir: Path | str) -> None:
        """
        Initialize the FileKeyValueStore.

        Args:
            base_dir: Directory holding one file per key.
        """
        self.base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        """Return the file backing ``key``."""
        return self.base_dir / key

    def get(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_name(f"{path.name}.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(value)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, 0o644)
        temp_path.replace(path)

        logger.debug("Stored key", extra={"key": key, "path": str(path)})

    def add(self, key: str, value: str) -> bool:
        """Create the key file exclusively; only one concurrent caller wins."""
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
        except FileExistsError:
            return False

        logger.debug("Created key", extra={"key": key, "path": str(path)})
        return True

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()
