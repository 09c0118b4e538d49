"""Storage collaborator interface and a local-directory implementation.

The engine depends on exactly three atomic primitives: put, get and list.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from chat_stash.logging import get_logger

logger = get_logger("storage")

# Suffix of in-flight temp files written by LocalStorage.put
TEMP_SUFFIX = ".tmp"


class StorageBackend(ABC):
    """Key/blob storage with atomic writes."""

    @abstractmethod
    def put(self, key: str, blob: bytes) -> None:
        """Store blob under key. Either the whole blob lands or none of it does."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the blob stored under key, or None if absent."""

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix, sorted."""


def validate_key(key: str) -> PurePosixPath:
    """Check a storage key is a relative, normalised POSIX path.

    Raises:
        ValueError: If the key is empty, absolute or escapes the root
    """
    if not key or key.startswith("/") or "\\" in key:
        raise ValueError(f"Invalid storage key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise ValueError(f"Invalid storage key: {key!r}")
    path = PurePosixPath(key)
    if path.name.endswith(TEMP_SUFFIX):
        raise ValueError(f"Storage key may not end in {TEMP_SUFFIX}: {key!r}")
    return path


class LocalStorage(StorageBackend):
    """Stores each key as a file below a root directory.

    Writes go to a temp file in the destination directory followed by
    os.replace, so readers never observe a partially written blob.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        return self._root.joinpath(*validate_key(key).parts)

    def put(self, key: str, blob: bytes) -> None:
        dest = self._path_for(key)
        dest.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=TEMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Stored blob: key=%s bytes=%d", key, len(blob))

    def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def list(self, prefix: str = "") -> list[str]:
        if not self._root.exists():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.endswith(TEMP_SUFFIX):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def remove_stale_temp_files(self) -> int:
        """Delete temp files left behind by interrupted writes.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in self._root.rglob(f"*{TEMP_SUFFIX}"):
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Removed stale temp files: count=%d root=%s", removed, self._root)
        return removed
