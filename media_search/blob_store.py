"""Durable key -> bytes storage for index snapshots."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from errors import PersistenceFailure

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return stored bytes, or None if the key was never written."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Replace the blob for key. Raises PersistenceFailure."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the blob if present."""


class FileBlobStore(BlobStore):
    """One file per key under a directory.

    Writes go to a temp file that is renamed over the target, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if "/" in key or key.startswith("."):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root / key

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as exc:
            if tmp.exists():
                tmp.unlink()
            raise PersistenceFailure(key, str(exc)) from exc

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
