"""Shared state handling for the persistent indices.

Each index owns its maps behind ``_lock`` (held only briefly, for reads and
for applying results) and serializes builds and clears behind
``_build_lock``. Expensive per-asset work happens outside ``_lock`` so
searches keep running during a build and see whatever is committed.
"""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from blob_store import BlobStore
from errors import PersistenceFailure

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class BuildProgress:
    running: bool = False
    processed: int = 0
    total: int = 0
    message: str = ""
    started_at: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.started_at is not None:
            data["elapsed"] = round(time.time() - self.started_at, 1)
        return data


class PersistentIndex:
    name = "index"

    def __init__(self, blob_store: BlobStore, blob_key: str):
        self._blobs = blob_store
        self._blob_key = blob_key
        self._lock = threading.RLock()
        self._build_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._progress = BuildProgress()
        self._reset()
        self._load()

    # -- subclass hooks --

    def _reset(self) -> None:
        """Replace in-memory state with empty maps."""
        raise NotImplementedError

    def _to_snapshot(self) -> dict:
        """Serializable view of the state. Called with _lock held."""
        raise NotImplementedError

    def _from_snapshot(self, data: dict) -> None:
        """Restore state from a snapshot. Raise on malformed data."""
        raise NotImplementedError

    # -- persistence --

    def _load(self) -> None:
        raw = self._blobs.get(self._blob_key)
        if raw is None:
            return
        try:
            data = json.loads(raw)
            with self._lock:
                self._from_snapshot(data)
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning("Corrupt %s, starting with empty %s", self._blob_key, self.name)
            with self._lock:
                self._reset()

    def save(self) -> bool:
        """Write a full snapshot. On failure the in-memory state stays authoritative."""
        with self._lock:
            payload = json.dumps(self._to_snapshot(), sort_keys=True)
        try:
            self._blobs.put(self._blob_key, payload.encode("utf-8"))
        except PersistenceFailure:
            logger.warning("Saving %s failed; keeping in-memory state", self.name, exc_info=True)
            return False
        return True

    def clear(self) -> None:
        """Drop all state and the persisted snapshot. Cancels a running build first."""
        self._cancel_event.set()
        with self._build_lock:
            with self._lock:
                self._reset()
            self._blobs.delete(self._blob_key)
            self._cancel_event.clear()
        logger.info("Cleared %s", self.name)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._indexed

    # -- builds --

    @property
    def is_building(self) -> bool:
        return self._progress.running

    def cancel(self) -> bool:
        """Ask a running build to stop at the next item boundary."""
        if not self.is_building:
            return False
        self._cancel_event.set()
        logger.info("Cancellation requested for %s", self.name)
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def progress(self) -> dict:
        return self._progress.to_dict()

    @contextmanager
    def _build_session(self) -> Iterator[None]:
        with self._build_lock:
            self._cancel_event.clear()
            self._progress = BuildProgress(running=True, started_at=time.time())
            try:
                yield
            finally:
                self._progress.running = False
                self._cancel_event.clear()

    def _report(self, processed: int, total: int, message: str,
                callback: ProgressCallback | None) -> None:
        self._progress.processed = processed
        self._progress.total = total
        self._progress.message = message
        if callback is not None:
            callback(processed, total, message)
