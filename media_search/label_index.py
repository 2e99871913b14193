"""Inverted index from normalized visual labels to image assets."""

import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass
from enum import Enum

from assets import AssetStore, MediaType
from blob_store import BlobStore
from classifier import VisualClassifier
from config import (
    LABEL_INDEX_KEY,
    LABEL_MIN_CONFIDENCE,
    LABEL_PROGRESS_INTERVAL,
    LABEL_THUMBNAIL_SIZE,
    MAX_LABELS_PER_ASSET,
    SAVE_INTERVAL,
)
from index_base import PersistentIndex, ProgressCallback
from labels import expand_search_terms, normalize_label

logger = logging.getLogger(__name__)


class MatchMode(str, Enum):
    ANY = "any"
    ALL = "all"


def top_labels(predictions: list[tuple[str, float]], min_confidence: float,
               max_labels: int) -> list[str]:
    """Confident labels, best first, capped."""
    kept = [(label, conf) for label, conf in predictions if conf >= min_confidence]
    kept.sort(key=lambda p: p[1], reverse=True)
    return [label for label, _ in kept[:max_labels]]


def match_labels(label_map: dict[str, set[str]], labels: list[str],
                 mode: MatchMode) -> set[str]:
    """Union (ANY) or intersection (ALL) over already-normalized labels.

    ALL stops at the first label missing from the map.
    """
    if not labels:
        return set()
    if mode == MatchMode.ALL:
        result: set[str] | None = None
        for label in labels:
            ids = label_map.get(label)
            if not ids:
                return set()
            result = set(ids) if result is None else result & ids
            if not result:
                return set()
        return result or set()
    found: set[str] = set()
    for label in labels:
        found.update(label_map.get(label, ()))
    return found


@dataclass
class LabelIndexStats:
    total: int = 0
    processed: int = 0
    newly_indexed: int = 0
    skipped: int = 0
    failed: int = 0
    unique_labels: int = 0
    elapsed: float = 0.0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class LabelIndex(PersistentIndex):
    name = "label index"

    def __init__(
        self,
        store: AssetStore,
        blob_store: BlobStore,
        classifier: VisualClassifier,
        min_confidence: float = LABEL_MIN_CONFIDENCE,
        max_labels: int = MAX_LABELS_PER_ASSET,
        thumbnail_size: int = LABEL_THUMBNAIL_SIZE,
        save_interval: int = SAVE_INTERVAL,
    ):
        self.store = store
        self.classifier = classifier
        self.min_confidence = min_confidence
        self.max_labels = max_labels
        self.thumbnail_size = thumbnail_size
        self.save_interval = save_interval
        super().__init__(blob_store, LABEL_INDEX_KEY)

    def _reset(self) -> None:
        self._label_map: dict[str, set[str]] = {}
        self._asset_labels: dict[str, list[str]] = {}
        self._indexed: set[str] = set()

    def _to_snapshot(self) -> dict:
        return {
            "labels": {k: sorted(v) for k, v in sorted(self._label_map.items())},
            "asset_labels": dict(sorted(self._asset_labels.items())),
            "indexed": sorted(self._indexed),
        }

    def _from_snapshot(self, data: dict) -> None:
        self._label_map = {k: set(v) for k, v in data["labels"].items()}
        self._asset_labels = {k: list(v) for k, v in data["asset_labels"].items()}
        self._indexed = set(data["indexed"])

    def _add(self, asset_id: str, raw_labels: list[str]) -> None:
        self._asset_labels[asset_id] = raw_labels
        for label in raw_labels:
            self._label_map.setdefault(normalize_label(label), set()).add(asset_id)
        self._indexed.add(asset_id)

    def classify_asset(self, asset) -> list[str] | None:
        """Raw labels for one image, or None if it has no pixels to look at."""
        image = self.store.load_thumbnail(asset, self.thumbnail_size)
        if image is None:
            return None
        return top_labels(self.classifier.classify(image), self.min_confidence, self.max_labels)

    def build_index(
        self,
        limit: int | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> dict:
        """Classify images not yet indexed, newest first.

        Cancellation is checked between assets; progress is saved every
        save_interval assets so a cancelled or crashed run keeps its work.
        """
        with self._build_session():
            t0 = time.time()
            images = self.store.fetch_by_media_type(MediaType.IMAGE)
            with self._lock:
                pending = [a for a in images if a.id not in self._indexed]
            stats = LabelIndexStats(total=len(images), skipped=len(images) - len(pending))
            if limit is not None:
                pending = pending[:limit]

            logger.info("Label index: %d pending of %d images", len(pending), len(images))
            self._report(0, len(pending), "Starting", progress_callback)
            unsaved = 0

            for asset in pending:
                if self.cancelled:
                    stats.cancelled = True
                    logger.info("Label indexing cancelled after %d assets", stats.processed)
                    break

                try:
                    raw_labels = self.classify_asset(asset)
                except Exception:
                    logger.warning("Classification failed for %s", asset.id, exc_info=True)
                    raw_labels = None

                stats.processed += 1
                if raw_labels is None:
                    stats.failed += 1
                else:
                    with self._lock:
                        self._add(asset.id, raw_labels)
                    stats.newly_indexed += 1
                    unsaved += 1

                if unsaved >= self.save_interval:
                    self.save()
                    unsaved = 0
                if stats.processed % LABEL_PROGRESS_INTERVAL == 0:
                    self._report(stats.processed, len(pending),
                                 f"Labeled {stats.newly_indexed} images", progress_callback)

            if unsaved:
                self.save()
            with self._lock:
                stats.unique_labels = len(self._label_map)
            stats.elapsed = round(time.time() - t0, 2)
            self._report(stats.processed, len(pending),
                         "Cancelled" if stats.cancelled else "Done", progress_callback)

        logger.info(
            "Label index: %d new, %d failed, %d labels in %.1fs%s",
            stats.newly_indexed, stats.failed, stats.unique_labels, stats.elapsed,
            " (cancelled)" if stats.cancelled else "",
        )
        return stats.to_dict()

    # -- search --

    def search(self, label: str) -> list[str]:
        with self._lock:
            return sorted(self._label_map.get(normalize_label(label), ()))

    def search_labels(self, labels: list[str], mode: MatchMode = MatchMode.ANY) -> list[str]:
        normalized = [normalize_label(label) for label in labels if label.strip()]
        with self._lock:
            return sorted(match_labels(self._label_map, normalized, mode))

    @staticmethod
    def expand_search_terms(terms: list[str]) -> list[str]:
        return expand_search_terms(terms)

    def labels_for(self, asset_id: str) -> list[str]:
        with self._lock:
            return list(self._asset_labels.get(asset_id, []))

    def is_indexed(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._indexed

    def stats(self, top: int = 20) -> dict:
        with self._lock:
            counts = Counter({label: len(ids) for label, ids in self._label_map.items()})
            return {
                "indexed_assets": len(self._indexed),
                "unique_labels": len(self._label_map),
                "top_labels": dict(counts.most_common(top)),
                "build": self.progress(),
            }
