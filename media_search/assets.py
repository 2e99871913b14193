"""Media assets and the store interface the indices read them from."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from PIL import Image

from thumbnails import open_thumbnail

logger = logging.getLogger(__name__)


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass
class MediaAsset:
    id: str
    media_type: MediaType = MediaType.IMAGE
    created_at: datetime | None = None
    latitude: float | None = None
    longitude: float | None = None
    duration: float = 0.0
    people: list[str] = field(default_factory=list)
    path: str | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def summary(self) -> dict:
        """JSON-friendly view for service responses."""
        data = {
            "id": self.id,
            "media_type": self.media_type.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "path": self.path,
        }
        if self.has_location:
            data["latitude"] = self.latitude
            data["longitude"] = self.longitude
        if self.media_type == MediaType.VIDEO:
            data["duration"] = round(self.duration, 1)
        if self.people:
            data["people"] = self.people
        return data


def _newest_first(asset: MediaAsset) -> float:
    return -(asset.created_at.timestamp() if asset.created_at else 0.0)


class AssetStore(ABC):
    """Read-only view over a media library.

    Subclasses only need ``all_assets``; the filters below scan it.
    """

    self_person: str = ""

    @abstractmethod
    def all_assets(self) -> list[MediaAsset]:
        """Every asset, newest first."""

    def get(self, asset_id: str) -> MediaAsset | None:
        return self._by_id().get(asset_id)

    def fetch_by_ids(self, asset_ids) -> list[MediaAsset]:
        by_id = self._by_id()
        found = [by_id[a] for a in asset_ids if a in by_id]
        return sorted(found, key=_newest_first)

    def fetch_by_date_range(self, start: datetime, end: datetime) -> list[MediaAsset]:
        """Assets created in [start, end)."""
        return [
            a for a in self.all_assets()
            if a.created_at is not None and start <= a.created_at < end
        ]

    def fetch_by_media_type(self, media_type: MediaType) -> list[MediaAsset]:
        return [a for a in self.all_assets() if a.media_type == media_type]

    def fetch_by_person(
        self, name: str, media_type: MediaType | None = None
    ) -> list[MediaAsset]:
        wanted = name.strip().lower()
        if not wanted:
            return []
        return [
            a for a in self.all_assets()
            if (media_type is None or a.media_type == media_type)
            and any(wanted == p.lower() or wanted in p.lower().split() for p in a.people)
        ]

    def fetch_self_assets(self, media_type: MediaType | None = None) -> list[MediaAsset]:
        """Assets tagged with the library owner. Empty when no owner is configured."""
        if not self.self_person:
            return []
        return self.fetch_by_person(self.self_person, media_type)

    def load_thumbnail(self, asset: MediaAsset, size: int) -> Image.Image | None:
        if not asset.path:
            return None
        path = Path(asset.path)
        if not path.exists():
            return None
        return open_thumbnail(path, size)

    def video_path(self, asset: MediaAsset) -> Path | None:
        if asset.media_type != MediaType.VIDEO or not asset.path:
            return None
        path = Path(asset.path)
        return path if path.exists() else None

    def _by_id(self) -> dict[str, MediaAsset]:
        return {a.id: a for a in self.all_assets()}


class InMemoryAssetStore(AssetStore):
    """Asset store over a fixed list. Useful for embedding and tests."""

    def __init__(self, assets: list[MediaAsset] | None = None, self_person: str = ""):
        self._assets = sorted(assets or [], key=_newest_first)
        self._index = {a.id: a for a in self._assets}
        self.self_person = self_person

    def all_assets(self) -> list[MediaAsset]:
        return list(self._assets)

    def add(self, asset: MediaAsset) -> None:
        self._assets.append(asset)
        self._assets.sort(key=_newest_first)
        self._index[asset.id] = asset

    def _by_id(self) -> dict[str, MediaAsset]:
        return self._index
