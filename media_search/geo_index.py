"""Geohash inverted index over asset GPS coordinates.

Each asset is filed under every prefix of its geohash from
GEOHASH_MIN_PREFIX up to full precision, so a search at any supported
precision is a dict lookup.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import asdict, dataclass

import reverse_geocode

import geohash_codec
from assets import AssetStore
from blob_store import BlobStore
from config import (
    GEO_INDEX_KEY,
    GEO_PROGRESS_INTERVAL,
    GEOHASH_MIN_PREFIX,
    GEOHASH_PRECISION,
    LLM_COORDINATE_RADIUS_KM,
    REGION_RADIUS_KM,
    RESOLVED_PLACE_RADIUS_KM,
)
from errors import ChatError, LocationNotFound
from geocoder import Geocoder
from index_base import PersistentIndex, ProgressCallback
from llm import ChatService

logger = logging.getLogger(__name__)

_FLOAT_RE = re.compile(r"-?\d+(?:\.\d+)?")
_UNSURE_MARKERS = ("unknown", "not sure", "don't know", "do not know")

_RESOLVE_PROMPT = """What is the town or city where "{place}" is located?
It may be a hotel, resort, venue, landmark or neighborhood.
Reply in the format "Town, Region, Country" and nothing else.
If you are not sure, reply UNKNOWN."""

_COORDINATES_PROMPT = """Give the approximate GPS coordinates of "{place}".
Reply with only "latitude, longitude" in decimal degrees (e.g. 37.9838, 23.7275).
If you do not know, reply UNKNOWN."""


@dataclass
class GeoIndexStats:
    total: int = 0
    with_location: int = 0
    newly_indexed: int = 0
    skipped: int = 0
    unique_cells: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class GeoIndex(PersistentIndex):
    name = "geo index"

    def __init__(
        self,
        store: AssetStore,
        blob_store: BlobStore,
        geocoder: Geocoder | None = None,
        chat: ChatService | None = None,
        precision: int = GEOHASH_PRECISION,
        min_prefix: int = GEOHASH_MIN_PREFIX,
    ):
        self.store = store
        self.geocoder = geocoder or Geocoder()
        self.chat = chat or ChatService()
        self.precision = precision
        self.min_prefix = min(min_prefix, precision)
        super().__init__(blob_store, GEO_INDEX_KEY)

    # -- state --

    def _reset(self) -> None:
        self._cells: dict[str, set[str]] = {}
        self._asset_geohash: dict[str, str] = {}
        self._indexed: set[str] = set()

    def _to_snapshot(self) -> dict:
        return {
            "precision": self.precision,
            "cells": {k: sorted(v) for k, v in sorted(self._cells.items())},
            "asset_geohash": dict(sorted(self._asset_geohash.items())),
            "indexed": sorted(self._indexed),
        }

    def _from_snapshot(self, data: dict) -> None:
        self._cells = {k: set(v) for k, v in data["cells"].items()}
        self._asset_geohash = dict(data["asset_geohash"])
        self._indexed = set(data["indexed"])

    def _insert(self, asset_id: str, full_hash: str) -> None:
        self._asset_geohash[asset_id] = full_hash
        for length in range(self.min_prefix, len(full_hash) + 1):
            self._cells.setdefault(full_hash[:length], set()).add(asset_id)

    # -- building --

    def build_index(self, progress_callback: ProgressCallback | None = None) -> dict:
        """Index every asset with a location that isn't indexed yet."""
        with self._build_session():
            t0 = time.time()
            assets = self.store.all_assets()
            stats = GeoIndexStats(total=len(assets))
            self._report(0, stats.total, "Starting", progress_callback)

            for i, asset in enumerate(assets, 1):
                if asset.id in self._indexed:
                    stats.skipped += 1
                    if asset.has_location:
                        stats.with_location += 1
                elif asset.has_location:
                    stats.with_location += 1
                    try:
                        full_hash = geohash_codec.encode(asset.latitude, asset.longitude, self.precision)
                    except ValueError:
                        logger.warning("Invalid coordinates on %s, skipping", asset.id)
                    else:
                        with self._lock:
                            self._insert(asset.id, full_hash)
                            self._indexed.add(asset.id)
                        stats.newly_indexed += 1

                if i % GEO_PROGRESS_INTERVAL == 0:
                    self._report(i, stats.total, f"Geotagged {stats.newly_indexed} new", progress_callback)

            if stats.newly_indexed:
                self.save()
            with self._lock:
                stats.unique_cells = len(self._cells)
            stats.elapsed = round(time.time() - t0, 2)
            self._report(stats.total, stats.total, "Done", progress_callback)

        logger.info(
            "Geo index: %d new of %d with location (%d cells) in %.1fs",
            stats.newly_indexed, stats.with_location, stats.unique_cells, stats.elapsed,
        )
        return stats.to_dict()

    # -- search --

    def search_by_coordinate(self, lat: float, lon: float, radius_km: float) -> list[str]:
        """Assets in the cell containing (lat, lon) and its 8 neighbors."""
        precision = min(geohash_codec.precision_for_radius(radius_km), self.precision)
        center = geohash_codec.encode(lat, lon, precision)
        cells = [center] + geohash_codec.neighbors(center)
        found: set[str] = set()
        with self._lock:
            if precision >= self.min_prefix:
                for cell in cells:
                    found.update(self._cells.get(cell, ()))
            else:
                # Coarser than anything stored: gather the stored cells inside.
                wanted = set(cells)
                for key, ids in self._cells.items():
                    if len(key) == self.min_prefix and key[:precision] in wanted:
                        found.update(ids)
        logger.debug("Coordinate search (%.4f, %.4f) r=%.1fkm p=%d: %d assets",
                     lat, lon, radius_km, precision, len(found))
        return sorted(found)

    def search(self, place: str, radius_km: float) -> list[str]:
        """Assets near a named place.

        Tries direct geocoding, then a chat-resolved "Town, Region, Country"
        (and its region alone) at widening radii, then chat-estimated
        coordinates. The first step that yields coordinates answers, even
        when nothing is indexed near them. Raises LocationNotFound when no
        step yields coordinates.
        """
        found = self.geocoder.geocode(place)
        if found:
            # A country or region is searched across its extent, not just its center.
            return self.search_by_coordinate(
                found.latitude, found.longitude, max(radius_km, found.extent_km)
            )

        resolved = self._resolve_place_name(place)
        if resolved:
            coords = self.geocoder.geocode(resolved)
            if coords:
                logger.info("Resolved %r via %r", place, resolved)
                return self.search_by_coordinate(
                    coords[0], coords[1], max(radius_km, RESOLVED_PLACE_RADIUS_KM)
                )

            parts = [p.strip() for p in resolved.split(",") if p.strip()]
            if len(parts) >= 2:
                region = ", ".join(parts[1:])
                coords = self.geocoder.geocode(region)
                if coords:
                    logger.info("Resolved %r via region %r", place, region)
                    return self.search_by_coordinate(
                        coords[0], coords[1], max(radius_km, REGION_RADIUS_KM)
                    )

        coords = self._estimate_coordinates(place)
        if coords:
            logger.info("Resolved %r via estimated coordinates %s", place, coords)
            return self.search_by_coordinate(
                coords[0], coords[1], max(radius_km, LLM_COORDINATE_RADIUS_KM)
            )

        raise LocationNotFound(place)

    def _resolve_place_name(self, place: str) -> str | None:
        try:
            reply = self.chat.complete(_RESOLVE_PROMPT.format(place=place), temperature=0.0,
                                       max_tokens=60)
        except ChatError:
            logger.info("Place resolution unavailable for %r", place, exc_info=True)
            return None
        reply = reply.strip().strip('"').strip()
        lowered = reply.lower()
        if any(marker in lowered for marker in _UNSURE_MARKERS):
            return None
        if not 4 <= len(reply) < 100:
            return None
        return reply

    def _estimate_coordinates(self, place: str) -> tuple[float, float] | None:
        try:
            reply = self.chat.complete(_COORDINATES_PROMPT.format(place=place), temperature=0.0,
                                       max_tokens=40)
        except ChatError:
            logger.info("Coordinate estimate unavailable for %r", place, exc_info=True)
            return None
        numbers = _FLOAT_RE.findall(reply)
        if len(numbers) < 2:
            return None
        lat, lon = float(numbers[0]), float(numbers[1])
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            return None
        return lat, lon

    # -- introspection --

    def geohash_for(self, asset_id: str) -> str | None:
        with self._lock:
            return self._asset_geohash.get(asset_id)

    def is_indexed(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._indexed

    def stats(self) -> dict:
        with self._lock:
            return {
                "indexed_assets": len(self._indexed),
                "unique_cells": len(self._cells),
                "precision": self.precision,
                "build": self.progress(),
            }

    def locations(self, limit: int = 20) -> list[dict]:
        """Most photographed places, named from the center of each coarse cell."""
        with self._lock:
            counts = Counter(
                {cell: len(ids) for cell, ids in self._cells.items() if len(cell) == self.min_prefix}
            )
        top = counts.most_common(limit)
        if not top:
            return []
        centers = [geohash_codec.decode(cell) for cell, _ in top]
        places = reverse_geocode.search(centers)
        result = []
        for (cell, count), (lat, lon), place in zip(top, centers, places):
            name = ", ".join(p for p in (place.get("city"), place.get("country")) if p)
            result.append({
                "place": name or cell,
                "geohash": cell,
                "latitude": round(lat, 4),
                "longitude": round(lon, 4),
                "count": count,
            })
        return result
