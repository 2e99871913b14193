"""Forward geocoding (place name -> coordinates) over the Nominatim API."""

import logging
import math
from typing import NamedTuple

import httpx

from config import GEOCODER_TIMEOUT, GEOCODER_URL, GEOCODER_USER_AGENT

logger = logging.getLogger(__name__)

_EARTH_RADIUS_KM = 6371.0


class Place(NamedTuple):
    latitude: float
    longitude: float
    extent_km: float = 0.0  # center-to-corner distance of the place's bounding box


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _extent(result: dict, lat: float, lon: float) -> float:
    # boundingbox is [south, north, west, east] as strings
    try:
        south, north, west, east = (float(v) for v in result["boundingbox"])
    except (KeyError, TypeError, ValueError):
        return 0.0
    return haversine_km(lat, lon, north, east)


class Geocoder:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._http = http or httpx.Client(
            base_url=base_url or GEOCODER_URL,
            timeout=GEOCODER_TIMEOUT,
            headers={"User-Agent": GEOCODER_USER_AGENT},
        )

    def geocode(self, query: str) -> Place | None:
        """Best match for query, or None when nothing matched or the call failed."""
        query = query.strip()
        if not query:
            return None
        try:
            resp = self._http.get(
                "/search", params={"q": query, "format": "json", "limit": 1}
            )
            resp.raise_for_status()
            results = resp.json()
        except (httpx.HTTPError, ValueError):
            logger.info("Geocoding request failed for %r", query, exc_info=True)
            return None

        if not results:
            logger.debug("No geocoding result for %r", query)
            return None
        try:
            lat = float(results[0]["lat"])
            lon = float(results[0]["lon"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Malformed geocoding result for %r: %s", query, results[0])
            return None
        place = Place(lat, lon, _extent(results[0], lat, lon))
        logger.debug("Geocoded %r -> %s", query, place)
        return place
