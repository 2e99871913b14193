import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from geocoder import Geocoder, Place, haversine_km


def _geocoder(handler) -> Geocoder:
    http = httpx.Client(base_url="http://nominatim.test", transport=httpx.MockTransport(handler))
    return Geocoder(http=http)


def test_haversine():
    # Athens to Nafplio is roughly 94 km
    assert haversine_km(37.9838, 23.7275, 37.5665, 22.8016) == pytest.approx(93.0, abs=5.0)
    assert haversine_km(10.0, 10.0, 10.0, 10.0) == 0.0


def test_geocode_best_match_with_extent():
    def handler(request):
        assert request.url.path == "/search"
        assert request.url.params["q"] == "Athens"
        assert request.url.params["format"] == "json"
        return httpx.Response(200, json=[{
            "lat": "37.9838", "lon": "23.7275",
            "boundingbox": ["37.8", "38.1", "23.6", "23.9"],
        }])

    place = _geocoder(handler).geocode("  Athens ")

    assert isinstance(place, Place)
    assert place.latitude == pytest.approx(37.9838)
    assert place.longitude == pytest.approx(23.7275)
    assert 10 < place.extent_km < 30


def test_geocode_without_bounding_box():
    place = _geocoder(lambda r: httpx.Response(200, json=[{"lat": "1.5", "lon": "2.5"}])).geocode("x")
    assert place == Place(1.5, 2.5, 0.0)


def test_geocode_no_results():
    assert _geocoder(lambda r: httpx.Response(200, json=[])).geocode("Atlantis") is None


def test_geocode_http_error():
    assert _geocoder(lambda r: httpx.Response(503, text="busy")).geocode("Athens") is None


def test_geocode_malformed_result():
    assert _geocoder(lambda r: httpx.Response(200, json=[{"lat": "north"}])).geocode("x") is None


def test_geocode_invalid_json():
    assert _geocoder(lambda r: httpx.Response(200, text="<html>")).geocode("x") is None


def test_geocode_blank_query_skips_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert _geocoder(handler).geocode("   ") is None
