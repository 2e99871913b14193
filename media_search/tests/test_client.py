import json
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from client import ServiceClient


def _client(handler) -> ServiceClient:
    def route(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"ok": True, "ready": True})
        return handler(request)

    http = httpx.Client(base_url="http://test", transport=httpx.MockTransport(route))
    return ServiceClient(base_url="http://test", http=http)


def test_search_formats_results():
    def handler(request):
        assert json.loads(request.content) == {"query": "beach"}
        return httpx.Response(200, json={
            "applied_filters": ["labels: beach"],
            "assets": [{"id": "a"}],
        })

    result = json.loads(_client(handler).search("beach"))
    assert result == {"filters": ["labels: beach"], "results": [{"id": "a"}]}


def test_search_without_results():
    client = _client(lambda r: httpx.Response(200, json={"applied_filters": [], "assets": []}))
    assert client.search("nothing") == "No matching media found. Filters: none"


def test_search_while_loading():
    client = _client(lambda r: httpx.Response(503, json={"loading": True}))
    assert client.search("beach") == "Service is loading, try again shortly."


def test_build_message():
    def handler(request):
        assert json.loads(request.content) == {"index": "all", "limit": 10}
        return httpx.Response(200, json={"started": ["geo", "labels"],
                                         "already_running": ["video"]})

    message = _client(handler).build("all", 10)
    assert "Started: geo, labels." in message
    assert "Already running: video." in message


def test_build_error():
    client = _client(lambda r: httpx.Response(400, json={"error": "Unknown index 'x'"}))
    assert client.build("x") == "Unknown index 'x'"


def test_locations_passes_limit():
    def handler(request):
        assert request.url.params["limit"] == "3"
        return httpx.Response(200, json=[{"place": "Athens, Greece", "count": 2}])

    assert _client(handler).locations(3) == [{"place": "Athens, Greece", "count": 2}]


def test_health_when_down():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    http = httpx.Client(base_url="http://test", transport=httpx.MockTransport(refuse))
    assert ServiceClient(base_url="http://test", http=http).health() is False
