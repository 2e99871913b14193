"""HTTP client for the media-search service daemon.

Auto-launches the service if it's not running.
"""

import json
import logging
import subprocess
import sys
import time
from pathlib import Path

import httpx

from config import SERVICE_HOST, SERVICE_PORT, SERVICE_STARTUP_TIMEOUT

logger = logging.getLogger(__name__)


class ServiceClient:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._base_url = base_url or f"http://{SERVICE_HOST}:{SERVICE_PORT}"
        self._http = http or httpx.Client(base_url=self._base_url, timeout=600)

    def _is_alive(self) -> bool:
        try:
            resp = self._http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def _ensure_service(self) -> None:
        if self._is_alive():
            return

        logger.info("Service not running, launching...")
        service_script = Path(__file__).resolve().parent / "service.py"
        subprocess.Popen(
            [sys.executable, str(service_script)],
            cwd=str(service_script.parent),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            time.sleep(0.5)
            if self._is_alive():
                logger.info("Service is ready")
                return

        raise RuntimeError(
            f"Service did not start within {SERVICE_STARTUP_TIMEOUT}s"
        )

    def _post(self, path: str, json: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._http.post(path, json=json or {})

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._http.get(path, params=params)

    @staticmethod
    def _loading(resp: httpx.Response) -> bool:
        return resp.status_code == 503

    # -- tool methods --

    def search(self, query: str) -> str:
        resp = self._post("/search", {"query": query})
        if self._loading(resp):
            return "Service is loading, try again shortly."
        data = resp.json()
        if resp.status_code != 200:
            return data.get("error", resp.text)
        filters = "; ".join(data["applied_filters"]) or "none"
        if not data["assets"]:
            return f"No matching media found. Filters: {filters}"
        return json.dumps(
            {"filters": data["applied_filters"], "results": data["assets"]}, indent=2
        )

    def build(self, index: str = "all", limit: int | None = None) -> str:
        body: dict = {"index": index}
        if limit is not None:
            body["limit"] = limit
        resp = self._post("/build", body)
        if self._loading(resp):
            return "Service is loading, try again shortly."
        data = resp.json()
        if resp.status_code != 200:
            return data.get("error", resp.text)
        parts = []
        if data["started"]:
            parts.append(f"Started: {', '.join(data['started'])}.")
        if data["already_running"]:
            parts.append(f"Already running: {', '.join(data['already_running'])}.")
        parts.append("Use index_status to follow progress.")
        return " ".join(parts)

    def cancel(self, index: str) -> dict:
        return self._post("/cancel", {"index": index}).json()

    def clear(self, index: str) -> dict:
        return self._post("/clear", {"index": index}).json()

    def locations(self, limit: int = 20) -> list[dict]:
        return self._get("/locations", {"limit": str(limit)}).json()

    def refresh_library(self) -> dict:
        return self._post("/refresh-library").json()

    def status(self) -> dict:
        return self._get("/status").json()

    def health(self) -> bool:
        return self._is_alive()
