"""HTTP service daemon for media-search.

Owns the asset store, the three indices, the classifier and the search
orchestrator. MCP servers connect as thin clients. Only one instance should
run at a time.

    uv run python service.py

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the Photos library and load index snapshots
    Handlers return {"loading": true} until the engine is ready.

Index builds run on background threads; poll /status for progress.
"""

import asyncio
import logging
import os
import signal
import sys
import threading

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from activity_index import ActivityIndex
from blob_store import FileBlobStore
from classifier import ClipLabelClassifier
from config import BLOB_DIR, NICE_VALUE, SERVICE_HOST, SERVICE_PID_FILE, SERVICE_PORT
from geo_index import GeoIndex
from geocoder import Geocoder
from index_base import PersistentIndex
from label_index import LabelIndex
from llm import ChatService
from photos_library import PhotosLibrary
from query_parser import QueryParser
from search import SearchOrchestrator
from transcribe import SpeechTranscriber

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_engine: SearchOrchestrator | None = None
_engine_lock = threading.Lock()
_engine_ready = threading.Event()

INDEX_NAMES = ("geo", "labels", "video")


def create_engine() -> SearchOrchestrator:
    store = PhotosLibrary()
    blobs = FileBlobStore(BLOB_DIR)
    chat = ChatService()
    classifier = ClipLabelClassifier()
    geo = GeoIndex(store, blobs, geocoder=Geocoder(), chat=chat)
    labels = LabelIndex(store, blobs, classifier)
    activity = ActivityIndex(store, blobs, classifier, chat=chat,
                             transcriber=SpeechTranscriber(chat=chat))
    return SearchOrchestrator(store, geo, labels, activity, QueryParser(chat))


def _create_engine() -> SearchOrchestrator:
    """Create the engine (thread-safe, called from background thread)."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = create_engine()
    _engine_ready.set()
    return _engine


def get_engine() -> SearchOrchestrator:
    """Return the engine, blocking until it is loaded."""
    _engine_ready.wait()
    return _engine  # type: ignore[return-value]


def _index(name: str) -> PersistentIndex:
    engine = get_engine()
    return {
        "geo": engine.geo_index,
        "labels": engine.label_index,
        "video": engine.activity_index,
    }[name]


def _run_build(name: str, limit: int | None) -> dict:
    engine = get_engine()
    if name == "geo":
        return engine.geo_index.build_index()
    if name == "labels":
        return engine.label_index.build_index(limit=limit)
    return engine.activity_index.build_index(limit=limit)


def _start_build(name: str, limit: int | None) -> None:
    def _target():
        try:
            stats = _run_build(name, limit)
            logger.info("Build %s finished: %s", name, stats)
        except Exception:
            logger.warning("Build %s failed", name, exc_info=True)

    threading.Thread(target=_target, name=f"build-{name}", daemon=True).start()


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


_LOADING = JSONResponse({"loading": True}, status_code=503)


def _bad_index(name: str | None) -> JSONResponse:
    return JSONResponse(
        {"error": f"Unknown index {name!r}; expected one of {', '.join(INDEX_NAMES)}"},
        status_code=400,
    )


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _engine_ready.is_set()})


async def status(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    data = await asyncio.to_thread(get_engine().stats)
    return JSONResponse(data)


async def search(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    query = (body.get("query") or "").strip()
    if not query:
        return JSONResponse({"error": "query is required"}, status_code=400)

    engine = get_engine()
    response = await asyncio.to_thread(engine.search, query)
    data = response.to_dict()
    data["assets"] = [a.summary() for a in engine.store.fetch_by_ids(response.asset_ids)]
    return JSONResponse(data)


async def build(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    name = body.get("index", "all")
    limit = body.get("limit")
    names = INDEX_NAMES if name == "all" else (name,)
    if any(n not in INDEX_NAMES for n in names):
        return _bad_index(name)

    started, running = [], []
    for n in names:
        if _index(n).is_building:
            running.append(n)
        else:
            _start_build(n, limit)
            started.append(n)
    return JSONResponse({"started": started, "already_running": running})


async def cancel(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    name = body.get("index")
    if name not in INDEX_NAMES:
        return _bad_index(name)
    return JSONResponse({"index": name, "cancelled": _index(name).cancel()})


async def clear(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    body = await request.json()
    name = body.get("index")
    if name not in INDEX_NAMES:
        return _bad_index(name)
    await asyncio.to_thread(_index(name).clear)
    return JSONResponse({"index": name, "cleared": True})


async def locations(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    limit = int(request.query_params.get("limit", "20"))
    data = await asyncio.to_thread(get_engine().geo_index.locations, limit)
    return JSONResponse(data)


async def refresh_library(request: Request) -> JSONResponse:
    if not _engine_ready.is_set():
        return _LOADING
    store = get_engine().store
    count = await asyncio.to_thread(store.refresh)
    return JSONResponse({"assets": count})


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/search", search, methods=["POST"]),
    Route("/build", build, methods=["POST"]),
    Route("/cancel", cancel, methods=["POST"]),
    Route("/clear", clear, methods=["POST"]),
    Route("/locations", locations, methods=["GET"]),
    Route("/refresh-library", refresh_library, methods=["POST"]),
]

app = Starlette(routes=routes)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _set_process_priority() -> None:
    """Set low process priority via nice. Applied before uvicorn starts."""
    try:
        os.nice(NICE_VALUE)
        logger.info("Set nice value to %d", NICE_VALUE)
    except OSError:
        logger.debug("Could not set nice value")


def _write_pid() -> None:
    SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    SERVICE_PID_FILE.unlink(missing_ok=True)


def _background_startup() -> None:
    """Load the library and index snapshots without blocking the event loop."""
    def _load():
        try:
            engine = _create_engine()
            assets = engine.store.refresh()
            logger.info("Engine ready: %d assets, %s", assets, engine.stats())
        except Exception:
            logger.warning("Background startup failed", exc_info=True)

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _set_process_priority()
    _background_startup()

    logger.info("Starting media-search service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
