"""Read photos and videos from an Apple Photos library via direct SQLite access."""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from assets import AssetStore, MediaAsset, MediaType
from config import PHOTOS_LIBRARY, SELF_PERSON_NAME

logger = logging.getLogger(__name__)

# Apple epoch offset: seconds between 1970-01-01 and 2001-01-01
_APPLE_EPOCH_OFFSET = 978307200

_KIND_TO_TYPE = {0: MediaType.IMAGE, 1: MediaType.VIDEO}

_SCAN_QUERY = """
SELECT
    ZASSET.Z_PK,
    ZASSET.ZUUID,
    ZASSET.ZKIND,
    ZASSET.ZDIRECTORY,
    ZASSET.ZFILENAME,
    ZASSET.ZCLOUDBATCHPUBLISHDATE,
    ZASSET.ZDATECREATED,
    ZASSET.ZLATITUDE,
    ZASSET.ZLONGITUDE,
    ZASSET.ZDURATION
FROM ZASSET
WHERE ZASSET.ZTRASHEDSTATE = 0
  AND ZASSET.ZKIND IN (0, 1)
  AND ZASSET.ZCOMPLETE = 1
"""


def _apple_epoch_to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts + _APPLE_EPOCH_OFFSET)
    except (ValueError, OSError, OverflowError):
        return None


def _valid_location(lat: float | None, lon: float | None) -> bool:
    # Photos stores -180 for "no location"; (0, 0) is a camera default.
    if lat is None or lon is None:
        return False
    if lat == 0 and lon == 0:
        return False
    return -90 <= lat <= 90 and -180 < lon <= 180


def _detect_face_columns(conn: sqlite3.Connection) -> tuple[str, str] | None:
    """Detect which FK columns ZDETECTEDFACE uses (schema varies by version)."""
    try:
        info = conn.execute("PRAGMA table_info(ZDETECTEDFACE)").fetchall()
    except sqlite3.OperationalError:
        return None
    columns = {row[1] for row in info}
    if "ZASSETFORFACE" in columns and "ZPERSONFORFACE" in columns:
        return "ZASSETFORFACE", "ZPERSONFORFACE"
    if "ZASSET" in columns and "ZPERSON" in columns:
        return "ZASSET", "ZPERSON"
    return None


def _fetch_people(conn: sqlite3.Connection) -> dict[int, list[str]]:
    """Fetch person names per asset PK."""
    face_cols = _detect_face_columns(conn)
    if not face_cols:
        return {}

    asset_col, person_col = face_cols
    query = f"""
        SELECT DF.{asset_col}, ZPERSON.ZFULLNAME
        FROM ZDETECTEDFACE AS DF
        JOIN ZPERSON ON ZPERSON.Z_PK = DF.{person_col}
        WHERE DF.{asset_col} IS NOT NULL
          AND ZPERSON.ZFULLNAME IS NOT NULL
          AND ZPERSON.ZFULLNAME != ''
    """
    try:
        rows = conn.execute(query).fetchall()
    except sqlite3.OperationalError:
        logger.debug("People query failed", exc_info=True)
        return {}

    result: dict[int, list[str]] = {}
    for asset_pk, name in rows:
        names = result.setdefault(asset_pk, [])
        if name not in names:
            names.append(name)
    return result


def _resolve_path(lib: Path, directory: str | None, filename: str | None,
                  cloud_batch_date: float | None) -> Path | None:
    if not directory or not filename:
        return None
    if directory.startswith("/"):
        return Path(directory) / filename
    if cloud_batch_date is not None:
        return lib / "scopes" / "cloudsharing" / "data" / directory / filename
    return lib / "originals" / directory / filename


def scan_library(library_path: Path | None = None) -> list[MediaAsset]:
    """Scan an Apple Photos library and return its images and videos, newest first.

    Assets whose originals are not on disk (iCloud-only) are still returned;
    they have a location and date for geo/date search even without pixels.
    """
    lib = Path(library_path) if library_path else PHOTOS_LIBRARY
    db_path = lib / "database" / "Photos.sqlite"

    if not db_path.exists():
        logger.warning("Photos database not found: %s", db_path)
        return []

    logger.info("Scanning Photos library: %s", lib)

    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    try:
        rows = conn.execute(_SCAN_QUERY).fetchall()
        people_by_pk = _fetch_people(conn)
    finally:
        conn.close()

    assets: list[MediaAsset] = []
    for zpk, uuid, kind, directory, filename, cbd, created, lat, lon, duration in rows:
        if not uuid:
            continue
        path = _resolve_path(lib, directory, filename, cbd)
        asset = MediaAsset(
            id=uuid,
            media_type=_KIND_TO_TYPE[kind],
            created_at=_apple_epoch_to_datetime(created),
            duration=float(duration or 0.0),
            people=people_by_pk.get(zpk, []),
            path=str(path) if path is not None else None,
        )
        if _valid_location(lat, lon):
            asset.latitude = lat
            asset.longitude = lon
        assets.append(asset)

    assets.sort(key=lambda a: -(a.created_at.timestamp() if a.created_at else 0.0))
    videos = sum(1 for a in assets if a.media_type == MediaType.VIDEO)
    logger.info("Found %d assets (%d videos)", len(assets), videos)
    return assets


class PhotosLibrary(AssetStore):
    """Asset store backed by an Apple Photos library. Scans lazily, caches."""

    def __init__(self, library_path: Path | None = None, self_person: str | None = None):
        self.library_path = Path(library_path) if library_path else PHOTOS_LIBRARY
        self.self_person = SELF_PERSON_NAME if self_person is None else self_person
        self._assets: list[MediaAsset] | None = None
        self._by_id_cache: dict[str, MediaAsset] = {}
        self._lock = threading.Lock()

    def refresh(self) -> int:
        """Rescan the library database. Returns the asset count."""
        assets = scan_library(self.library_path)
        with self._lock:
            self._assets = assets
            self._by_id_cache = {a.id: a for a in assets}
        return len(assets)

    def all_assets(self) -> list[MediaAsset]:
        if self._assets is None:
            self.refresh()
        return list(self._assets or [])

    def _by_id(self) -> dict[str, MediaAsset]:
        if self._assets is None:
            self.refresh()
        return self._by_id_cache
