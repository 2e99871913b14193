import sqlite3
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from assets import MediaType
from photos_library import PhotosLibrary, scan_library

# 2024-06-01 00:00:00 local time, in Apple epoch seconds
JUNE_2024 = datetime(2024, 6, 1).timestamp() - 978307200


def _create_photos_db(db_path: Path, rows: list[dict]) -> None:
    """Create a minimal Photos.sqlite with the columns scan_library queries."""
    conn = sqlite3.connect(str(db_path))
    conn.execute("""
        CREATE TABLE ZASSET (
            Z_PK INTEGER PRIMARY KEY AUTOINCREMENT,
            ZUUID TEXT,
            ZDIRECTORY TEXT,
            ZFILENAME TEXT,
            ZCLOUDBATCHPUBLISHDATE REAL,
            ZDATECREATED REAL,
            ZLATITUDE REAL,
            ZLONGITUDE REAL,
            ZDURATION REAL,
            ZTRASHEDSTATE INTEGER DEFAULT 0,
            ZKIND INTEGER DEFAULT 0,
            ZCOMPLETE INTEGER DEFAULT 1
        )
    """)
    for row in rows:
        conn.execute(
            "INSERT INTO ZASSET (ZUUID, ZDIRECTORY, ZFILENAME, ZCLOUDBATCHPUBLISHDATE, "
            "ZDATECREATED, ZLATITUDE, ZLONGITUDE, ZDURATION, ZTRASHEDSTATE, ZKIND, ZCOMPLETE) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                row["uuid"], row.get("directory", "A"), row.get("filename", f"{row['uuid']}.jpg"),
                row.get("cloud"), row.get("created", JUNE_2024),
                row.get("lat"), row.get("lon"), row.get("duration"),
                row.get("trashed", 0), row.get("kind", 0), row.get("complete", 1),
            ),
        )
    conn.commit()
    conn.close()


def _add_people_tables(db_path: Path, people: list[tuple[int, str]],
                       columns: tuple[str, str] = ("ZASSET", "ZPERSON")) -> None:
    """Add ZPERSON and ZDETECTEDFACE tables with face-asset links."""
    asset_col, person_col = columns
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE ZPERSON (Z_PK INTEGER PRIMARY KEY AUTOINCREMENT, ZFULLNAME TEXT)")
    conn.execute(f"""
        CREATE TABLE ZDETECTEDFACE (
            Z_PK INTEGER PRIMARY KEY AUTOINCREMENT,
            {asset_col} INTEGER,
            {person_col} INTEGER
        )
    """)
    person_pks: dict[str, int] = {}
    for asset_pk, name in people:
        if name not in person_pks:
            cursor = conn.execute("INSERT INTO ZPERSON (ZFULLNAME) VALUES (?)", (name,))
            person_pks[name] = cursor.lastrowid
        conn.execute(
            f"INSERT INTO ZDETECTEDFACE ({asset_col}, {person_col}) VALUES (?, ?)",
            (asset_pk, person_pks[name]),
        )
    conn.commit()
    conn.close()


@pytest.fixture()
def photos_lib(tmp_path):
    """Create a fake Photos library structure."""
    lib = tmp_path / "Test.photoslibrary"
    (lib / "database").mkdir(parents=True)
    (lib / "originals" / "A").mkdir(parents=True)
    (lib / "scopes" / "cloudsharing" / "data" / "B").mkdir(parents=True)
    return lib


def _db(lib: Path) -> Path:
    return lib / "database" / "Photos.sqlite"


def test_scan_photo_with_location(photos_lib):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1", "lat": 37.98, "lon": 23.72}])

    assets = scan_library(photos_lib)

    assert len(assets) == 1
    asset = assets[0]
    assert asset.id == "p1"
    assert asset.media_type == MediaType.IMAGE
    assert asset.created_at == datetime(2024, 6, 1)
    assert (asset.latitude, asset.longitude) == (37.98, 23.72)
    assert asset.path == str(photos_lib / "originals" / "A" / "p1.jpg")


def test_scan_video_with_duration(photos_lib):
    _create_photos_db(_db(photos_lib), [
        {"uuid": "v1", "kind": 1, "filename": "clip.mov", "duration": 12.5},
    ])

    asset = scan_library(photos_lib)[0]

    assert asset.media_type == MediaType.VIDEO
    assert asset.duration == 12.5


@pytest.mark.parametrize("lat,lon", [(None, None), (0.0, 0.0), (-180.0, -180.0)])
def test_placeholder_locations_are_dropped(photos_lib, lat, lon):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1", "lat": lat, "lon": lon}])
    assert not scan_library(photos_lib)[0].has_location


def test_shared_and_absolute_paths(photos_lib, tmp_path):
    _create_photos_db(_db(photos_lib), [
        {"uuid": "shared", "directory": "B", "filename": "s.heic", "cloud": 12345.0},
        {"uuid": "external", "directory": str(tmp_path / "ext"), "filename": "e.png"},
    ])

    by_id = {a.id: a for a in scan_library(photos_lib)}

    assert by_id["shared"].path == str(
        photos_lib / "scopes" / "cloudsharing" / "data" / "B" / "s.heic")
    assert by_id["external"].path == str(tmp_path / "ext" / "e.png")


def test_skips_trashed_incomplete_and_other_kinds(photos_lib):
    _create_photos_db(_db(photos_lib), [
        {"uuid": "trashed", "trashed": 1},
        {"uuid": "partial", "complete": 0},
        {"uuid": "audio", "kind": 2},
        {"uuid": "kept"},
    ])

    assert [a.id for a in scan_library(photos_lib)] == ["kept"]


def test_newest_first(photos_lib):
    _create_photos_db(_db(photos_lib), [
        {"uuid": "old", "created": JUNE_2024 - 86400},
        {"uuid": "new", "created": JUNE_2024 + 86400},
        {"uuid": "undated", "created": None},
    ])

    assert [a.id for a in scan_library(photos_lib)] == ["new", "old", "undated"]


def test_people_from_detected_faces(photos_lib):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1"}, {"uuid": "p2"}])
    _add_people_tables(_db(photos_lib), [(1, "Sarah"), (1, "Alex Doe"), (1, "Sarah"),
                                         (2, "Alex Doe")])

    by_id = {a.id: a for a in scan_library(photos_lib)}

    assert by_id["p1"].people == ["Sarah", "Alex Doe"]
    assert by_id["p2"].people == ["Alex Doe"]


def test_people_with_newer_face_columns(photos_lib):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1"}])
    _add_people_tables(_db(photos_lib), [(1, "Sarah")],
                       columns=("ZASSETFORFACE", "ZPERSONFORFACE"))

    assert scan_library(photos_lib)[0].people == ["Sarah"]


def test_missing_database(tmp_path):
    assert scan_library(tmp_path / "Nope.photoslibrary") == []


def test_library_store_filters(photos_lib):
    _create_photos_db(_db(photos_lib), [
        {"uuid": "me", "created": JUNE_2024 + 10},
        {"uuid": "sarah", "created": JUNE_2024 + 20},
        {"uuid": "video", "kind": 1, "created": JUNE_2024 + 30},
    ])
    _add_people_tables(_db(photos_lib), [(1, "Alex Doe"), (2, "Sarah"), (3, "Alex Doe")])

    library = PhotosLibrary(photos_lib, self_person="Alex Doe")

    assert [a.id for a in library.all_assets()] == ["video", "sarah", "me"]
    assert [a.id for a in library.fetch_self_assets()] == ["video", "me"]
    assert [a.id for a in library.fetch_self_assets(MediaType.IMAGE)] == ["me"]
    assert [a.id for a in library.fetch_by_person("sarah")] == ["sarah"]
    assert [a.id for a in library.fetch_by_person("alex")] == ["video", "me"]
    assert library.get("sarah").people == ["Sarah"]
    assert [a.id for a in library.fetch_by_ids(["me", "video", "ghost"])] == ["video", "me"]


def test_library_without_owner(photos_lib):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1"}])
    library = PhotosLibrary(photos_lib, self_person="")
    assert library.fetch_self_assets() == []


def test_library_refresh_picks_up_changes(photos_lib):
    _create_photos_db(_db(photos_lib), [{"uuid": "p1"}])
    library = PhotosLibrary(photos_lib, self_person="")
    assert len(library.all_assets()) == 1

    conn = sqlite3.connect(str(_db(photos_lib)))
    conn.execute("INSERT INTO ZASSET (ZUUID, ZDIRECTORY, ZFILENAME, ZDATECREATED) "
                 "VALUES ('p2', 'A', 'p2.jpg', 0)")
    conn.commit()
    conn.close()

    assert len(library.all_assets()) == 1
    assert library.refresh() == 2
    assert library.get("p2") is not None
