import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from assets import InMemoryAssetStore, MediaAsset, MediaType
from blob_store import FileBlobStore
from classifier import VisualClassifier
from geo_index import GeoIndex
from geocoder import Place
from label_index import LabelIndex
from query_parser import ParsedQuery, QueryParser
from search import CandidateSet, SearchOrchestrator, apply_date_filter, cluster_into_trips

ATHENS = (37.9838, 23.7275)
NAFPLIO = (37.5665, 22.8016)
REYKJAVIK = (64.1466, -21.9426)

LABELS = {
    "greece_beach": [("beach", 0.9), ("sky", 0.6)],
    "greece_dog": [("dog", 0.9)],
    "iceland_beach": [("seashore", 0.8)],
    "selfie_home": [("person", 0.9), ("face", 0.8)],
    "sarah_party": [("person", 0.9), ("celebration", 0.7)],
}


class _TaggedStore(InMemoryAssetStore):
    def load_thumbnail(self, asset, size):
        img = Image.new("RGB", (size, size))
        img.info["asset"] = asset.id
        return img


class _FakeClassifier(VisualClassifier):
    def classify(self, image):
        return LABELS[image.info["asset"]]


def _library(self_person: str = "Alex Doe") -> list[MediaAsset]:
    def asset(asset_id, when, coords=None, media=MediaType.IMAGE, people=()):
        lat, lon = coords if coords else (None, None)
        return MediaAsset(id=asset_id, media_type=media, created_at=when,
                          latitude=lat, longitude=lon, people=list(people), duration=20.0)

    return [
        asset("greece_beach", datetime(2024, 7, 10), NAFPLIO),
        asset("greece_dog", datetime(2024, 7, 12), ATHENS),
        asset("iceland_beach", datetime(2023, 5, 1), REYKJAVIK),
        asset("selfie_home", datetime(2024, 1, 5), people=[self_person]),
        asset("sarah_party", datetime(2024, 2, 1), people=["Sarah"]),
        asset("rope_video", datetime(2024, 3, 1), media=MediaType.VIDEO, people=[self_person]),
        asset("guitar_video", datetime(2024, 3, 5), media=MediaType.VIDEO),
    ]


def _geo_chat():
    chat = MagicMock()
    chat.complete.return_value = "UNKNOWN"
    return chat


def _engine(tmp_path, reply: dict | None = None, assets=None, self_person="Alex Doe",
            activity=None, build_labels=True, **kwargs) -> SearchOrchestrator:
    store = _TaggedStore(assets if assets is not None else _library(), self_person=self_person)
    blobs = FileBlobStore(tmp_path / "blobs")
    geocoder = MagicMock()
    geocoder.geocode.side_effect = lambda q: {
        "Greece": Place(39.07, 21.82, extent_km=600.0),
        "Athens": Place(*ATHENS, extent_km=10.0),
    }.get(q)
    geo = GeoIndex(store, blobs, geocoder=geocoder, chat=_geo_chat())
    geo.build_index()
    labels = LabelIndex(store, blobs, _FakeClassifier())
    if build_labels:
        labels.build_index()

    if activity is None:
        activity = MagicMock()
        activity.is_empty = False
        activity.search_with_llm.return_value = ["rope_video"]

    parser_chat = MagicMock()
    parser_chat.complete.return_value = json.dumps(reply or {})
    return SearchOrchestrator(store, geo, labels, activity, QueryParser(chat=parser_chat),
                              **kwargs)


# -- candidate sets --


def test_unconstrained_set_becomes_stage_matches():
    candidates = CandidateSet.unconstrained()
    assert not candidates.is_constrained
    assert not candidates.is_empty
    assert candidates.intersect(["a", "b"]) == CandidateSet.constrained(["a", "b"])


def test_constrained_set_intersects():
    candidates = CandidateSet.constrained(["a", "b", "c"])
    assert candidates.intersect(["b", "c", "d"]).ids == {"b", "c"}


def test_empty_set_stays_empty():
    empty = CandidateSet.constrained([])
    assert empty.is_empty
    assert empty.intersect(["a"]).is_empty


def test_unconstrained_has_no_ids():
    with pytest.raises(ValueError):
        CandidateSet.unconstrained().ids


def test_date_filter_on_empty_set_skips_store():
    store = MagicMock()
    empty = CandidateSet.constrained([])
    assert apply_date_filter(empty, store, datetime(2024, 1, 1), datetime(2025, 1, 1)) is empty
    store.fetch_by_date_range.assert_not_called()


def test_date_filter_on_unconstrained_takes_range():
    store = InMemoryAssetStore(_library())
    result = apply_date_filter(CandidateSet.unconstrained(), store,
                               datetime(2024, 7, 1), datetime(2024, 8, 1))
    assert result.ids == {"greece_beach", "greece_dog"}


def test_date_filter_narrows_constrained():
    store = InMemoryAssetStore(_library())
    result = apply_date_filter(CandidateSet.constrained(["greece_beach", "iceland_beach"]),
                               store, datetime(2024, 1, 1), datetime(2025, 1, 1))
    assert result.ids == {"greece_beach"}


# -- trip clustering --


def test_cluster_into_trips_most_recent_first():
    base = datetime(2024, 1, 1)
    dated = [(f"d{d}", base + timedelta(days=d)) for d in (1, 2, 40, 41)]
    assert cluster_into_trips(dated, 5) == [["d41", "d40"], ["d2", "d1"]]


def test_cluster_gap_boundary_is_inclusive():
    base = datetime(2024, 1, 1)
    dated = [("a", base), ("b", base + timedelta(days=5))]
    assert cluster_into_trips(dated, 5) == [["b", "a"]]


def test_cluster_empty():
    assert cluster_into_trips([]) == []


# -- end to end --


def test_beach_photos_from_greece(tmp_path):
    engine = _engine(tmp_path, {
        "location": "Greece", "labels": ["beach", "outdoor"], "mediaType": "photo",
    })

    response = engine.search("beach photos from Greece")

    assert response.asset_ids == ["greece_beach"]
    assert any(f.startswith("location: Greece (2)") for f in response.applied_filters)
    assert any(f.startswith("labels: beach ->") for f in response.applied_filters)


def test_inferred_labels_skipped_after_location_match(tmp_path):
    engine = _engine(tmp_path, {"location": "Greece", "labels": ["outdoor", "travel"]})

    response = engine.search("photos from my trip to Greece")

    assert response.asset_ids == ["greece_dog", "greece_beach"]
    assert "labels skipped (location matched)" in response.applied_filters


def test_my_photos(tmp_path):
    engine = _engine(tmp_path, {"isSelfPhotos": True})

    response = engine.search("my photos")

    assert response.asset_ids == ["rope_video", "selfie_home"]


def test_my_photos_respects_media_type(tmp_path):
    engine = _engine(tmp_path, {"isSelfPhotos": True, "mediaType": "photo"})
    assert engine.search("photos of me").asset_ids == ["selfie_home"]


def test_self_photos_without_owner_tag(tmp_path):
    engine = _engine(tmp_path, {"isSelfPhotos": True, "mediaType": "photo"}, self_person="")

    response = engine.search("photos of me")

    assert "self-photos skipped (no owner face tags)" in response.applied_filters
    assert len(response.asset_ids) == 5


def test_location_not_found_stays_empty(tmp_path):
    engine = _engine(tmp_path, {"location": "Atlantis", "labels": ["beach"],
                                "isSelfPhotos": True})

    response = engine.search("photos of me on the beach in Atlantis")

    assert response.asset_ids == []
    assert "location: Atlantis (not found)" in response.applied_filters
    assert "self-photos skipped (content filter found nothing)" in response.applied_filters


def test_location_hint_is_appended(tmp_path):
    engine = _engine(tmp_path, {"location": "Athens", "locationHint": "hotel"})
    engine.geo_index.geocoder.geocode.side_effect = lambda q: (
        Place(*ATHENS) if q == "Athens hotel" else None
    )

    response = engine.search("photos at our hotel in Athens")

    assert response.asset_ids == ["greece_dog"]


def test_labels_only(tmp_path):
    engine = _engine(tmp_path, {"labels": ["ocean"]})
    assert engine.search("ocean pictures").asset_ids == ["greece_beach", "iceland_beach"]


def test_labels_without_index_match_nothing(tmp_path):
    engine = _engine(tmp_path, {"labels": ["beach"], "mediaType": "photo"}, build_labels=False)

    response = engine.search("beach photos")

    assert response.asset_ids == []
    assert "labels: beach (label index not built, 0 left)" in response.applied_filters


def test_self_photos_at_beach_without_label_index(tmp_path):
    engine = _engine(tmp_path, {"labels": ["beach"], "isSelfPhotos": True, "mediaType": "photo"},
                     build_labels=False)

    response = engine.search("photos of me at the beach")

    assert response.asset_ids == []
    assert "self-photos skipped (content filter found nothing)" in response.applied_filters


def test_self_videos_at_beach(tmp_path):
    engine = _engine(tmp_path, {"labels": ["beach"], "isSelfPhotos": True, "mediaType": "video"})
    engine.activity_index.search_with_llm.return_value = ["guitar_video", "rope_video"]

    response = engine.search("videos of me at the beach")

    assert response.asset_ids == ["rope_video"]
    assert "labels skipped (video search)" in response.applied_filters
    assert "self-photos (1)" in response.applied_filters
    engine.activity_index.search_with_llm.assert_called_once_with(
        "videos of me at the beach", "beach")


def test_people_union(tmp_path):
    engine = _engine(tmp_path, {"people": ["Sarah", "Alex"]})

    response = engine.search("photos with Sarah and Alex")

    assert response.asset_ids == ["rope_video", "sarah_party", "selfie_home"]


def test_unknown_person_matches_nothing(tmp_path):
    engine = _engine(tmp_path, {"people": ["Zed"]})
    assert engine.search("photos with Zed").asset_ids == []


def test_date_range(tmp_path):
    engine = _engine(tmp_path, {"timePeriod": {"description": "july 2024",
                                               "startDate": "2024-07-01",
                                               "endDate": "2024-07-31"}})
    assert engine.search("photos from july 2024").asset_ids == ["greece_dog", "greece_beach"]


def test_invalid_date_range_is_ignored(tmp_path):
    engine = _engine(tmp_path, {"labels": ["dog"],
                                "timePeriod": {"startDate": "2024-07-31",
                                               "endDate": "2024-07-01"}})
    response = engine.search("dog photos")
    assert response.asset_ids == ["greece_dog"]
    assert any(f.startswith("date ignored") for f in response.applied_filters)


def test_video_activity(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "video", "activity": "jumping rope"})

    response = engine.search("video where I jump rope")

    assert response.asset_ids == ["rope_video"]
    engine.activity_index.search_with_llm.assert_called_once_with(
        "video where I jump rope", "jumping rope")


def test_activity_without_analyzed_videos_matches_nothing(tmp_path):
    activity = MagicMock()
    activity.is_empty = True
    engine = _engine(tmp_path, {"mediaType": "video", "activity": "cooking"}, activity=activity)

    response = engine.search("video of me cooking")

    assert response.asset_ids == []
    activity.search_with_llm.assert_not_called()


def test_plain_video_query_without_analyzed_videos(tmp_path):
    activity = MagicMock()
    activity.is_empty = True
    engine = _engine(tmp_path, {"mediaType": "video"}, activity=activity)

    response = engine.search("all my videos")

    assert response.asset_ids == ["guitar_video", "rope_video"]
    assert "video search skipped (no videos analyzed)" in response.applied_filters


def test_plain_video_query_runs_semantic_search(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "video"})

    assert engine.search("that clip from the gym").asset_ids == ["rope_video"]
    engine.activity_index.search_with_llm.assert_called_once_with("that clip from the gym", None)


def test_plain_video_query_keeps_videos_when_nothing_picked(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "video"})
    engine.activity_index.search_with_llm.return_value = []

    assert engine.search("my videos").asset_ids == ["guitar_video", "rope_video"]


def test_activity_with_no_matches_is_empty(tmp_path):
    activity = MagicMock()
    activity.is_empty = False
    activity.search_with_llm.return_value = []
    engine = _engine(tmp_path, {"mediaType": "video", "activity": "skydiving"}, activity=activity)

    assert engine.search("skydiving videos").asset_ids == []


def test_video_content_goes_through_semantic_search(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "video", "labels": ["beach"], "people": ["Sarah"]})

    response = engine.search("beach videos with Sarah")

    assert response.asset_ids == ["rope_video"]
    engine.activity_index.search_with_llm.assert_called_once_with(
        "beach videos with Sarah", "beach")
    assert "labels skipped (video search)" in response.applied_filters
    assert "people skipped (video search)" in response.applied_filters


def test_video_labels_with_no_semantic_match_are_empty(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "video", "labels": ["dog"]})
    engine.activity_index.search_with_llm.return_value = []

    response = engine.search("videos of my dog")

    assert response.asset_ids == []
    engine.activity_index.search_with_llm.assert_called_once_with("videos of my dog", "dog")


def test_no_filters_returns_nothing(tmp_path):
    engine = _engine(tmp_path, {})
    response = engine.search("show me something")
    assert response.asset_ids == []
    assert response.applied_filters == []


def test_limit(tmp_path):
    engine = _engine(tmp_path, {"labels": ["beach"], "limit": 1})
    assert engine.search("one beach photo").asset_ids == ["greece_beach"]


def test_default_limit(tmp_path):
    engine = _engine(tmp_path, {"mediaType": "photo"}, default_limit=2)
    assert engine.search("photos").asset_ids == ["greece_dog", "greece_beach"]


def test_search_parsed_skips_parser(tmp_path):
    engine = _engine(tmp_path)
    response = engine.search_parsed(ParsedQuery(raw_terms="dogs", labels=["dog"]))
    assert response.asset_ids == ["greece_dog"]
    engine.parser.chat.complete.assert_not_called()


def test_response_to_dict(tmp_path):
    engine = _engine(tmp_path, {"labels": ["dog"]})
    data = engine.search("dogs").to_dict()
    assert data["asset_ids"] == ["greece_dog"]
    assert data["parsed"]["labels"] == ["dog"]
    assert data["query"] == "dogs"


# -- trips --


def _athens_trips() -> list[MediaAsset]:
    assets = []
    for trip_start in (datetime(2023, 5, 1), datetime(2024, 7, 1)):
        for day in range(6):
            assets.append(MediaAsset(
                id=f"athens-{trip_start.year}-{day}",
                created_at=trip_start + timedelta(days=day),
                latitude=ATHENS[0],
                longitude=ATHENS[1],
            ))
    return assets


def test_location_keeps_most_recent_trip(tmp_path):
    engine = _engine(tmp_path, {"location": "Athens"}, assets=_athens_trips(), build_labels=False)

    response = engine.search("photos from Athens")

    assert len(response.asset_ids) == 6
    assert all(a.startswith("athens-2024") for a in response.asset_ids)
    assert any("most recent trip (6)" in f for f in response.applied_filters)


def test_time_period_disables_trip_clustering(tmp_path):
    engine = _engine(tmp_path, {"location": "Athens",
                                "timePeriod": {"startDate": "2023-01-01",
                                               "endDate": "2023-12-31"}},
                     assets=_athens_trips(), build_labels=False)

    response = engine.search("photos from Athens in 2023")

    assert len(response.asset_ids) == 6
    assert all(a.startswith("athens-2023") for a in response.asset_ids)


def test_stats_and_build(tmp_path):
    engine = _engine(tmp_path, build_labels=False)
    result = engine.build_indexes()
    assert result["labels"]["newly_indexed"] == 5
    stats = engine.stats()
    assert stats["geo"]["indexed_assets"] == 3
    assert stats["labels"]["indexed_assets"] == 5
